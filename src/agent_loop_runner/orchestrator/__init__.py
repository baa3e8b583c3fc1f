"""Attempt-loop orchestration for file-signalling external agents.

Why not a task queue or a worker pool?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The agents driven here share one interactive session, so only one job may be
in flight at a time; parallelism would only make them contend. What this
package actually has to get right sits at the integration boundary:

- Agents report back exclusively through files (progress, spec,
  requirements and a ``STATUS: PASS|FAIL`` artifact), so completion is
  observed through watchdog notifications backed by polling.
- Agents pick their own feature names, and dispatch returns nothing, so
  artifacts are attributed to jobs by a replaceable recency heuristic.
- Every job gets a throwaway git worktree that must be removed on every exit
  path, and the shared checkout is snapped back if an agent switches it.

A single-threaded queue pump over an in-memory, lock-guarded job store covers
all of this without an external broker.
"""
