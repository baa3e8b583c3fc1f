"""Local deterministic agent for executor integration tests and demos."""

from __future__ import annotations

import argparse
import re
import sys
from datetime import UTC, datetime
from pathlib import Path

_PREAMBLE_RE = re.compile(r"^(RunId|Item|URL|Attempt|StatusFile|WorktreePath):\s*(.*?)\s*$")


def read_preamble(text: str) -> dict[str, str]:
    """Collect ``Key: value`` lines from the leading metadata block."""

    values: dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip():
            if values:
                break
            continue
        match = _PREAMBLE_RE.match(line)
        if match:
            values[match.group(1)] = match.group(2)
    return values


def main(argv: list[str] | None = None) -> int:
    """Write progress, spec and status artifacts the way a real agent would."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--feature-name", default=None)
    parser.add_argument("--progress-dir", default="progress-tracking")
    parser.add_argument("--spec-root", default="tests/Agent-Based")
    parser.add_argument("--fail-attempts", type=int, default=0)
    args = parser.parse_args(argv)

    preamble = read_preamble(Path(args.prompt_file).read_text("utf-8"))
    status_file = preamble.get("StatusFile")
    if not status_file:
        print("Prompt has no StatusFile line.", file=sys.stderr)
        return 2

    item = preamble.get("Item", "000")
    attempt = int(preamble.get("Attempt", "1") or 1)
    feature = args.feature_name or f"Echo{item}"
    workdir = Path(preamble.get("WorktreePath") or Path.cwd())

    progress_path = Path.cwd() / args.progress_dir / f"{feature}-progress.md"
    progress_path.parent.mkdir(parents=True, exist_ok=True)
    progress_path.write_text(f"# {feature}\n\nURL: {preamble.get('URL', '')}\n", "utf-8")

    spec_path = workdir / args.spec_root / feature / f"{feature}.spec.ts"
    spec_path.parent.mkdir(parents=True, exist_ok=True)
    spec_path.write_text(f"// {feature} attempt {attempt}\n", "utf-8")

    timestamp = datetime.now(tz=UTC).isoformat(timespec="seconds")
    if attempt <= args.fail_attempts:
        body = (
            "STATUS: FAIL\n"
            f"FeatureName: {feature}\n"
            f"Timestamp: {timestamp}\n"
            f"Reason: echo agent configured to fail attempt {attempt}\n"
        )
    else:
        body = (
            "STATUS: PASS\n"
            f"FeatureName: {feature}\n"
            f"Timestamp: {timestamp}\n"
            f"Summary: echo agent finished attempt {attempt}\n"
            f"SpecPath: {spec_path}\n"
        )
    status_path = Path(status_file)
    status_path.parent.mkdir(parents=True, exist_ok=True)
    status_path.write_text(body, "utf-8")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
