from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner

from agent_loop_runner.main import agent_loop_runner

pytestmark = [
    allure.epic("Agent Loop Runner"),
    allure.feature("CLI"),
]


def test_parse_status_prints_fields(tmp_path: Path) -> None:
    status = tmp_path / "001.status.md"
    status.write_text("STATUS: PASS\nFeatureName: Widgets\nSummary: done\n", "utf-8")

    result = CliRunner().invoke(agent_loop_runner, ["parse-status", str(status)])

    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == ["status=PASS", "feature_name=Widgets", "summary=done"]


def test_parse_status_without_marker_fails(tmp_path: Path) -> None:
    status = tmp_path / "001.status.md"
    status.write_text("FeatureName: Widgets\n", "utf-8")

    result = CliRunner().invoke(agent_loop_runner, ["parse-status", str(status)])

    assert result.exit_code == 1
    assert "No STATUS: PASS|FAIL marker" in result.output


def test_compose_prompt_renders_preamble_and_override(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        agent_loop_runner,
        [
            "compose-prompt",
            "--url",
            "https://portal.example/blade",
            "--prompt=---\nmode: agent\n---\nCover {{URL}} as item {{Item}}",
            "--run-id",
            "run-9",
            "--item",
            "4",
            "--attempt",
            "2",
            "--workspace",
            str(tmp_path),
        ],
    )

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[:5] == [
        "RunId: run-9",
        "Item: 004",
        "URL: https://portal.example/blade",
        "Attempt: 2",
        "MaxLoopsPerUrl: 3",
    ]
    assert "004.status.md" in lines[5]
    assert "Cover https://portal.example/blade as item 004" in lines
    assert "mode: agent" not in result.output


def test_compose_prompt_rejects_non_http_url() -> None:
    result = CliRunner().invoke(agent_loop_runner, ["compose-prompt", "--url", "ftp://files"])

    assert result.exit_code == 1
    assert "Not an http(s) URL" in result.output


def test_run_without_urls_fails(tmp_path: Path) -> None:
    result = CliRunner().invoke(agent_loop_runner, ["run", "--workspace", str(tmp_path)])

    assert result.exit_code == 1
    assert "No valid http(s) URLs to run." in result.output


def test_run_drives_echo_agent_through_a_retry(
    tmp_path: Path,
    monkeypatch,
    echo_agent_command: str,
) -> None:
    monkeypatch.setenv(
        "AGENT_LOOP_AGENT_COMMAND_TEMPLATE",
        f"{echo_agent_command} --feature-name Widgets --fail-attempts 1",
    )
    monkeypatch.setenv("AGENT_LOOP_POLL_INTERVAL_SECONDS", "0.05")
    monkeypatch.setenv("AGENT_LOOP_RETRY_DELAY_SECONDS", "0")
    pairs_file = tmp_path / "pairs.json"
    pairs_file.write_text(
        json.dumps([{"url": "https://portal.example/blade", "prompt": "Cover {{URL}}"}]),
        "utf-8",
    )

    result = CliRunner().invoke(
        agent_loop_runner,
        [
            "run",
            "--pairs-file",
            str(pairs_file),
            "--workspace",
            str(tmp_path),
            "--max-loops",
            "2",
            "--timeout-seconds",
            "60",
            "--no-worktree",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "done=1 failed=0" in result.output
    assert "feature=Widgets" in result.output
    assert (tmp_path / "progress-tracking" / "Widgets-progress.md").exists()
    assert (tmp_path / "tests" / "Agent-Based" / "Widgets" / "Widgets.spec.ts").exists()
    prompts = sorted((tmp_path / ".agent-loop-runner" / "prompts").rglob("*.prompt.md"))
    assert [path.name for path in prompts] == ["001-attempt2.prompt.md", "001.prompt.md"]
    assert "echo agent configured to fail attempt 1" in prompts[0].read_text("utf-8")


def test_run_rejects_malformed_pairs_file(tmp_path: Path) -> None:
    pairs_file = tmp_path / "pairs.json"
    pairs_file.write_text('[{"url": "https://portal.example"', "utf-8")

    result = CliRunner().invoke(
        agent_loop_runner,
        ["run", "--pairs-file", str(pairs_file), "--workspace", str(tmp_path)],
    )

    assert result.exit_code == 1
    assert "Error:" in result.output
    assert not isinstance(result.exception, ValueError)


def test_run_rejects_pairs_file_that_is_not_a_list(tmp_path: Path) -> None:
    pairs_file = tmp_path / "pairs.json"
    pairs_file.write_text(json.dumps({"url": "https://portal.example"}), "utf-8")

    result = CliRunner().invoke(
        agent_loop_runner,
        ["run", "--pairs-file", str(pairs_file), "--workspace", str(tmp_path)],
    )

    assert result.exit_code == 1
    assert "must contain a JSON list" in result.output
