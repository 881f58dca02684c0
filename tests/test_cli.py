# tests/test_cli.py
from __future__ import annotations

import json
from pathlib import Path

import pytest
from helpers import HANGING_TASK, SUCCESS_TASK, entry, write_manifest, write_task

from devicelab.cli import run_cli


@pytest.fixture(autouse=True)
def _no_agent_capabilities(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DEVICELAB_AGENT_CAPABILITIES", raising=False)


def _two_stage_manifest(tmp_path: Path) -> Path:
    write_task(tmp_path, "t1", SUCCESS_TASK)
    write_task(tmp_path, "t2", SUCCESS_TASK)
    return write_manifest(
        tmp_path / "manifest.json",
        {
            "t1": entry(stage="S1"),
            "t2": entry(stage="S2", required_agent_capabilities=["X"]),
        },
    )


def test_run_stage_reports_success(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    manifest = _two_stage_manifest(tmp_path)
    report = tmp_path / "report.json"

    code = run_cli(["--manifest", str(manifest), "run", "--stage", "S1", "--report", str(report)])
    out = capsys.readouterr().out

    assert code == 0
    assert out.splitlines() == ["OK t1"]
    data = json.loads(report.read_text(encoding="utf-8"))
    assert list(data) == ["t1"]
    assert data["t1"]["outcome"] == "success"
    assert data["t1"]["data"] == {"latency_ms": 42}


def test_hung_task_times_out_and_fails_the_run(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    write_task(tmp_path, "hang", HANGING_TASK)
    manifest = write_manifest(tmp_path / "manifest.json", {"hang": entry()})
    report = tmp_path / "report.json"

    code = run_cli(
        ["--manifest", str(manifest), "run", "--timeout", "2", "--report", str(report)]
    )
    out = capsys.readouterr().out

    assert code == 1
    assert "FAIL hang: exceeded 2s timeout" in out
    assert "Failed tasks: hang" in out
    data = json.loads(report.read_text(encoding="utf-8"))
    assert data["hang"]["outcome"] == "failure"
    assert "timeout" in data["hang"]["failure_detail"]


def test_unknown_task_aborts_before_spawning(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    marker = tmp_path / "spawned.txt"
    write_task(
        tmp_path,
        "real",
        f"""
        from pathlib import Path

        Path(r"{marker}").write_text("spawned", encoding="utf-8")

        from devicelab import TaskResult, task

        task(lambda: TaskResult.success())
        """,
    )
    manifest = write_manifest(tmp_path / "manifest.json", {"real": entry()})
    report = tmp_path / "report.json"

    code = run_cli(
        [
            "--manifest",
            str(manifest),
            "run",
            "-t",
            "real",
            "-t",
            "doesNotExist",
            "--report",
            str(report),
        ]
    )
    captured = capsys.readouterr()

    assert code == 2
    assert "doesNotExist" in captured.err
    assert captured.out == ""
    assert not marker.exists()
    assert not report.exists()


def test_missing_entry_script_aborts(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    manifest = write_manifest(tmp_path / "manifest.json", {"ghost": entry()})

    code = run_cli(["--manifest", str(manifest), "run"])
    captured = capsys.readouterr()

    assert code == 2
    assert "ghost" in captured.err


def test_capability_filter_via_flag_and_env(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    manifest = _two_stage_manifest(tmp_path)

    assert run_cli(["--manifest", str(manifest), "list"]) == 0
    assert capsys.readouterr().out.splitlines() == ["t1\tS1\ta task"]

    assert run_cli(["--manifest", str(manifest), "list", "-c", "X"]) == 0
    assert [line.split("\t")[0] for line in capsys.readouterr().out.splitlines()] == ["t1", "t2"]

    monkeypatch.setenv("DEVICELAB_AGENT_CAPABILITIES", "X, Y")
    assert run_cli(["--manifest", str(manifest), "list", "--stage", "S2"]) == 0
    assert capsys.readouterr().out.splitlines() == ["t2\tS2\ta task"]


def test_run_all_ignores_names(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    manifest = _two_stage_manifest(tmp_path)

    code = run_cli(["--manifest", str(manifest), "list", "--all", "-t", "nope", "-c", "X"])

    assert code == 0
    assert len(capsys.readouterr().out.splitlines()) == 2


def test_no_selected_tasks_is_success(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    manifest = _two_stage_manifest(tmp_path)

    code = run_cli(["--manifest", str(manifest), "run", "--stage", "S3"])
    captured = capsys.readouterr()

    assert code == 0
    assert "No tasks selected" in captured.err


def test_invalid_manifest_path_returns_2(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = run_cli(["--manifest", str(tmp_path / "missing.yaml"), "list"])
    captured = capsys.readouterr()

    assert code == 2
    assert captured.err != ""


def test_bad_timeout_flag_is_a_usage_error(tmp_path: Path) -> None:
    manifest = _two_stage_manifest(tmp_path)

    with pytest.raises(SystemExit) as e:
        run_cli(["--manifest", str(manifest), "run", "--timeout", "0"])

    assert e.value.code == 2
