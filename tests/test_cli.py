from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from loop_engine.__main__ import main

REPO_ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("LOOPS_STORE_BACKEND", "LOOPS_STATE_STORE_ROOT", "LOOPS_MAX_PROPAGATION_DEPTH", "LOOPS_ACTIVITY_LOG"):
        monkeypatch.delenv(name, raising=False)


def _run(capsys: pytest.CaptureFixture[str], store_root: Path, *argv: str) -> tuple[int, object]:
    code = main(["--store-root", str(store_root), *argv])
    out = capsys.readouterr().out
    return code, json.loads(out) if out.strip() else None


def test_cli_builds_and_propagates(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, context = _run(capsys, tmp_path, "create-context", "P", "Rooms", "--type", "location")
    assert code == 0
    code, kitchen = _run(capsys, tmp_path, "create-iteration", context["id"], "P", "Kitchen")
    assert code == 0
    code, demo = _run(capsys, tmp_path, "create-iteration", context["id"], "P", "Demo", "--parent", kitchen["id"])
    assert code == 0

    code, updated = _run(capsys, tmp_path, "set-status", demo["id"], "blocked")
    assert code == 0
    assert updated["computed_status"] == "blocked"

    code, tree = _run(capsys, tmp_path, "tree", "P")
    assert code == 0
    assert len(tree["fingerprint"]) == 64
    [root] = tree["roots"]
    assert root["iteration"]["computed_status"] == "blocked"
    assert root["iteration"]["child_counts"]["blocked"] == 1
    assert root["children"][0]["depth"] == 1

    code, issues = _run(capsys, tmp_path, "check", "P")
    assert code == 0
    assert issues == []

    lines = (tmp_path / "activity.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["event_type"] for line in lines] == ["loop.created", "loop.status_changed"]


def test_cli_reports_engine_errors(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _, context = _run(capsys, tmp_path, "create-context", "P", "Rooms", "--type", "location")
    _, kitchen = _run(capsys, tmp_path, "create-iteration", context["id"], "P", "Kitchen")
    _run(capsys, tmp_path, "create-iteration", context["id"], "P", "Demo", "--parent", kitchen["id"])

    code, _ = _run(capsys, tmp_path, "set-status", kitchen["id"], "complete")
    assert code == 1
    code, _ = _run(capsys, tmp_path, "delete-context", context["id"])
    assert code == 1
    code, result = _run(capsys, tmp_path, "delete-context", context["id"], "--cascade")
    assert code == 0
    assert result == {"context_id": context["id"], "deleted_iterations": 2}


def test_cli_seed_and_transformable(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, seeded = _run(capsys, tmp_path, "seed", "P", "--template", "kitchen-bath", "Kitchen", "Bath")
    assert code == 0
    assert len(seeded["iterations"]) == 2

    code, rows = _run(capsys, tmp_path, "transformable", "P")
    assert code == 0
    assert [row["name"] for row in rows] == ["Kitchen", "Bath"]

    code, result = _run(capsys, tmp_path, "rebuild", "P")
    assert code == 0
    assert result == {"written": 0}


def test_cli_rejects_invalid_configuration(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("LOOPS_MAX_PROPAGATION_DEPTH", "deep")
    code, _ = _run(capsys, tmp_path, "tree", "P")
    assert code == 1


def test_cli_reports_unusable_store_root(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    not_a_dir = tmp_path / "store.txt"
    not_a_dir.write_text("occupied", encoding="utf-8")

    code, output = _run(capsys, not_a_dir, "tree", "P")

    assert code == 1
    assert output is None


def test_module_entry_point_runs(tmp_path: Path) -> None:
    env = os.environ.copy()
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT / "src"), env.get("PYTHONPATH")]))
    env["LOOPS_STATE_STORE_ROOT"] = str(tmp_path / "state_store")

    result = subprocess.run(
        [sys.executable, "-m", "loop_engine", "tree", "empty-project"],
        cwd=tmp_path,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )

    assert result.returncode == 0, result.stderr
    assert json.loads(result.stdout)["roots"] == []
