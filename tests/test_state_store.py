from __future__ import annotations

import json
from pathlib import Path

import pytest

from loop_engine import (
    ChildCounts,
    FileLoopStore,
    InMemoryLoopStore,
    JsonlActivityLog,
    LoopContext,
    LoopIteration,
    LoopService,
    LoopStatus,
    LoopType,
    NotFoundError,
    RuntimeSettings,
    StoreFailureError,
    build_store,
    fingerprint,
    to_canonical_json,
    tree_to_dict,
)
from loop_engine.state_store import project_scoped_root, sanitize_project_id


def test_store_round_trips_records(store) -> None:  # noqa: ANN001
    context = store.insert_context(LoopContext(project_id="P", name="Rooms", loop_type=LoopType.LOCATION))
    iteration = store.insert_iteration(LoopIteration(context_id=context.id, project_id="P", name="Kitchen"))

    assert store.get_context(context.id) == context
    assert store.get_iteration(iteration.id) == iteration
    assert store.list_iterations_by_context(context.id) == [iteration]
    assert store.list_iterations("other") == []

    updated = store.update_iteration(iteration.id, {"child_counts": ChildCounts(total=1, blocked=1)})
    assert updated.child_counts.blocked == 1
    assert store.get_iteration(iteration.id) == updated


def test_store_rejects_unknown_fields_and_missing_ids(store) -> None:  # noqa: ANN001
    context = store.insert_context(LoopContext(project_id="P", name="Rooms", loop_type=LoopType.LOCATION))

    with pytest.raises(ValueError):
        store.update_context(context.id, {"colour": "blue"})
    with pytest.raises(NotFoundError):
        store.update_iteration("ITR-missing", {"name": "x"})
    with pytest.raises(NotFoundError):
        store.delete_context("CTX-missing")
    with pytest.raises(ValueError):
        store.insert_context(context)


def test_store_returns_copies(store) -> None:  # noqa: ANN001
    context = store.insert_context(LoopContext(project_id="P", name="Rooms", loop_type=LoopType.LOCATION))
    fetched = store.get_context(context.id)
    assert fetched is not None
    fetched.name = "Changed"

    again = store.get_context(context.id)
    assert again is not None
    assert again.name == "Rooms"


def test_file_store_layout_is_project_scoped(tmp_path: Path) -> None:
    store = FileLoopStore(tmp_path)
    context = store.insert_context(LoopContext(project_id="Job #42", name="Rooms", loop_type=LoopType.LOCATION))

    path = tmp_path / "projects" / "Job-42" / "contexts" / f"{context.id}.json"
    assert path.is_file()
    assert json.loads(path.read_text(encoding="utf-8"))["loop_type"] == "location"


def test_file_store_corrupt_document_raises_store_failure(tmp_path: Path) -> None:
    store = FileLoopStore(tmp_path)
    iteration = store.insert_iteration(LoopIteration(context_id="CTX-a", project_id="P", name="Kitchen"))
    path = project_scoped_root(tmp_path, "P") / "iterations" / f"{iteration.id}.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StoreFailureError):
        store.get_iteration(iteration.id)


def test_file_store_ignores_unsafe_ids(tmp_path: Path) -> None:
    store = FileLoopStore(tmp_path)
    assert store.get_iteration("../../etc/passwd") is None


def test_sanitize_project_id() -> None:
    assert sanitize_project_id(" Job #42 ") == "Job-42"
    with pytest.raises(ValueError):
        sanitize_project_id("///")
    assert sanitize_project_id("v1.2") == "v1.2"


@pytest.mark.parametrize("project_id", [".", "..", "...", " .. ", "-.-"])
def test_sanitize_project_id_rejects_dot_directories(project_id: str) -> None:
    with pytest.raises(ValueError):
        sanitize_project_id(project_id)


@pytest.mark.parametrize("project_id", [".", ".."])
def test_file_store_refuses_dot_project_ids(tmp_path: Path, project_id: str) -> None:
    root = tmp_path / "state_store"
    service = LoopService(FileLoopStore(root))

    with pytest.raises(ValueError):
        service.create_context(project_id, "Rooms", LoopType.LOCATION)

    assert not (root / "contexts").exists()
    assert not (tmp_path / "contexts").exists()


def test_store_rejects_project_id_changes(store) -> None:  # noqa: ANN001
    context = store.insert_context(LoopContext(project_id="P", name="Rooms", loop_type=LoopType.LOCATION))
    iteration = store.insert_iteration(LoopIteration(context_id=context.id, project_id="P", name="Kitchen"))

    with pytest.raises(ValueError, match="project_id"):
        store.update_context(context.id, {"project_id": "Q"})
    with pytest.raises(ValueError, match="project_id"):
        store.update_iteration(iteration.id, {"project_id": "Q"})

    unchanged = store.get_iteration(iteration.id)
    assert unchanged is not None
    assert unchanged.project_id == "P"
    assert store.update_context(context.id, {"project_id": "P", "name": "Spaces"}).name == "Spaces"


def test_file_store_persists_across_service_instances(tmp_path: Path) -> None:
    first = LoopService(FileLoopStore(tmp_path))
    rooms = first.create_context("P", "Rooms", LoopType.LOCATION)
    kitchen = first.create_iteration(rooms.id, "P", "Kitchen")
    demo = first.create_iteration(rooms.id, "P", "Demo", parent_iteration_id=kitchen.id)
    first.update_iteration(demo.id, computed_status=LoopStatus.BLOCKED)

    second = LoopService(FileLoopStore(tmp_path))
    state = second.get_iteration(kitchen.id)
    assert state is not None
    assert state.computed_status == LoopStatus.BLOCKED


def test_build_store_backends(tmp_path: Path) -> None:
    assert isinstance(build_store("memory"), InMemoryLoopStore)
    assert isinstance(build_store("file", tmp_path), FileLoopStore)
    with pytest.raises(ValueError):
        build_store("file")
    with pytest.raises(ValueError):
        build_store("postgres", tmp_path)


def test_jsonl_activity_log_appends_canonical_lines(tmp_path: Path) -> None:
    log = JsonlActivityLog(tmp_path / "activity.jsonl")
    service = LoopService(InMemoryLoopStore(), activity=log)
    service.create_context("P", "Floors", LoopType.FLOOR)
    service.create_context("P", "Zones", LoopType.ZONE)

    lines = (tmp_path / "activity.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    events = log.read_events()
    assert [event.event_data["loop_type"] for event in events] == ["floor", "zone"]
    assert lines[0] == to_canonical_json(events[0])


def test_tree_fingerprint_is_stable(tmp_path: Path) -> None:
    service = LoopService(FileLoopStore(tmp_path))
    rooms = service.create_context("P", "Rooms", LoopType.LOCATION)
    service.create_iteration(rooms.id, "P", "Kitchen")

    first = fingerprint(tree_to_dict(service.get_loop_tree("P")))
    second = fingerprint(tree_to_dict(LoopService(FileLoopStore(tmp_path)).get_loop_tree("P")))
    assert first == second


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOOPS_STORE_BACKEND", " Memory ")
    monkeypatch.setenv("LOOPS_MAX_PROPAGATION_DEPTH", "12")
    settings = RuntimeSettings.from_env()
    assert settings.store_backend == "memory"
    assert settings.max_propagation_depth == 12
    assert settings.activity_log_path(Path("/repo")) == Path("/repo/state_store/activity.jsonl")


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("LOOPS_STORE_BACKEND", "redis"),
        ("LOOPS_MAX_PROPAGATION_DEPTH", "abc"),
        ("LOOPS_MAX_PROPAGATION_DEPTH", "0"),
        ("LOOPS_STATE_STORE_ROOT", "  "),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()
