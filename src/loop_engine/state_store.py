from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from .exceptions import NotFoundError, StoreFailureError
from .models import LoopContext, LoopIteration

logger = logging.getLogger(__name__)

_RecordT = TypeVar("_RecordT", LoopContext, LoopIteration)

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class LoopStore(Protocol):
    """Persistence contract consumed by the engine.

    Implementations must make ``update_context`` / ``update_iteration`` an
    atomic read-modify-write of a single record. Nothing else is required:
    no transactions, no triggers.
    """

    def insert_context(self, context: LoopContext) -> LoopContext: ...

    def get_context(self, context_id: str) -> LoopContext | None: ...

    def list_contexts(self, project_id: str) -> list[LoopContext]: ...

    def update_context(self, context_id: str, changes: dict[str, Any]) -> LoopContext: ...

    def delete_context(self, context_id: str) -> None: ...

    def insert_iteration(self, iteration: LoopIteration) -> LoopIteration: ...

    def get_iteration(self, iteration_id: str) -> LoopIteration | None: ...

    def list_iterations(self, project_id: str) -> list[LoopIteration]: ...

    def list_iterations_by_context(self, context_id: str) -> list[LoopIteration]: ...

    def list_children(self, parent_id: str) -> list[LoopIteration]: ...

    def update_iteration(self, iteration_id: str, changes: dict[str, Any]) -> LoopIteration: ...

    def delete_iteration(self, iteration_id: str) -> None: ...


def _apply_changes(record: _RecordT, changes: dict[str, Any]) -> _RecordT:
    model_cls = type(record)
    unknown = sorted(set(changes) - set(model_cls.model_fields))
    if unknown:
        raise ValueError(f"unknown {model_cls.__name__} fields: {', '.join(unknown)}")
    for immutable in ("id", "project_id"):
        if immutable in changes and changes[immutable] != getattr(record, immutable):
            raise ValueError(f"{model_cls.__name__}.{immutable} cannot be changed")
    payload = record.model_dump()
    payload.update(changes)
    return model_cls.model_validate(payload)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryLoopStore:
    """Dict-backed store; a re-entrant lock makes each record update atomic."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._contexts: dict[str, LoopContext] = {}
        self._iterations: dict[str, LoopIteration] = {}

    def insert_context(self, context: LoopContext) -> LoopContext:
        with self._lock:
            if context.id in self._contexts:
                raise ValueError(f"loop context already exists: {context.id}")
            self._contexts[context.id] = context.model_copy(deep=True)
        return context.model_copy(deep=True)

    def get_context(self, context_id: str) -> LoopContext | None:
        with self._lock:
            context = self._contexts.get(context_id)
            return context.model_copy(deep=True) if context is not None else None

    def list_contexts(self, project_id: str) -> list[LoopContext]:
        with self._lock:
            return [c.model_copy(deep=True) for c in self._contexts.values() if c.project_id == project_id]

    def update_context(self, context_id: str, changes: dict[str, Any]) -> LoopContext:
        with self._lock:
            current = self._contexts.get(context_id)
            if current is None:
                raise NotFoundError("loop context", context_id)
            updated = _apply_changes(current, changes)
            self._contexts[context_id] = updated
            return updated.model_copy(deep=True)

    def delete_context(self, context_id: str) -> None:
        with self._lock:
            if self._contexts.pop(context_id, None) is None:
                raise NotFoundError("loop context", context_id)

    def insert_iteration(self, iteration: LoopIteration) -> LoopIteration:
        with self._lock:
            if iteration.id in self._iterations:
                raise ValueError(f"loop iteration already exists: {iteration.id}")
            self._iterations[iteration.id] = iteration.model_copy(deep=True)
        return iteration.model_copy(deep=True)

    def get_iteration(self, iteration_id: str) -> LoopIteration | None:
        with self._lock:
            iteration = self._iterations.get(iteration_id)
            return iteration.model_copy(deep=True) if iteration is not None else None

    def list_iterations(self, project_id: str) -> list[LoopIteration]:
        return self._select(lambda it: it.project_id == project_id)

    def list_iterations_by_context(self, context_id: str) -> list[LoopIteration]:
        return self._select(lambda it: it.context_id == context_id)

    def list_children(self, parent_id: str) -> list[LoopIteration]:
        return self._select(lambda it: it.parent_iteration_id == parent_id)

    def update_iteration(self, iteration_id: str, changes: dict[str, Any]) -> LoopIteration:
        with self._lock:
            current = self._iterations.get(iteration_id)
            if current is None:
                raise NotFoundError("loop iteration", iteration_id)
            updated = _apply_changes(current, changes)
            self._iterations[iteration_id] = updated
            return updated.model_copy(deep=True)

    def delete_iteration(self, iteration_id: str) -> None:
        with self._lock:
            if self._iterations.pop(iteration_id, None) is None:
                raise NotFoundError("loop iteration", iteration_id)

    def _select(self, predicate) -> list[LoopIteration]:  # noqa: ANN001
        with self._lock:
            return [it.model_copy(deep=True) for it in self._iterations.values() if predicate(it)]


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar lets the data file itself be swapped with ``os.replace``
    while the lock handle stays valid.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via a temp file in the same directory and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON document, raising ``StoreFailureError`` if it is unreadable or empty."""
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise StoreFailureError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    except OSError as exc:
        raise StoreFailureError(f"unable to read {model_name} at {path}: {exc}") from exc
    if not text.strip():
        raise StoreFailureError(f"{model_name} at {path} is empty")
    return text


def _load_record(path: Path, model_cls: type[_RecordT], model_name: str) -> _RecordT:
    text = _safe_read_json(path, model_name)
    try:
        return model_cls.model_validate_json(text)
    except ValidationError as exc:
        raise StoreFailureError(f"{model_name} at {path} failed validation: {exc}") from exc


def _write_record(path: Path, record: BaseModel) -> None:
    try:
        _atomic_write_text(path, record.model_dump_json(indent=2))
    except OSError as exc:
        raise StoreFailureError(f"unable to write {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# FileLoopStore
# ---------------------------------------------------------------------------

class FileLoopStore:
    """Filesystem store: one JSON document per context or iteration.

    Layout::

        <root>/projects/<project>/contexts/<context_id>.json
        <root>/projects/<project>/iterations/<iteration_id>.json

    Record lookups by id scan the (small) set of project directories, so
    callers never need to know which project an id belongs to. Every
    read-modify-write holds an ``fcntl`` lock on the record's sidecar.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.projects_dir = self.root / "projects"
        self.projects_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def project_dir(self, project_id: str) -> Path:
        return project_scoped_root(self.root, project_id)

    def _context_path(self, context: LoopContext) -> Path:
        return self.project_dir(context.project_id) / "contexts" / f"{_checked_id(context.id)}.json"

    def _iteration_path(self, iteration: LoopIteration) -> Path:
        return self.project_dir(iteration.project_id) / "iterations" / f"{_checked_id(iteration.id)}.json"

    def _locate(self, kind: str, record_id: str) -> Path | None:
        if not _SAFE_ID_RE.match(record_id):
            return None
        matches = sorted(self.projects_dir.glob(f"*/{kind}/{record_id}.json"))
        if len(matches) > 1:
            raise StoreFailureError(f"record {record_id} is stored under more than one project: {matches}")
        return matches[0] if matches else None

    def _scan(self, project_id: str, kind: str) -> list[Path]:
        directory = self.project_dir(project_id) / kind
        if not directory.is_dir():
            return []
        return sorted(directory.glob("*.json"))

    # ------------------------------------------------------------------
    # Contexts
    # ------------------------------------------------------------------

    def insert_context(self, context: LoopContext) -> LoopContext:
        if self._locate("contexts", context.id) is not None:
            raise ValueError(f"loop context already exists: {context.id}")
        _write_record(self._context_path(context), context)
        return context

    def get_context(self, context_id: str) -> LoopContext | None:
        path = self._locate("contexts", context_id)
        if path is None:
            return None
        return _load_record(path, LoopContext, "loop context")

    def list_contexts(self, project_id: str) -> list[LoopContext]:
        # Distinct project ids may sanitize to the same directory name.
        records = [_load_record(path, LoopContext, "loop context") for path in self._scan(project_id, "contexts")]
        return [record for record in records if record.project_id == project_id]

    def update_context(self, context_id: str, changes: dict[str, Any]) -> LoopContext:
        path = self._locate("contexts", context_id)
        if path is None:
            raise NotFoundError("loop context", context_id)
        with _locked_file(path):
            current = _load_record(path, LoopContext, "loop context")
            updated = _apply_changes(current, changes)
            _write_record(path, updated)
        return updated

    def delete_context(self, context_id: str) -> None:
        self._delete("contexts", "loop context", context_id)

    # ------------------------------------------------------------------
    # Iterations
    # ------------------------------------------------------------------

    def insert_iteration(self, iteration: LoopIteration) -> LoopIteration:
        if self._locate("iterations", iteration.id) is not None:
            raise ValueError(f"loop iteration already exists: {iteration.id}")
        _write_record(self._iteration_path(iteration), iteration)
        return iteration

    def get_iteration(self, iteration_id: str) -> LoopIteration | None:
        path = self._locate("iterations", iteration_id)
        if path is None:
            return None
        return _load_record(path, LoopIteration, "loop iteration")

    def list_iterations(self, project_id: str) -> list[LoopIteration]:
        records = [
            _load_record(path, LoopIteration, "loop iteration")
            for path in self._scan(project_id, "iterations")
        ]
        return [record for record in records if record.project_id == project_id]

    def list_iterations_by_context(self, context_id: str) -> list[LoopIteration]:
        context = self.get_context(context_id)
        if context is None:
            return []
        return [it for it in self.list_iterations(context.project_id) if it.context_id == context_id]

    def list_children(self, parent_id: str) -> list[LoopIteration]:
        parent = self.get_iteration(parent_id)
        if parent is None:
            return []
        return [it for it in self.list_iterations(parent.project_id) if it.parent_iteration_id == parent_id]

    def update_iteration(self, iteration_id: str, changes: dict[str, Any]) -> LoopIteration:
        path = self._locate("iterations", iteration_id)
        if path is None:
            raise NotFoundError("loop iteration", iteration_id)
        with _locked_file(path):
            current = _load_record(path, LoopIteration, "loop iteration")
            updated = _apply_changes(current, changes)
            _write_record(path, updated)
        return updated

    def delete_iteration(self, iteration_id: str) -> None:
        self._delete("iterations", "loop iteration", iteration_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _delete(self, kind: str, model_name: str, record_id: str) -> None:
        path = self._locate(kind, record_id)
        if path is None:
            raise NotFoundError(model_name, record_id)
        with _locked_file(path):
            try:
                path.unlink()
            except FileNotFoundError as exc:
                raise NotFoundError(model_name, record_id) from exc
            except OSError as exc:
                raise StoreFailureError(f"unable to delete {model_name} at {path}: {exc}") from exc
        logger.debug("Deleted %s %s", model_name, record_id)


# ---------------------------------------------------------------------------
# Utility functions
# ---------------------------------------------------------------------------

def _checked_id(record_id: str) -> str:
    if not _SAFE_ID_RE.match(record_id):
        raise ValueError(f"record id contains characters that are not filesystem-safe: {record_id!r}")
    return record_id


def sanitize_project_id(project_id: str) -> str:
    """Sanitize a project ID for use as a filesystem path component.

    Args:
        project_id: Raw project identifier.

    Returns:
        A filesystem-safe version of the project ID, truncated to 128 chars.

    Raises:
        ValueError: If the project ID is empty or contains no safe characters.
    """
    value = project_id.strip()
    if not value:
        raise ValueError("project_id must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-")
    if not value:
        raise ValueError("project_id contains no filesystem-safe characters")
    value = value[:128]
    # "." and ".." would resolve outside the projects directory.
    if not value.strip("."):
        raise ValueError(f"project_id {project_id!r} does not name a directory")
    return value


def project_scoped_root(root: Path, project_id: str) -> Path:
    """Return ``root / "projects" / sanitize_project_id(project_id)``."""
    return root / "projects" / sanitize_project_id(project_id)


def build_store(backend: str, root: Path | None = None) -> LoopStore:
    """Construct the store named by *backend* (``memory`` or ``file``)."""
    if backend == "memory":
        return InMemoryLoopStore()
    if backend == "file":
        if root is None:
            raise ValueError("file store requires a root directory")
        return FileLoopStore(root)
    raise ValueError(f"unknown store backend: {backend!r}")
