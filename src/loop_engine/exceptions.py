from __future__ import annotations


class LoopEngineError(Exception):
    """Base class for every error raised by the loop engine."""


class NotFoundError(LoopEngineError, LookupError):
    """A context or iteration id does not exist."""

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id


class InvalidStateError(LoopEngineError):
    """A mutation would break a structural invariant (cycle, orphan, kind change)."""


class StoreFailureError(LoopEngineError):
    """The backing store failed to read or write a record.

    The tree may be partially updated when this is raised; callers re-trigger
    propagation from the last node they know was written.
    """
