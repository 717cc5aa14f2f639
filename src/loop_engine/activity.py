"""Activity-feed sinks.

The engine only emits events; persisting, filtering and displaying the
feed belongs to the surrounding application.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from .canonical import to_canonical_json
from .models import ActivityEvent

logger = logging.getLogger(__name__)


class ActivitySink(Protocol):
    def log(self, event: ActivityEvent) -> None: ...


class MemoryActivityLog:
    """Keeps events in a list; used by tests and embedded callers."""

    def __init__(self) -> None:
        self.events: list[ActivityEvent] = []

    def log(self, event: ActivityEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[ActivityEvent]:
        return [event for event in self.events if event.event_type == event_type]


class JsonlActivityLog:
    """Append-only JSON Lines file, one canonical JSON document per event."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def log(self, event: ActivityEvent) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(to_canonical_json(event) + "\n")
        logger.debug("Activity %s recorded for %s %s", event.event_type, event.entity_type, event.entity_id)

    def read_events(self) -> list[ActivityEvent]:
        if not self.path.is_file():
            return []
        with self.path.open("r", encoding="utf-8") as handle:
            return [ActivityEvent.model_validate_json(line) for line in handle if line.strip()]
