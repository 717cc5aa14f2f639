from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class LoopType(str, Enum):
    FLOOR = "floor"
    LOCATION = "location"
    ZONE = "zone"
    WORK_CATEGORY = "work_category"
    PHASE = "phase"
    CUSTOM = "custom"


class LoopStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETE = "complete"


# Axis kinds whose iterations represent physical spaces and may become
# permanent property rooms when a project completes.
PROPERTY_TRANSFORMABLE_TYPES: frozenset[LoopType] = frozenset(
    {LoopType.FLOOR, LoopType.LOCATION, LoopType.ZONE}
)


def new_context_id() -> str:
    return f"CTX-{uuid.uuid4().hex[:12]}"


def new_iteration_id() -> str:
    return f"ITR-{uuid.uuid4().hex[:12]}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ChildCounts(BaseModel):
    """Tally of an iteration's direct children by status bucket."""

    model_config = ConfigDict(frozen=True)

    total: int = Field(default=0, ge=0)
    not_started: int = Field(default=0, ge=0)
    in_progress: int = Field(default=0, ge=0)
    blocked: int = Field(default=0, ge=0)
    complete: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _buckets_sum_to_total(self) -> "ChildCounts":
        bucket_sum = self.not_started + self.in_progress + self.blocked + self.complete
        if bucket_sum != self.total:
            raise ValueError(f"child count buckets sum to {bucket_sum}, expected total={self.total}")
        return self

    def bucket(self, status: LoopStatus) -> int:
        return getattr(self, status.value)


class LoopContext(BaseModel):
    """One named axis of a project (e.g. "Rooms", "Phases")."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_context_id)
    project_id: str
    name: str
    loop_type: LoopType
    binding_key: str | None = None
    display_order: int = 0
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("project_id", "name")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("must be non-empty")
        return trimmed

    @property
    def is_transformable(self) -> bool:
        return self.loop_type in PROPERTY_TRANSFORMABLE_TYPES


class LoopIteration(BaseModel):
    """A node in the project's cross-axis forest."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_iteration_id)
    context_id: str
    project_id: str
    name: str
    parent_iteration_id: str | None = None
    display_order: int = 0
    computed_status: LoopStatus = LoopStatus.NOT_STARTED
    child_counts: ChildCounts = Field(default_factory=ChildCounts)
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("context_id", "project_id", "name")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("must be non-empty")
        return trimmed

    @property
    def is_root(self) -> bool:
        return self.parent_iteration_id is None

    @property
    def has_children(self) -> bool:
        return self.child_counts.total > 0


class ActivityEvent(BaseModel):
    """Append-only activity feed entry emitted by structural operations."""

    event_type: str
    project_id: str
    actor_id: str
    actor_type: str = "team_member"
    entity_type: str
    entity_id: str
    loop_iteration_id: str | None = None
    homeowner_visible: bool = False
    event_data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


@dataclass
class LoopTreeNode:
    iteration: LoopIteration
    context: LoopContext | None
    depth: int
    children: list[LoopTreeNode] = field(default_factory=list)


@dataclass(frozen=True)
class ValidationIssue:
    severity: str
    location: str
    message: str


def display_sort_key(iteration: LoopIteration) -> tuple[int, str]:
    return (iteration.display_order, iteration.id)


def context_sort_key(context: LoopContext) -> tuple[int, datetime, str]:
    return (context.display_order, context.created_at, context.id)
