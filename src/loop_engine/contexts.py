from __future__ import annotations

import logging
from typing import Any

from .exceptions import InvalidStateError, NotFoundError
from .models import LoopContext, LoopType, context_sort_key
from .state_store import LoopStore

logger = logging.getLogger(__name__)

_MUTABLE_CONTEXT_FIELDS = frozenset({"name", "binding_key", "display_order"})


class LoopContextRegistry:
    """Create, read, update and delete the axes attached to a project."""

    def __init__(self, store: LoopStore) -> None:
        self.store = store

    def create_context(
        self,
        project_id: str,
        name: str,
        loop_type: LoopType | str,
        *,
        binding_key: str | None = None,
        display_order: int = 0,
    ) -> LoopContext:
        context = LoopContext(
            project_id=project_id,
            name=name,
            loop_type=LoopType(loop_type),
            binding_key=binding_key,
            display_order=display_order,
        )
        created = self.store.insert_context(context)
        logger.info(
            "Created loop context %s (%s, %s) for project %s",
            created.id,
            created.name,
            created.loop_type.value,
            created.project_id,
        )
        return created

    def get_context(self, context_id: str) -> LoopContext | None:
        return self.store.get_context(context_id)

    def require_context(self, context_id: str) -> LoopContext:
        context = self.store.get_context(context_id)
        if context is None:
            raise NotFoundError("loop context", context_id)
        return context

    def list_contexts(self, project_id: str) -> list[LoopContext]:
        """Return the project's axes ordered by display order, then creation order."""
        return sorted(self.store.list_contexts(project_id), key=context_sort_key)

    def find_by_binding_key(self, project_id: str, binding_key: str) -> LoopContext | None:
        for context in self.list_contexts(project_id):
            if context.binding_key == binding_key:
                return context
        return None

    def update_context(self, context_id: str, **changes: Any) -> LoopContext:
        """Apply a partial update to an axis.

        ``loop_type`` may be passed only if it equals the stored kind: changing
        an axis kind would silently change which iterations are
        structure-transformable.

        Raises:
            NotFoundError: If the axis does not exist.
            InvalidStateError: If the update tries to change ``loop_type``.
            ValueError: If an unknown or immutable field is supplied.
        """
        current = self.require_context(context_id)
        if "loop_type" in changes:
            requested = LoopType(changes.pop("loop_type"))
            if requested != current.loop_type:
                raise InvalidStateError(
                    f"loop context {context_id} kind is immutable "
                    f"({current.loop_type.value} -> {requested.value})"
                )
        rejected = sorted(set(changes) - _MUTABLE_CONTEXT_FIELDS)
        if rejected:
            raise ValueError(f"loop context fields cannot be updated: {', '.join(rejected)}")
        if not changes:
            return current
        updated = self.store.update_context(context_id, changes)
        logger.info("Updated loop context %s: %s", context_id, ", ".join(sorted(changes)))
        return updated

    def delete_context(self, context_id: str) -> None:
        """Delete an axis that no iteration references any more.

        Raises:
            NotFoundError: If the axis does not exist.
            InvalidStateError: If iterations still belong to the axis.
        """
        self.require_context(context_id)
        remaining = self.store.list_iterations_by_context(context_id)
        if remaining:
            raise InvalidStateError(
                f"loop context {context_id} still has {len(remaining)} iteration(s); "
                "delete them first or delete with cascade"
            )
        self.store.delete_context(context_id)
        logger.info("Deleted loop context %s", context_id)
