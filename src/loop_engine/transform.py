from __future__ import annotations

from .models import PROPERTY_TRANSFORMABLE_TYPES, LoopIteration, LoopType, display_sort_key
from .state_store import LoopStore


def is_transformable(loop_type: LoopType | str) -> bool:
    """True for axis kinds whose iterations become permanent property rooms."""
    return LoopType(loop_type) in PROPERTY_TRANSFORMABLE_TYPES


class TransformableSelector:
    """Selects the iterations a completion workflow may promote to property rooms."""

    def __init__(self, store: LoopStore) -> None:
        self.store = store

    def get_transformable_iterations(self, project_id: str) -> list[LoopIteration]:
        context_ids = {
            context.id
            for context in self.store.list_contexts(project_id)
            if is_transformable(context.loop_type)
        }
        if not context_ids:
            return []
        iterations = [it for it in self.store.list_iterations(project_id) if it.context_id in context_ids]
        return sorted(iterations, key=display_sort_key)
