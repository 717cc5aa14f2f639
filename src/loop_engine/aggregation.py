"""Child-count recomputation and upward status propagation.

Counts cached on each iteration are a materialized view of its live
children. Every recomputation re-reads the children instead of applying a
delta, so concurrent updates to siblings converge on the same aggregate
regardless of interleaving.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Iterable

from .exceptions import InvalidStateError, NotFoundError
from .models import ChildCounts, LoopIteration, LoopStatus
from .state_store import LoopStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_PROPAGATION_DEPTH = 64


def count_children(children: Iterable[LoopIteration]) -> ChildCounts:
    tally = Counter(child.computed_status for child in children)
    return ChildCounts(
        total=sum(tally.values()),
        not_started=tally[LoopStatus.NOT_STARTED],
        in_progress=tally[LoopStatus.IN_PROGRESS],
        blocked=tally[LoopStatus.BLOCKED],
        complete=tally[LoopStatus.COMPLETE],
    )


def derive_status(counts: ChildCounts) -> LoopStatus:
    """Derive a non-leaf status from its direct children's counts.

    Strict priority: any blocked child blocks the parent; otherwise all
    complete means complete; all untouched means not started; anything else
    is in progress.

    Raises:
        ValueError: If ``counts.total`` is zero. Leaf status is set by the
            caller and never derived.
    """
    if counts.total == 0:
        raise ValueError("cannot derive status for an iteration without children")
    if counts.blocked > 0:
        return LoopStatus.BLOCKED
    if counts.complete == counts.total:
        return LoopStatus.COMPLETE
    if counts.not_started == counts.total:
        return LoopStatus.NOT_STARTED
    return LoopStatus.IN_PROGRESS


class StatusAggregator:
    """Recomputes cached counts and derived status, walking up to the root."""

    def __init__(self, store: LoopStore, *, max_depth: int = DEFAULT_MAX_PROPAGATION_DEPTH) -> None:
        if max_depth < 1:
            raise ValueError("max_depth must be >= 1")
        self.store = store
        self.max_depth = max_depth

    def recalculate_child_counts(self, node_id: str) -> ChildCounts:
        """Recount *node_id*'s direct children and store the counts.

        The node's own ``computed_status`` is left untouched.
        """
        counts = count_children(self.store.list_children(node_id))
        self.store.update_iteration(node_id, {"child_counts": counts})
        return counts

    def recalculate_parent_status(self, node_id: str) -> list[LoopIteration]:
        """Recompute *node_id* and every ancestor up to the root.

        A node that turns out to have no children keeps its authoritative
        status; only its counts are reset to zero and the walk stops there.

        Returns:
            The iterations written, nearest first.

        Raises:
            NotFoundError: If *node_id* (or an ancestor it points at) does
                not exist.
            InvalidStateError: If the ancestor chain revisits a node or
                exceeds ``max_depth``.
        """
        written: list[LoopIteration] = []
        visited: set[str] = set()
        current_id: str | None = node_id

        while current_id is not None:
            if current_id in visited:
                raise InvalidStateError(f"cycle detected in ancestor chain at iteration {current_id}")
            if len(visited) >= self.max_depth:
                raise InvalidStateError(
                    f"ancestor chain from {node_id} exceeds max propagation depth {self.max_depth}"
                )
            visited.add(current_id)

            node = self.store.get_iteration(current_id)
            if node is None:
                raise NotFoundError("loop iteration", current_id)

            counts = count_children(self.store.list_children(current_id))
            if counts.total == 0:
                if node.child_counts.total != 0:
                    written.append(self.store.update_iteration(current_id, {"child_counts": counts}))
                logger.debug("Iteration %s has no children; status left as %s", current_id, node.computed_status.value)
                break

            status = derive_status(counts)
            updated = self.store.update_iteration(
                current_id,
                {"child_counts": counts, "computed_status": status},
            )
            written.append(updated)
            logger.debug(
                "Recomputed iteration %s: %s -> %s (%d children)",
                current_id,
                node.computed_status.value,
                status.value,
                counts.total,
            )
            current_id = updated.parent_iteration_id

        return written

    def ancestor_ids(self, node_id: str) -> list[str]:
        """Return the ids above *node_id*, nearest first."""
        ancestors: list[str] = []
        node = self.store.get_iteration(node_id)
        if node is None:
            raise NotFoundError("loop iteration", node_id)
        seen = {node_id}
        parent_id = node.parent_iteration_id
        while parent_id is not None:
            if parent_id in seen:
                raise InvalidStateError(f"cycle detected in ancestor chain at iteration {parent_id}")
            if len(ancestors) >= self.max_depth:
                raise InvalidStateError(
                    f"ancestor chain from {node_id} exceeds max propagation depth {self.max_depth}"
                )
            seen.add(parent_id)
            ancestors.append(parent_id)
            parent = self.store.get_iteration(parent_id)
            if parent is None:
                raise NotFoundError("loop iteration", parent_id)
            parent_id = parent.parent_iteration_id
        return ancestors
