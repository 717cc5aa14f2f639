from __future__ import annotations

import logging

from .aggregation import StatusAggregator
from .contexts import LoopContextRegistry
from .exceptions import InvalidStateError, NotFoundError
from .models import LoopIteration, LoopStatus, display_sort_key
from .state_store import LoopStore

logger = logging.getLogger(__name__)


class LoopIterationStore:
    """Node-level CRUD with synchronous upward propagation.

    Every call that changes a node's existence, parent or status returns only
    after the whole ancestor chain reflects the change.
    """

    def __init__(self, store: LoopStore, contexts: LoopContextRegistry, aggregator: StatusAggregator) -> None:
        self.store = store
        self.contexts = contexts
        self.aggregator = aggregator

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_iteration(
        self,
        context_id: str,
        project_id: str,
        name: str,
        *,
        parent_iteration_id: str | None = None,
        display_order: int = 0,
    ) -> LoopIteration:
        """Create an iteration, optionally under a parent on any axis.

        With a parent, the parent is fully recomputed (counts and derived
        status) and the change propagates to the root, not just counted. A
        new not-started child must reopen a complete parent, and every
        ancestor has to agree with its live children when this returns.

        Raises:
            NotFoundError: If the axis or the parent does not exist.
            InvalidStateError: If the axis or parent belongs to another project.
        """
        context = self.contexts.require_context(context_id)
        if context.project_id != project_id:
            raise InvalidStateError(
                f"loop context {context_id} belongs to project {context.project_id}, not {project_id}"
            )
        if parent_iteration_id is not None:
            parent = self.require_iteration(parent_iteration_id)
            if parent.project_id != project_id:
                raise InvalidStateError(
                    f"parent iteration {parent_iteration_id} belongs to project {parent.project_id}, not {project_id}"
                )

        iteration = LoopIteration(
            context_id=context_id,
            project_id=project_id,
            name=name,
            parent_iteration_id=parent_iteration_id,
            display_order=display_order,
        )
        created = self.store.insert_iteration(iteration)
        logger.info("Created loop iteration %s (%s) in context %s", created.id, created.name, context_id)

        if parent_iteration_id is not None:
            self.aggregator.recalculate_parent_status(parent_iteration_id)
        return created

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_iteration(self, iteration_id: str) -> LoopIteration | None:
        return self.store.get_iteration(iteration_id)

    def require_iteration(self, iteration_id: str) -> LoopIteration:
        iteration = self.store.get_iteration(iteration_id)
        if iteration is None:
            raise NotFoundError("loop iteration", iteration_id)
        return iteration

    def list_by_project(self, project_id: str) -> list[LoopIteration]:
        return sorted(self.store.list_iterations(project_id), key=display_sort_key)

    def list_by_context(self, context_id: str) -> list[LoopIteration]:
        return sorted(self.store.list_iterations_by_context(context_id), key=display_sort_key)

    def list_children(self, parent_id: str) -> list[LoopIteration]:
        return sorted(self.store.list_children(parent_id), key=display_sort_key)

    def list_roots(self, project_id: str) -> list[LoopIteration]:
        return [it for it in self.list_by_project(project_id) if it.parent_iteration_id is None]

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update_iteration(
        self,
        iteration_id: str,
        *,
        name: str | None = None,
        display_order: int | None = None,
        computed_status: LoopStatus | str | None = None,
    ) -> LoopIteration:
        """Apply a partial update; a status change propagates from the parent.

        Raises:
            NotFoundError: If the iteration does not exist.
            InvalidStateError: If a status is written to an iteration that
                has children (its status is derived from them).
        """
        current = self.require_iteration(iteration_id)
        changes: dict[str, object] = {}
        if name is not None:
            changes["name"] = name
        if display_order is not None:
            changes["display_order"] = display_order

        status_changed = False
        if computed_status is not None:
            status = LoopStatus(computed_status)
            if status != current.computed_status:
                if self.store.list_children(iteration_id):
                    raise InvalidStateError(
                        f"loop iteration {iteration_id} has children; its status is derived and cannot be set"
                    )
                changes["computed_status"] = status
                status_changed = True

        if not changes:
            return current
        updated = self.store.update_iteration(iteration_id, changes)

        if status_changed:
            logger.info(
                "Iteration %s status %s -> %s",
                iteration_id,
                current.computed_status.value,
                updated.computed_status.value,
            )
            if updated.parent_iteration_id is not None:
                self.aggregator.recalculate_parent_status(updated.parent_iteration_id)
        return updated

    def move_iteration(self, iteration_id: str, new_parent_id: str | None) -> LoopIteration:
        """Re-parent an iteration, rejecting moves that would create a cycle."""
        current = self.require_iteration(iteration_id)
        old_parent_id = current.parent_iteration_id
        if new_parent_id == old_parent_id:
            return current

        if new_parent_id is not None:
            new_parent = self.require_iteration(new_parent_id)
            if new_parent.project_id != current.project_id:
                raise InvalidStateError(
                    f"cannot move {iteration_id} under {new_parent_id}: iterations belong to different projects"
                )
            chain = [new_parent_id, *self.aggregator.ancestor_ids(new_parent_id)]
            if iteration_id in chain:
                raise InvalidStateError(
                    f"cannot move {iteration_id} under {new_parent_id}: it would become its own ancestor"
                )

        updated = self.store.update_iteration(iteration_id, {"parent_iteration_id": new_parent_id})
        logger.info("Moved iteration %s from %s to %s", iteration_id, old_parent_id, new_parent_id)

        if old_parent_id is not None:
            self.aggregator.recalculate_parent_status(old_parent_id)
        if new_parent_id is not None:
            self.aggregator.recalculate_parent_status(new_parent_id)
        return updated

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete_iteration(self, iteration_id: str, *, cascade: bool = False) -> int:
        """Delete an iteration, recounting and propagating from its former parent.

        Args:
            iteration_id: The iteration to delete.
            cascade: Also delete every descendant. Without it, deleting an
                iteration that still has children is rejected.

        Returns:
            Number of iterations deleted.
        """
        current = self.require_iteration(iteration_id)
        children = self.store.list_children(iteration_id)
        if children and not cascade:
            raise InvalidStateError(
                f"loop iteration {iteration_id} has {len(children)} child iteration(s); delete with cascade"
            )

        deleted = self._delete_subtree(iteration_id, set())
        if current.parent_iteration_id is not None:
            self.aggregator.recalculate_parent_status(current.parent_iteration_id)
        return deleted

    def delete_context_iterations(self, context_id: str) -> int:
        """Delete every iteration of an axis, including cross-axis descendants.

        Former parents that survive (they live in other axes) are recounted
        and propagated afterwards.
        """
        deleted_ids: set[str] = set()
        former_parents: list[str] = []
        for iteration in self.list_by_context(context_id):
            if iteration.id in deleted_ids:
                continue
            self._delete_subtree(iteration.id, deleted_ids)
            if iteration.parent_iteration_id is not None:
                former_parents.append(iteration.parent_iteration_id)

        for parent_id in dict.fromkeys(former_parents):
            if parent_id not in deleted_ids:
                self.aggregator.recalculate_parent_status(parent_id)
        return len(deleted_ids)

    def _delete_subtree(self, iteration_id: str, deleted_ids: set[str]) -> int:
        """Delete *iteration_id* and its descendants, children first."""
        count = 0
        pending = [iteration_id]
        order: list[str] = []
        seen: set[str] = set()
        while pending:
            node_id = pending.pop()
            if node_id in seen:
                raise InvalidStateError(f"cycle detected below iteration {iteration_id} at {node_id}")
            seen.add(node_id)
            order.append(node_id)
            pending.extend(child.id for child in self.store.list_children(node_id))

        for node_id in reversed(order):
            if node_id in deleted_ids:
                continue
            self.store.delete_iteration(node_id)
            deleted_ids.add(node_id)
            count += 1
        logger.info("Deleted %d iteration(s) rooted at %s", count, iteration_id)
        return count
