from __future__ import annotations

import logging
from collections import defaultdict
from pathlib import Path
from typing import Any

from .activity import ActivitySink, JsonlActivityLog
from .aggregation import DEFAULT_MAX_PROPAGATION_DEPTH, StatusAggregator, count_children, derive_status
from .contexts import LoopContextRegistry
from .exceptions import InvalidStateError
from .iterations import LoopIterationStore
from .models import (
    ActivityEvent,
    ChildCounts,
    LoopContext,
    LoopIteration,
    LoopStatus,
    LoopTreeNode,
    LoopType,
    ValidationIssue,
)
from .settings import RuntimeSettings
from .state_store import LoopStore, build_store
from .transform import TransformableSelector
from .tree import LoopTreeAssembler

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class LoopService:
    """Single entry point over the axis registry, iteration store and read models.

    Structural writes go through here so activity events are emitted
    consistently; reads are thin delegations.
    """

    def __init__(
        self,
        store: LoopStore,
        *,
        activity: ActivitySink | None = None,
        max_propagation_depth: int = DEFAULT_MAX_PROPAGATION_DEPTH,
    ) -> None:
        self.store = store
        self.activity = activity
        self.contexts = LoopContextRegistry(store)
        self.aggregator = StatusAggregator(store, max_depth=max_propagation_depth)
        self.iterations = LoopIterationStore(store, self.contexts, self.aggregator)
        self.trees = LoopTreeAssembler(store)
        self.selector = TransformableSelector(store)

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, repo_root: Path) -> "LoopService":
        store = build_store(settings.store_backend, settings.state_store_path(repo_root))
        activity = JsonlActivityLog(settings.activity_log_path(repo_root))
        return cls(store, activity=activity, max_propagation_depth=settings.max_propagation_depth)

    # ------------------------------------------------------------------
    # Contexts
    # ------------------------------------------------------------------

    def create_context(
        self,
        project_id: str,
        name: str,
        loop_type: LoopType | str,
        *,
        binding_key: str | None = None,
        display_order: int = 0,
        actor_id: str = SYSTEM_ACTOR,
    ) -> LoopContext:
        context = self.contexts.create_context(
            project_id,
            name,
            loop_type,
            binding_key=binding_key,
            display_order=display_order,
        )
        # Location-like axes change the scope a homeowner sees.
        if context.is_transformable:
            self._emit(
                ActivityEvent(
                    event_type="loop.created",
                    project_id=context.project_id,
                    actor_id=actor_id,
                    entity_type="loop_context",
                    entity_id=context.id,
                    homeowner_visible=True,
                    event_data={"name": context.name, "loop_type": context.loop_type.value},
                )
            )
        return context

    def get_context(self, context_id: str) -> LoopContext | None:
        return self.contexts.get_context(context_id)

    def list_contexts(self, project_id: str) -> list[LoopContext]:
        return self.contexts.list_contexts(project_id)

    def find_context_by_binding_key(self, project_id: str, binding_key: str) -> LoopContext | None:
        return self.contexts.find_by_binding_key(project_id, binding_key)

    def update_context(self, context_id: str, **changes: Any) -> LoopContext:
        return self.contexts.update_context(context_id, **changes)

    def delete_context(self, context_id: str, *, cascade: bool = False) -> int:
        """Delete an axis; with *cascade* its iterations (and their subtrees) go first.

        Returns:
            Number of iterations deleted by the cascade.
        """
        self.contexts.require_context(context_id)
        deleted = 0
        if cascade:
            deleted = self.iterations.delete_context_iterations(context_id)
        self.contexts.delete_context(context_id)
        return deleted

    # ------------------------------------------------------------------
    # Iterations
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
        return self.iterations.create_iteration(
            context_id,
            project_id,
            name,
            parent_iteration_id=parent_iteration_id,
            display_order=display_order,
        )

    def get_iteration(self, iteration_id: str) -> LoopIteration | None:
        return self.iterations.get_iteration(iteration_id)

    def list_iterations(self, project_id: str) -> list[LoopIteration]:
        return self.iterations.list_by_project(project_id)

    def list_iterations_by_context(self, context_id: str) -> list[LoopIteration]:
        return self.iterations.list_by_context(context_id)

    def list_children(self, parent_id: str) -> list[LoopIteration]:
        return self.iterations.list_children(parent_id)

    def list_roots(self, project_id: str) -> list[LoopIteration]:
        return self.iterations.list_roots(project_id)

    def update_iteration(
        self,
        iteration_id: str,
        *,
        name: str | None = None,
        display_order: int | None = None,
        computed_status: LoopStatus | str | None = None,
        actor_id: str = SYSTEM_ACTOR,
    ) -> LoopIteration:
        before = self.iterations.require_iteration(iteration_id)
        updated = self.iterations.update_iteration(
            iteration_id,
            name=name,
            display_order=display_order,
            computed_status=computed_status,
        )
        if updated.computed_status != before.computed_status:
            self._emit(
                ActivityEvent(
                    event_type="loop.status_changed",
                    project_id=updated.project_id,
                    actor_id=actor_id,
                    entity_type="loop_iteration",
                    entity_id=updated.id,
                    loop_iteration_id=updated.id,
                    event_data={
                        "from": before.computed_status.value,
                        "to": updated.computed_status.value,
                    },
                )
            )
        return updated

    def move_iteration(self, iteration_id: str, new_parent_id: str | None) -> LoopIteration:
        return self.iterations.move_iteration(iteration_id, new_parent_id)

    def delete_iteration(self, iteration_id: str, *, cascade: bool = False) -> int:
        return self.iterations.delete_iteration(iteration_id, cascade=cascade)

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def recalculate_child_counts(self, iteration_id: str) -> ChildCounts:
        return self.aggregator.recalculate_child_counts(iteration_id)

    def recalculate_parent_status(self, iteration_id: str) -> list[LoopIteration]:
        return self.aggregator.recalculate_parent_status(iteration_id)

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def get_loop_tree(self, project_id: str) -> list[LoopTreeNode]:
        return self.trees.build_loop_tree(project_id)

    def get_transformable_iterations(self, project_id: str) -> list[LoopIteration]:
        return self.selector.get_transformable_iterations(project_id)

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    def check_consistency(self, project_id: str) -> list[ValidationIssue]:
        """Compare every cached count and derived status against live children."""
        issues: list[ValidationIssue] = []
        context_ids = {c.id for c in self.store.list_contexts(project_id)}
        iterations = {it.id: it for it in self.store.list_iterations(project_id)}
        children: dict[str, list[LoopIteration]] = defaultdict(list)

        for iteration in iterations.values():
            if iteration.context_id not in context_ids:
                issues.append(
                    ValidationIssue("ERROR", iteration.id, f"references missing context {iteration.context_id}")
                )
            parent_id = iteration.parent_iteration_id
            if parent_id is None:
                continue
            if parent_id not in iterations:
                issues.append(ValidationIssue("ERROR", iteration.id, f"references missing parent {parent_id}"))
            else:
                children[parent_id].append(iteration)

        for iteration in sorted(iterations.values(), key=lambda it: it.id):
            actual = count_children(children.get(iteration.id, []))
            if actual != iteration.child_counts:
                issues.append(
                    ValidationIssue(
                        "ERROR",
                        iteration.id,
                        f"child_counts {iteration.child_counts.model_dump()} != live {actual.model_dump()}",
                    )
                )
            if actual.total > 0:
                expected = derive_status(actual)
                if expected != iteration.computed_status:
                    issues.append(
                        ValidationIssue(
                            "ERROR",
                            iteration.id,
                            f"computed_status {iteration.computed_status.value} != derived {expected.value}",
                        )
                    )
            if self._in_cycle(iteration.id, iterations):
                issues.append(ValidationIssue("ERROR", iteration.id, "iteration is part of a parent cycle"))

        return issues

    def rebuild_counts(self, project_id: str) -> int:
        """Recompute every cached count and derived status bottom-up.

        Returns:
            Number of iterations written.

        Raises:
            InvalidStateError: If the project's parent links contain a cycle.
        """
        iterations = {it.id: it for it in self.store.list_iterations(project_id)}
        depths = {it_id: self._depth(it_id, iterations) for it_id in iterations}
        children: dict[str, list[str]] = defaultdict(list)
        for iteration in iterations.values():
            if iteration.parent_iteration_id in iterations:
                children[iteration.parent_iteration_id].append(iteration.id)

        written = 0
        for it_id in sorted(iterations, key=lambda key: (-depths[key], key)):
            current = iterations[it_id]
            counts = count_children(iterations[child_id] for child_id in children.get(it_id, []))
            changes: dict[str, Any] = {}
            if counts != current.child_counts:
                changes["child_counts"] = counts
            if counts.total > 0:
                status = derive_status(counts)
                if status != current.computed_status:
                    changes["computed_status"] = status
            if changes:
                iterations[it_id] = self.store.update_iteration(it_id, changes)
                written += 1
        logger.info("Rebuilt counts for project %s: %d iteration(s) written", project_id, written)
        return written

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _emit(self, event: ActivityEvent) -> None:
        if self.activity is not None:
            self.activity.log(event)

    def _depth(self, iteration_id: str, iterations: dict[str, LoopIteration]) -> int:
        depth = 0
        seen = {iteration_id}
        parent_id = iterations[iteration_id].parent_iteration_id
        while parent_id is not None and parent_id in iterations:
            if parent_id in seen:
                raise InvalidStateError(f"cycle detected in ancestor chain of iteration {iteration_id}")
            seen.add(parent_id)
            depth += 1
            parent_id = iterations[parent_id].parent_iteration_id
        return depth

    @staticmethod
    def _in_cycle(iteration_id: str, iterations: dict[str, LoopIteration]) -> bool:
        seen: set[str] = set()
        parent_id = iterations[iteration_id].parent_iteration_id
        while parent_id is not None and parent_id in iterations:
            if parent_id == iteration_id:
                return True
            if parent_id in seen:
                return False
            seen.add(parent_id)
            parent_id = iterations[parent_id].parent_iteration_id
        return False
