from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Iterator

from .models import LoopContext, LoopIteration, LoopTreeNode, display_sort_key
from .state_store import LoopStore

logger = logging.getLogger(__name__)


class LoopTreeAssembler:
    """Builds the read-only cross-axis forest for a project."""

    def __init__(self, store: LoopStore) -> None:
        self.store = store

    def build_loop_tree(self, project_id: str) -> list[LoopTreeNode]:
        """Return one tree per root iteration, children ordered by display order then id.

        An iteration whose parent id points at a missing node is promoted to
        a root; an iteration whose context is missing keeps ``context=None``.
        Both anomalies are logged.
        """
        contexts: dict[str, LoopContext] = {c.id: c for c in self.store.list_contexts(project_id)}
        iterations = sorted(self.store.list_iterations(project_id), key=display_sort_key)
        known_ids = {it.id for it in iterations}

        by_parent: dict[str | None, list[LoopIteration]] = defaultdict(list)
        for iteration in iterations:
            parent_id = iteration.parent_iteration_id
            if parent_id is not None and parent_id not in known_ids:
                logger.warning(
                    "Iteration %s references missing parent %s; treating it as a root",
                    iteration.id,
                    parent_id,
                )
                parent_id = None
            by_parent[parent_id].append(iteration)

        attached: set[str] = set()

        def build_node(iteration: LoopIteration, depth: int) -> LoopTreeNode:
            attached.add(iteration.id)
            context = contexts.get(iteration.context_id)
            if context is None:
                logger.warning("Iteration %s references missing context %s", iteration.id, iteration.context_id)
            node = LoopTreeNode(iteration=iteration, context=context, depth=depth)
            for child in by_parent.get(iteration.id, []):
                if child.id in attached:
                    continue
                node.children.append(build_node(child, depth + 1))
            return node

        forest = [build_node(root, 0) for root in by_parent.get(None, [])]

        unreachable = known_ids - attached
        if unreachable:
            logger.warning(
                "Project %s has %d iteration(s) unreachable from any root (parent cycle): %s",
                project_id,
                len(unreachable),
                ", ".join(sorted(unreachable)),
            )
        return forest


def iter_tree(nodes: list[LoopTreeNode]) -> Iterator[LoopTreeNode]:
    """Yield every node of the forest in pre-order."""
    for node in nodes:
        yield node
        yield from iter_tree(node.children)


def tree_to_dict(nodes: list[LoopTreeNode]) -> list[dict[str, Any]]:
    return [
        {
            "iteration": node.iteration.model_dump(mode="json"),
            "context": node.context.model_dump(mode="json") if node.context is not None else None,
            "depth": node.depth,
            "children": tree_to_dict(node.children),
        }
        for node in nodes
    ]
