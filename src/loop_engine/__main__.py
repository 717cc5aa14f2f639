"""Entry point for `python -m loop_engine` and the `loops` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from loop_engine.canonical import fingerprint
from loop_engine.exceptions import LoopEngineError
from loop_engine.factory import LoopFactory
from loop_engine.models import LoopStatus, LoopType
from loop_engine.service import SYSTEM_ACTOR, LoopService
from loop_engine.settings import RuntimeSettings
from loop_engine.tree import tree_to_dict

SEED_TEMPLATES = ["standard", "kitchen-bath", "interiors", "exteriors", "diy", "maintenance"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage project loop hierarchies and their aggregated status")
    parser.add_argument(
        "--store-root",
        type=Path,
        default=None,
        help="State store directory (overrides LOOPS_STATE_STORE_ROOT)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument("--actor", default=SYSTEM_ACTOR, help="Actor id recorded on activity events")
    sub = parser.add_subparsers(dest="command", required=True)

    create_context = sub.add_parser("create-context", help="Create an axis under a project")
    create_context.add_argument("project_id")
    create_context.add_argument("name")
    create_context.add_argument("--type", dest="loop_type", required=True, choices=[t.value for t in LoopType])
    create_context.add_argument("--binding-key", default=None)
    create_context.add_argument("--display-order", type=int, default=0)

    create_iteration = sub.add_parser("create-iteration", help="Create an iteration under an axis")
    create_iteration.add_argument("context_id")
    create_iteration.add_argument("project_id")
    create_iteration.add_argument("name")
    create_iteration.add_argument("--parent", default=None, help="Parent iteration id (any axis)")
    create_iteration.add_argument("--display-order", type=int, default=0)

    set_status = sub.add_parser("set-status", help="Set a leaf iteration's status and propagate upward")
    set_status.add_argument("iteration_id")
    set_status.add_argument("status", choices=[s.value for s in LoopStatus])

    move = sub.add_parser("move", help="Re-parent an iteration")
    move.add_argument("iteration_id")
    move.add_argument("--parent", default=None, help="New parent id; omit to make the iteration a root")

    delete_iteration = sub.add_parser("delete-iteration", help="Delete an iteration")
    delete_iteration.add_argument("iteration_id")
    delete_iteration.add_argument("--cascade", action="store_true", help="Also delete descendants")

    delete_context = sub.add_parser("delete-context", help="Delete an axis")
    delete_context.add_argument("context_id")
    delete_context.add_argument("--cascade", action="store_true", help="Also delete the axis' iterations")

    for name, help_text in (
        ("tree", "Print the project's loop forest"),
        ("transformable", "List iterations eligible to become property rooms"),
        ("check", "Report cached counts or statuses that disagree with live children"),
        ("rebuild", "Recompute every cached count and derived status"),
    ):
        sub.add_parser(name, help=help_text).add_argument("project_id")

    seed = sub.add_parser("seed", help="Seed a project with a structural template")
    seed.add_argument("project_id")
    seed.add_argument("--template", required=True, choices=SEED_TEMPLATES)
    seed.add_argument("locations", nargs="*", help="Room or area names")

    return parser.parse_args(argv)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def run_command(service: LoopService, args: argparse.Namespace) -> int:
    command = args.command
    if command == "create-context":
        context = service.create_context(
            args.project_id,
            args.name,
            args.loop_type,
            binding_key=args.binding_key,
            display_order=args.display_order,
            actor_id=args.actor,
        )
        _emit(context.model_dump(mode="json"))
    elif command == "create-iteration":
        iteration = service.create_iteration(
            args.context_id,
            args.project_id,
            args.name,
            parent_iteration_id=args.parent,
            display_order=args.display_order,
        )
        _emit(iteration.model_dump(mode="json"))
    elif command == "set-status":
        iteration = service.update_iteration(args.iteration_id, computed_status=args.status, actor_id=args.actor)
        _emit(iteration.model_dump(mode="json"))
    elif command == "move":
        _emit(service.move_iteration(args.iteration_id, args.parent).model_dump(mode="json"))
    elif command == "delete-iteration":
        _emit({"deleted": service.delete_iteration(args.iteration_id, cascade=args.cascade)})
    elif command == "delete-context":
        deleted = service.delete_context(args.context_id, cascade=args.cascade)
        _emit({"context_id": args.context_id, "deleted_iterations": deleted})
    elif command == "tree":
        forest = tree_to_dict(service.get_loop_tree(args.project_id))
        _emit({"fingerprint": fingerprint(forest), "roots": forest})
    elif command == "transformable":
        _emit([it.model_dump(mode="json") for it in service.get_transformable_iterations(args.project_id)])
    elif command == "check":
        issues = service.check_consistency(args.project_id)
        _emit([{"severity": i.severity, "location": i.location, "message": i.message} for i in issues])
        return 1 if any(issue.severity == "ERROR" for issue in issues) else 0
    elif command == "rebuild":
        _emit({"written": service.rebuild_counts(args.project_id)})
    elif command == "seed":
        seeded = _seed(LoopFactory(service), args)
        _emit(
            {
                "contexts": [c.id for c in seeded.contexts],
                "iterations": [it.id for it in seeded.iterations],
            }
        )
    else:  # pragma: no cover - argparse rejects unknown commands
        raise ValueError(f"unknown command: {command}")
    return 0


def _seed(factory: LoopFactory, args: argparse.Namespace):  # noqa: ANN202
    if args.template == "standard":
        return factory.create_standard_renovation_structure(args.project_id, args.locations, args.actor)
    if args.template == "kitchen-bath":
        return factory.create_kitchen_bath_structure(args.project_id, args.locations, args.actor)
    return factory.create_structure_for_division(args.project_id, args.template, args.locations, args.actor)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    repo_root = Path.cwd()
    if args.store_root is not None:
        settings = RuntimeSettings(
            store_backend="file",
            state_store_root=str(args.store_root.resolve()),
            max_propagation_depth=settings.max_propagation_depth,
            activity_log=settings.activity_log,
        )

    try:
        service = LoopService.from_settings(settings, repo_root)
        return run_command(service, args)
    except (LoopEngineError, ValueError, OSError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
