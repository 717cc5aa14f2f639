from __future__ import annotations

import pytest

from loop_engine import (
    FloorPlan,
    LoopFactory,
    LoopService,
    LoopStatus,
    LoopType,
    MemoryActivityLog,
    RoomPlan,
    iter_tree,
)
from loop_engine.factory import (
    EXTERIOR_CATEGORIES,
    EXTERIOR_PHASES,
    STANDARD_RENOVATION_CATEGORIES,
    STANDARD_RENOVATION_PHASES,
)
from loop_engine.utils import binding_key, slugify_name


def test_slugify_name() -> None:
    assert slugify_name("Hello World!") == "hello-world"
    assert slugify_name("Insulation & Drywall") == "insulation-drywall"


def test_binding_key() -> None:
    assert binding_key("rooms") == "rooms"
    assert binding_key("phase", "Rough-In (MEP)") == "phase:rough-in-mep"
    with pytest.raises(ValueError):
        binding_key("phase", "&&")


def test_standard_renovation_structure(service: LoopService, activity: MemoryActivityLog) -> None:
    seeded = LoopFactory(service).create_standard_renovation_structure("P", ["Kitchen", "Bath"])

    assert len(seeded.contexts) == 1 + len(STANDARD_RENOVATION_PHASES) + len(STANDARD_RENOVATION_CATEGORIES)
    assert [it.name for it in seeded.iterations] == ["Kitchen", "Bath"]
    kinds = {context.loop_type for context in service.list_contexts("P")}
    assert kinds == {LoopType.LOCATION, LoopType.PHASE, LoopType.WORK_CATEGORY}

    transformable = service.get_transformable_iterations("P")
    assert [it.name for it in transformable] == ["Kitchen", "Bath"]
    assert len(activity.of_type("loop.created")) == 1


def test_reseeding_is_idempotent(service: LoopService) -> None:
    factory = LoopFactory(service)
    first = factory.create_standard_renovation_structure("P", ["Kitchen"])
    second = factory.create_standard_renovation_structure("P", ["Kitchen", "Bath"])

    assert [c.id for c in first.contexts] == [c.id for c in second.contexts]
    assert second.iterations[0].id == first.iterations[0].id
    assert len(service.list_contexts("P")) == len(first.contexts)
    assert len(service.list_iterations("P")) == 2


def test_floor_plan_nests_across_axes(service: LoopService) -> None:
    floors = [
        FloorPlan("Main", [RoomPlan("Kitchen", ["Island", "Pantry"]), RoomPlan("Hall")]),
        FloorPlan("Upper", [RoomPlan("Bed")]),
    ]
    seeded = LoopFactory(service).create_floor_plan("P", floors)

    assert [c.loop_type for c in seeded.contexts] == [LoopType.FLOOR, LoopType.LOCATION, LoopType.ZONE]
    assert len(seeded.iterations) == 7

    roots = service.get_loop_tree("P")
    assert [node.iteration.name for node in roots] == ["Main", "Upper"]
    main = roots[0]
    assert [child.iteration.name for child in main.children] == ["Kitchen", "Hall"]
    island = main.children[0].children[0]
    assert island.iteration.name == "Island"
    assert island.depth == 2
    assert island.context is not None
    assert island.context.loop_type == LoopType.ZONE
    assert len(list(iter_tree(roots))) == 7

    service.update_iteration(island.iteration.id, computed_status=LoopStatus.BLOCKED)
    refreshed = service.get_iteration(main.iteration.id)
    assert refreshed is not None
    assert refreshed.computed_status == LoopStatus.BLOCKED


def test_floor_plan_without_zones_skips_zone_axis(service: LoopService) -> None:
    seeded = LoopFactory(service).create_floor_plan("P", [FloorPlan("Main", [RoomPlan("Kitchen")])])
    assert [c.loop_type for c in seeded.contexts] == [LoopType.FLOOR, LoopType.LOCATION]


def test_structure_for_division(service: LoopService) -> None:
    factory = LoopFactory(service)
    seeded = factory.create_structure_for_division("P", "exteriors", ["North", "South"])

    assert seeded.contexts[0].loop_type == LoopType.ZONE
    assert len(seeded.contexts) == 1 + len(EXTERIOR_PHASES) + len(EXTERIOR_CATEGORIES)
    assert [it.name for it in service.get_transformable_iterations("P")] == ["North", "South"]

    diy = factory.create_structure_for_division("Q", "diy", ["Garage"])
    assert [c.loop_type for c in diy.contexts] == [LoopType.LOCATION]

    with pytest.raises(ValueError, match="Unknown division"):
        factory.create_structure_for_division("P", "landscaping", [])


def test_binding_key_type_conflict_is_rejected(service: LoopService) -> None:
    service.create_context("P", "Floors", LoopType.CUSTOM, binding_key="floors")
    with pytest.raises(ValueError, match="binding key"):
        LoopFactory(service).create_floor_plan("P", [FloorPlan("Main")])
