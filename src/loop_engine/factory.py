"""Structural templates that seed a new project with conventional axes.

Every axis created here carries a binding key, so running a template twice
re-locates the existing axes and iterations instead of duplicating them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .models import LoopContext, LoopIteration, LoopType
from .service import SYSTEM_ACTOR, LoopService
from .utils import binding_key

logger = logging.getLogger(__name__)

STANDARD_RENOVATION_PHASES = ["Demo", "Rough-In", "Insulation & Drywall", "Finishes", "Punch List"]
STANDARD_RENOVATION_CATEGORIES = [
    "Electrical",
    "Plumbing",
    "HVAC",
    "Framing",
    "Drywall",
    "Flooring",
    "Trim & Millwork",
    "Paint",
]

NEW_CONSTRUCTION_PHASES = [
    "Site Prep",
    "Foundation",
    "Framing",
    "Rough-In (MEP)",
    "Insulation",
    "Drywall",
    "Interior Finishes",
    "Exterior Finishes",
    "Final Inspection",
    "Punch List",
]
NEW_CONSTRUCTION_CATEGORIES = [
    "Site Work",
    "Concrete",
    "Framing",
    "Roofing",
    "Electrical",
    "Plumbing",
    "HVAC",
    "Insulation",
    "Drywall",
    "Flooring",
    "Trim & Millwork",
    "Cabinets & Counters",
    "Paint",
    "Exterior",
    "Landscaping",
]

KITCHEN_BATH_PHASES = [
    "Demo",
    "Rough Plumbing",
    "Rough Electrical",
    "Framing & Backing",
    "Drywall",
    "Tile",
    "Cabinet Install",
    "Countertops",
    "Finish Plumbing",
    "Finish Electrical",
    "Paint & Touch-up",
    "Punch List",
]
KITCHEN_BATH_CATEGORIES = [
    "Plumbing",
    "Electrical",
    "Framing",
    "Drywall",
    "Tile",
    "Cabinets",
    "Countertops",
    "Flooring",
    "Paint",
    "Hardware & Accessories",
]

EXTERIOR_PHASES = [
    "Strip Existing",
    "Repair Sheathing",
    "Weather Barrier",
    "Trim Work",
    "Siding Install",
    "Flashing & Details",
    "Paint/Finish",
    "Clean-up",
]
EXTERIOR_CATEGORIES = ["Siding", "Trim", "Windows", "Doors", "Roofing", "Gutters", "Paint"]

INTERIORS_STAGES = ["Demolition", "Prime & Prep", "Finish", "Punch List", "Closeout"]
INTERIORS_WORK_CATEGORIES = ["Flooring", "Paint", "Finish Carpentry", "Tile", "Drywall"]

DIVISIONS = ("interiors", "exteriors", "diy", "maintenance")


@dataclass(frozen=True)
class RoomPlan:
    name: str
    zones: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class FloorPlan:
    name: str
    rooms: list[RoomPlan] = field(default_factory=list)


@dataclass
class SeededStructure:
    """Axes and iterations touched by one template run."""

    contexts: list[LoopContext] = field(default_factory=list)
    iterations: list[LoopIteration] = field(default_factory=list)

    def extend(self, other: "SeededStructure") -> "SeededStructure":
        self.contexts.extend(other.contexts)
        self.iterations.extend(other.iterations)
        return self


class LoopFactory:
    def __init__(self, service: LoopService) -> None:
        self.service = service

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def create_floor_plan(
        self, project_id: str, floors: list[FloorPlan], actor_id: str = SYSTEM_ACTOR
    ) -> SeededStructure:
        """Floors > rooms > zones, each level in its own axis and nested across axes."""
        seeded = SeededStructure()
        floor_ctx = self._ensure_context(project_id, "Floors", LoopType.FLOOR, binding_key("floors"), 0, actor_id)
        room_ctx = self._ensure_context(project_id, "Rooms", LoopType.LOCATION, binding_key("rooms"), 1, actor_id)
        seeded.contexts.extend([floor_ctx, room_ctx])

        zone_ctx: LoopContext | None = None
        if any(room.zones for floor in floors for room in floor.rooms):
            zone_ctx = self._ensure_context(project_id, "Zones", LoopType.ZONE, binding_key("zones"), 2, actor_id)
            seeded.contexts.append(zone_ctx)

        for floor_index, floor in enumerate(floors):
            floor_it = self._ensure_iteration(floor_ctx, floor.name, None, floor_index)
            seeded.iterations.append(floor_it)
            for room_index, room in enumerate(floor.rooms):
                room_it = self._ensure_iteration(room_ctx, room.name, floor_it.id, room_index)
                seeded.iterations.append(room_it)
                if zone_ctx is None:
                    continue
                for zone_index, zone in enumerate(room.zones):
                    seeded.iterations.append(self._ensure_iteration(zone_ctx, zone, room_it.id, zone_index))
        return seeded

    def create_simple_rooms(self, project_id: str, rooms: list[str], actor_id: str = SYSTEM_ACTOR) -> SeededStructure:
        room_ctx = self._ensure_context(project_id, "Rooms", LoopType.LOCATION, binding_key("rooms"), 0, actor_id)
        iterations = [self._ensure_iteration(room_ctx, room, None, index) for index, room in enumerate(rooms)]
        return SeededStructure(contexts=[room_ctx], iterations=iterations)

    def create_work_categories(
        self, project_id: str, categories: list[str], actor_id: str = SYSTEM_ACTOR
    ) -> SeededStructure:
        # Work categories are not property-transformable.
        contexts = [
            self._ensure_context(
                project_id, name, LoopType.WORK_CATEGORY, binding_key("work-category", name), index, actor_id
            )
            for index, name in enumerate(categories)
        ]
        return SeededStructure(contexts=contexts)

    def create_phases(self, project_id: str, phases: list[str], actor_id: str = SYSTEM_ACTOR) -> SeededStructure:
        contexts = [
            self._ensure_context(project_id, name, LoopType.PHASE, binding_key("phase", name), index, actor_id)
            for index, name in enumerate(phases)
        ]
        return SeededStructure(contexts=contexts)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def create_standard_renovation_structure(
        self, project_id: str, rooms: list[str], actor_id: str = SYSTEM_ACTOR
    ) -> SeededStructure:
        seeded = self.create_simple_rooms(project_id, rooms, actor_id)
        seeded.extend(self.create_phases(project_id, STANDARD_RENOVATION_PHASES, actor_id))
        return seeded.extend(self.create_work_categories(project_id, STANDARD_RENOVATION_CATEGORIES, actor_id))

    def create_new_construction_structure(
        self, project_id: str, floors: list[FloorPlan], actor_id: str = SYSTEM_ACTOR
    ) -> SeededStructure:
        seeded = self.create_floor_plan(project_id, floors, actor_id)
        seeded.extend(self.create_phases(project_id, NEW_CONSTRUCTION_PHASES, actor_id))
        return seeded.extend(self.create_work_categories(project_id, NEW_CONSTRUCTION_CATEGORIES, actor_id))

    def create_kitchen_bath_structure(
        self, project_id: str, rooms: list[str], actor_id: str = SYSTEM_ACTOR
    ) -> SeededStructure:
        seeded = self.create_simple_rooms(project_id, rooms, actor_id)
        seeded.extend(self.create_phases(project_id, KITCHEN_BATH_PHASES, actor_id))
        return seeded.extend(self.create_work_categories(project_id, KITCHEN_BATH_CATEGORIES, actor_id))

    def create_exterior_structure(
        self, project_id: str, areas: list[str], actor_id: str = SYSTEM_ACTOR
    ) -> SeededStructure:
        area_ctx = self._ensure_context(project_id, "Areas", LoopType.ZONE, binding_key("areas"), 0, actor_id)
        seeded = SeededStructure(
            contexts=[area_ctx],
            iterations=[self._ensure_iteration(area_ctx, area, None, index) for index, area in enumerate(areas)],
        )
        seeded.extend(self.create_phases(project_id, EXTERIOR_PHASES, actor_id))
        return seeded.extend(self.create_work_categories(project_id, EXTERIOR_CATEGORIES, actor_id))

    def create_interiors_structure(
        self, project_id: str, rooms: list[str], actor_id: str = SYSTEM_ACTOR
    ) -> SeededStructure:
        seeded = self.create_simple_rooms(project_id, rooms, actor_id)
        seeded.extend(self.create_phases(project_id, INTERIORS_STAGES, actor_id))
        return seeded.extend(self.create_work_categories(project_id, INTERIORS_WORK_CATEGORIES, actor_id))

    def create_structure_for_division(
        self, project_id: str, division: str, locations: list[str], actor_id: str = SYSTEM_ACTOR
    ) -> SeededStructure:
        if division == "interiors":
            return self.create_interiors_structure(project_id, locations, actor_id)
        if division == "exteriors":
            return self.create_exterior_structure(project_id, locations, actor_id)
        if division in {"diy", "maintenance"}:
            return self.create_simple_rooms(project_id, locations, actor_id)
        raise ValueError(f"Unknown division: {division!r} (expected one of: {', '.join(DIVISIONS)})")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_context(
        self,
        project_id: str,
        name: str,
        loop_type: LoopType,
        key: str,
        display_order: int,
        actor_id: str,
    ) -> LoopContext:
        existing = self.service.find_context_by_binding_key(project_id, key)
        if existing is not None:
            if existing.loop_type != loop_type:
                raise ValueError(
                    f"binding key {key!r} already names a {existing.loop_type.value} axis, not {loop_type.value}"
                )
            return existing
        return self.service.create_context(
            project_id,
            name,
            loop_type,
            binding_key=key,
            display_order=display_order,
            actor_id=actor_id,
        )

    def _ensure_iteration(
        self,
        context: LoopContext,
        name: str,
        parent_id: str | None,
        display_order: int,
    ) -> LoopIteration:
        for candidate in self.service.list_iterations_by_context(context.id):
            if candidate.name == name.strip() and candidate.parent_iteration_id == parent_id:
                return candidate
        return self.service.create_iteration(
            context.id,
            context.project_id,
            name,
            parent_iteration_id=parent_id,
            display_order=display_order,
        )
