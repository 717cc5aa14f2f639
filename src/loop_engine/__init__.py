from importlib.metadata import version

from .activity import ActivitySink, JsonlActivityLog, MemoryActivityLog
from .aggregation import StatusAggregator, count_children, derive_status
from .canonical import fingerprint, to_canonical_json
from .contexts import LoopContextRegistry
from .exceptions import InvalidStateError, LoopEngineError, NotFoundError, StoreFailureError
from .factory import FloorPlan, LoopFactory, RoomPlan, SeededStructure
from .iterations import LoopIterationStore
from .models import (
    PROPERTY_TRANSFORMABLE_TYPES,
    ActivityEvent,
    ChildCounts,
    LoopContext,
    LoopIteration,
    LoopStatus,
    LoopTreeNode,
    LoopType,
    ValidationIssue,
)
from .service import LoopService
from .settings import RuntimeSettings
from .state_store import FileLoopStore, InMemoryLoopStore, LoopStore, build_store
from .transform import TransformableSelector, is_transformable
from .tree import LoopTreeAssembler, iter_tree, tree_to_dict


def get_version() -> str:
    try:
        return version("loop-engine")
    except Exception:
        return "0.0.0"


__all__ = [
    "ActivityEvent",
    "ActivitySink",
    "ChildCounts",
    "FileLoopStore",
    "FloorPlan",
    "InMemoryLoopStore",
    "InvalidStateError",
    "JsonlActivityLog",
    "LoopContext",
    "LoopContextRegistry",
    "LoopEngineError",
    "LoopFactory",
    "LoopIteration",
    "LoopIterationStore",
    "LoopService",
    "LoopStatus",
    "LoopStore",
    "LoopTreeAssembler",
    "LoopTreeNode",
    "LoopType",
    "MemoryActivityLog",
    "NotFoundError",
    "PROPERTY_TRANSFORMABLE_TYPES",
    "RoomPlan",
    "RuntimeSettings",
    "SeededStructure",
    "StatusAggregator",
    "StoreFailureError",
    "TransformableSelector",
    "ValidationIssue",
    "build_store",
    "count_children",
    "derive_status",
    "fingerprint",
    "get_version",
    "is_transformable",
    "iter_tree",
    "to_canonical_json",
    "tree_to_dict",
]
