"""Build repair: the correction loop and span repair strategy."""

from mender.repair.config import LoopState, RepairConfig
from mender.repair.loop import CorrectionLoop
from mender.repair.models import (
    Attempt,
    CorrectionResult,
    EventKind,
    ProgressEvent,
    RepairStrategy,
)
from mender.repair.span import (
    DiagnosticLocation,
    SpanRepairResult,
    SpanRepairStrategy,
    detect_incomplete,
    extract_location,
)

__all__ = [
    "Attempt",
    "CorrectionLoop",
    "CorrectionResult",
    "DiagnosticLocation",
    "EventKind",
    "LoopState",
    "ProgressEvent",
    "RepairConfig",
    "RepairStrategy",
    "SpanRepairResult",
    "SpanRepairStrategy",
    "detect_incomplete",
    "extract_location",
]
