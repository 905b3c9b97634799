"""Correction loop records.

Attempt, ProgressEvent and CorrectionResult are frozen: once written they are
an audit record of what happened.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mender.repair.config import LoopState

if TYPE_CHECKING:
    from mender.build import BuildOutcome


class RepairStrategy(str, enum.Enum):
    """How an attempt tried to fix the artifact."""

    NONE = "none"
    TOOL_LOOP = "tool_loop"
    SPAN_REPAIR = "span_repair"


class EventKind(str, enum.Enum):
    """Progress event kinds emitted by the loop."""

    BUILD_STARTED = "build_started"
    BUILD_SUCCEEDED = "build_succeeded"
    BUILD_FAILED = "build_failed"
    FIXING_STARTED = "fixing_started"
    FIXING_PROGRESS = "fixing_progress"
    FIXING_SUCCESS = "fixing_success"
    FIXING_FAILED = "fixing_failed"
    PROJECT_COMPLETE = "project_complete"
    ERROR = "error"


@dataclass(frozen=True)
class Attempt:
    """One build/fix cycle.

    Attributes:
        index: 1-based attempt number.
        diagnostic_text: Build output that was analyzed ("" on success).
        analysis_text: The oracle's explanation, or the failure reason.
        fixes_applied: Descriptions of successful mutating calls.
        code_snapshot: Artifact contents as built in this attempt.
        build_succeeded: Whether this attempt's build passed.
        strategy: Which fix strategy ran.
    """

    index: int
    diagnostic_text: str = ""
    analysis_text: str = ""
    fixes_applied: tuple[str, ...] = ()
    code_snapshot: str = ""
    build_succeeded: bool = False
    strategy: RepairStrategy = RepairStrategy.NONE


@dataclass(frozen=True)
class ProgressEvent:
    """Notification emitted while the loop runs. Never affects the loop."""

    kind: EventKind
    attempt: int = 0
    message: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None


@dataclass(frozen=True)
class CorrectionResult:
    """Final result of a correction loop run."""

    state: LoopState
    attempts: tuple[Attempt, ...] = ()
    last_outcome: BuildOutcome | None = None
    build_calls: int = 0
    oracle_calls: int = 0
    session_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is LoopState.SUCCESS

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def last_diagnostic(self) -> str:
        """Diagnostic of the most recent failed build, or ""."""
        if self.last_outcome is not None and not self.last_outcome.succeeded:
            return self.last_outcome.combined_output
        for attempt in reversed(self.attempts):
            if attempt.diagnostic_text:
                return attempt.diagnostic_text
        return ""
