"""Correction loop configuration.

Provides LoopState and RepairConfig.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from mender.repair.models import ProgressEvent


class LoopState(str, enum.Enum):
    """States of the correction loop.

    ``SUCCESS``, ``EXHAUSTED`` and ``CANCELLED`` are terminal.
    """

    IDLE = "idle"
    BUILD = "build"
    ANALYZE = "analyze"
    FIX_TURN = "fix_turn"
    DONE_TURN = "done_turn"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (LoopState.SUCCESS, LoopState.EXHAUSTED, LoopState.CANCELLED)


@dataclass
class RepairConfig:
    """Configuration for one correction loop.

    Mutable dataclass; callers may adjust settings between runs.

    Attributes:
        artifact_path: Main source file, relative to the workspace.
        max_attempts: Build/fix cycles before giving up.
        max_tool_turns: Oracle turns per fix exchange.
        max_span_repairs: Span repairs allowed per run before the loop
            falls back to the tool exchange only.
        span_repair: Try span repair before the tool exchange.
        system_prompt: Override for the default repair system prompt.
        on_event: Callback receiving ProgressEvents.
    """

    artifact_path: str = "src/main.leo"
    max_attempts: int = 5
    max_tool_turns: int = 10
    max_span_repairs: int = 3
    span_repair: bool = True
    system_prompt: str | None = None
    on_event: Callable[[ProgressEvent], None] | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_tool_turns < 1:
            raise ValueError("max_tool_turns must be at least 1")
        if self.max_span_repairs < 0:
            raise ValueError("max_span_repairs must not be negative")
