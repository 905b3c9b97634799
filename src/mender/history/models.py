"""Fix history records and session status labels.

Provides:
- Status labels (STARTED ... COMPLETED_FAILED) and their total order
- SessionInfo, AttemptRecord, SessionSummary: Pydantic models persisted by
  every HistoryStore backend
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

from pydantic import BaseModel, Field

STARTED = "STARTED"
INITIAL_GENERATED = "INITIAL_GENERATED"
COMPLETED_SUCCESS = "COMPLETED_SUCCESS"
COMPLETED_FAILED = "COMPLETED_FAILED"

_ATTEMPT_RE = re.compile(r"^ATTEMPT_(\d+)$")
_TERMINAL_RANK = 1_000_000


def attempt_status(index: int) -> str:
    return f"ATTEMPT_{index}"


def status_rank(status: str) -> int:
    """Position of *status* in the lifecycle order; -1 if unknown.

    STARTED < INITIAL_GENERATED < ATTEMPT_1 < ATTEMPT_2 < ... < COMPLETED_*.
    """
    if status == STARTED:
        return 0
    if status == INITIAL_GENERATED:
        return 1
    if status in (COMPLETED_SUCCESS, COMPLETED_FAILED):
        return _TERMINAL_RANK
    match = _ATTEMPT_RE.match(status)
    if match:
        return 1 + int(match.group(1))
    return -1


def is_terminal(status: str) -> bool:
    return status in (COMPLETED_SUCCESS, COMPLETED_FAILED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionInfo(BaseModel):
    """One repair session as persisted in session_info.json / sessions."""

    session_id: str
    project_identifier: str
    description: str = ""
    workspace_path: str = ""
    artifact_path: str | None = None
    status: str = STARTED
    status_history: list[str] = Field(default_factory=lambda: [STARTED])
    start_time: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)

    @property
    def terminal(self) -> bool:
        return is_terminal(self.status)


class AttemptRecord(BaseModel):
    """One recorded correction attempt."""

    attempt: int
    code: str = ""
    diagnostic: str = ""
    analysis: str = ""
    fixes: list[str] = []
    timestamp: datetime = Field(default_factory=utcnow)


class SessionSummary(BaseModel):
    """Final outcome of a session (summary.json / session_outcomes)."""

    session_id: str
    success: bool
    total_attempts: int
    errors_encountered: list[str] = []
    last_error: str | None = None
    artifact_path: str | None = None
    final_code: str | None = None
    build_log: str | None = None
    completed_at: datetime = Field(default_factory=utcnow)
