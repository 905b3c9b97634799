"""Fix history: persisted audit trail of repair sessions."""

from mender.history.engine import create_history_engine
from mender.history.models import (
    COMPLETED_FAILED,
    COMPLETED_SUCCESS,
    INITIAL_GENERATED,
    STARTED,
    AttemptRecord,
    SessionInfo,
    SessionSummary,
    attempt_status,
    is_terminal,
    status_rank,
)
from mender.history.sql import SqlHistoryStore
from mender.history.store import FileHistoryStore, HistoryStore

__all__ = [
    "COMPLETED_FAILED",
    "COMPLETED_SUCCESS",
    "INITIAL_GENERATED",
    "STARTED",
    "AttemptRecord",
    "FileHistoryStore",
    "HistoryStore",
    "SessionInfo",
    "SessionSummary",
    "SqlHistoryStore",
    "attempt_status",
    "create_history_engine",
    "is_terminal",
    "status_rank",
]
