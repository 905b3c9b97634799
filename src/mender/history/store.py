"""HistoryStore: audit trail of every repair session.

The public methods enforce the invariants (attempts strictly increasing,
status never regressing) and never raise: backend failures surface as
HistoryPersistenceError inside the store, are logged, and are swallowed so a
broken disk or database never aborts a repair.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from pydantic import ValidationError

from mender.exceptions import HistoryPersistenceError
from mender.history.models import (
    COMPLETED_FAILED,
    COMPLETED_SUCCESS,
    INITIAL_GENERATED,
    AttemptRecord,
    SessionInfo,
    SessionSummary,
    attempt_status,
    status_rank,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_ATTEMPT_DIR = re.compile(r"^attempt_(\d+)$")


def new_session_id() -> str:
    return uuid.uuid4().hex


class HistoryStore(ABC):
    """Base class for fix-history backends.

    Subclasses implement the ``_``-prefixed storage primitives and may raise
    HistoryPersistenceError from any of them.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def init_session(
        self,
        project_identifier: str,
        description: str = "",
        workspace_path: str = "",
        artifact_path: str | None = None,
        session_id: str | None = None,
    ) -> str:
        """Create a session in status STARTED and return its id.

        The id is returned even when persisting it failed.
        """
        sid = session_id or new_session_id()
        info = SessionInfo(
            session_id=sid,
            project_identifier=project_identifier,
            description=description,
            workspace_path=str(workspace_path),
            artifact_path=artifact_path,
        )
        self._guard("init_session", sid, lambda: self._create_session(info))
        logger.info("History session %s started for %s", sid, project_identifier)
        return sid

    def record_initial_generation(
        self,
        session_id: str,
        code: str,
        generation_log: str | dict | None = None,
    ) -> None:
        """Store the first generated artifact and move to INITIAL_GENERATED."""

        def op() -> None:
            info = self._require_session(session_id)
            self._write_initial(info, code, generation_log)
            self._advance(session_id, INITIAL_GENERATED)

        self._guard("record_initial_generation", session_id, op)

    def record_attempt(
        self,
        session_id: str,
        index: int,
        code: str,
        diagnostic: str,
        analysis: str = "",
        fixes: Iterable[str] = (),
    ) -> bool:
        """Store one correction attempt and move to ATTEMPT_<index>.

        Returns:
            True if recorded; False if the index was out of order, the
            session is already complete, or storage failed.
        """

        def op() -> bool:
            info = self._require_session(session_id)
            if info.terminal:
                logger.warning(
                    "Session %s is %s; ignoring attempt %d", session_id, info.status, index
                )
                return False
            last = self._last_attempt_index(session_id)
            if index < 1 or index <= last:
                logger.warning(
                    "Ignoring out-of-order attempt %d for session %s (last recorded: %d)",
                    index,
                    session_id,
                    last,
                )
                return False
            record = AttemptRecord(
                attempt=index,
                code=code,
                diagnostic=diagnostic,
                analysis=analysis,
                fixes=list(fixes),
            )
            self._write_attempt(info, record)
            self._advance(session_id, attempt_status(index))
            return True

        return bool(self._guard("record_attempt", session_id, op))

    def record_solution(
        self,
        session_id: str,
        code: str,
        build_log: str = "",
        total_attempts: int = 0,
        errors: Iterable[str] = (),
    ) -> None:
        """Store the compiling artifact and complete the session successfully."""

        def op() -> None:
            info = self._require_session(session_id)
            if info.terminal:
                logger.warning("Session %s already %s; solution ignored", session_id, info.status)
                return
            summary = SessionSummary(
                session_id=session_id,
                success=True,
                total_attempts=total_attempts,
                errors_encountered=list(errors),
                artifact_path=info.artifact_path,
                final_code=code,
                build_log=build_log,
            )
            self._write_outcome(info, summary)
            self._advance(session_id, COMPLETED_SUCCESS)

        self._guard("record_solution", session_id, op)

    def record_failure(
        self,
        session_id: str,
        total_attempts: int,
        errors: Iterable[str] = (),
        last_error: str | None = None,
    ) -> None:
        """Complete the session as failed."""

        def op() -> None:
            info = self._require_session(session_id)
            if info.terminal:
                logger.warning("Session %s already %s; failure ignored", session_id, info.status)
                return
            summary = SessionSummary(
                session_id=session_id,
                success=False,
                total_attempts=total_attempts,
                errors_encountered=list(errors),
                last_error=last_error,
                artifact_path=info.artifact_path,
            )
            self._write_outcome(info, summary)
            self._advance(session_id, COMPLETED_FAILED)

        self._guard("record_failure", session_id, op)

    def get_session(self, session_id: str) -> SessionInfo | None:
        return self._guard("get_session", session_id, lambda: self._read_session(session_id))

    def get_attempts(self, session_id: str) -> list[AttemptRecord]:
        attempts = self._guard("get_attempts", session_id, lambda: self._read_attempts(session_id))
        return attempts or []

    def get_summary(self, session_id: str) -> SessionSummary | None:
        """Final outcome of a session, or None while it is still running."""
        return self._guard("get_summary", session_id, lambda: self._read_summary(session_id))

    def list_sessions(self) -> list[SessionInfo]:
        """All sessions, oldest first."""
        sessions = self._guard("list_sessions", "*", self._list_sessions)
        return sorted(sessions or [], key=lambda info: info.start_time)

    def close(self) -> None:
        """Release backend resources."""

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _guard(self, operation: str, session_id: str, fn: Callable[[], T]) -> T | None:
        try:
            with self._lock:
                return fn()
        except HistoryPersistenceError as exc:
            logger.warning("History %s failed for session %s: %s", operation, session_id, exc)
            return None

    def _require_session(self, session_id: str) -> SessionInfo:
        info = self._read_session(session_id)
        if info is None:
            raise HistoryPersistenceError(f"unknown session: {session_id}")
        return info

    def _advance(self, session_id: str, status: str) -> bool:
        info = self._require_session(session_id)
        if status_rank(status) <= status_rank(info.status):
            logger.warning(
                "Ignoring status regression for session %s: %s -> %s",
                session_id,
                info.status,
                status,
            )
            return False
        updated = info.model_copy(
            update={
                "status": status,
                "status_history": [*info.status_history, status],
                "last_updated": utcnow(),
            }
        )
        self._write_session(updated)
        return True

    def _last_attempt_index(self, session_id: str) -> int:
        return max((record.attempt for record in self._read_attempts(session_id)), default=0)

    @abstractmethod
    def _create_session(self, info: SessionInfo) -> None: ...

    @abstractmethod
    def _write_session(self, info: SessionInfo) -> None: ...

    @abstractmethod
    def _read_session(self, session_id: str) -> SessionInfo | None: ...

    @abstractmethod
    def _list_sessions(self) -> list[SessionInfo]: ...

    @abstractmethod
    def _write_initial(
        self, info: SessionInfo, code: str, generation_log: str | dict | None
    ) -> None: ...

    @abstractmethod
    def _write_attempt(self, info: SessionInfo, record: AttemptRecord) -> None: ...

    @abstractmethod
    def _read_attempts(self, session_id: str) -> list[AttemptRecord]: ...

    @abstractmethod
    def _write_outcome(self, info: SessionInfo, summary: SessionSummary) -> None: ...

    @abstractmethod
    def _read_summary(self, session_id: str) -> SessionSummary | None: ...


@contextmanager
def _io(action: str) -> Iterator[None]:
    try:
        yield
    except (OSError, ValueError, KeyError, TypeError, AttributeError, ValidationError) as exc:
        raise HistoryPersistenceError(f"{action}: {exc}") from exc


class FileHistoryStore(HistoryStore):
    """Stores each session as a directory tree of JSON and text files.

    Layout::

        <root>/<session_id>/session_info.json
                           initial/<artifact>, generation_log.json
                           attempts/attempt_001/<artifact>, build_error.txt,
                                                analysis.json, fixes_applied.json
                           solution/<artifact>, build_success.txt, summary.json
    """

    def __init__(self, root: str | Path = "fixhistory") -> None:
        super().__init__()
        self.root = Path(root)

    def _session_dir(self, session_id: str) -> Path:
        if not _SAFE_ID.match(session_id):
            raise HistoryPersistenceError(f"invalid session id: {session_id!r}")
        return self.root / session_id

    @staticmethod
    def _artifact_name(info: SessionInfo) -> str:
        if info.artifact_path:
            return Path(info.artifact_path).name
        return "artifact.txt"

    @staticmethod
    def _write_json(path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")

    def _create_session(self, info: SessionInfo) -> None:
        session_dir = self._session_dir(info.session_id)
        with _io(f"create session {info.session_id}"):
            if (session_dir / "session_info.json").exists():
                raise HistoryPersistenceError(f"session already exists: {info.session_id}")
            session_dir.mkdir(parents=True, exist_ok=True)
            self._write_session(info)

    def _write_session(self, info: SessionInfo) -> None:
        path = self._session_dir(info.session_id) / "session_info.json"
        with _io(f"write {path}"):
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(info.model_dump_json(indent=2), encoding="utf-8")

    def _read_session(self, session_id: str) -> SessionInfo | None:
        path = self._session_dir(session_id) / "session_info.json"
        if not path.is_file():
            return None
        with _io(f"read {path}"):
            return SessionInfo.model_validate_json(path.read_text(encoding="utf-8"))

    def _list_sessions(self) -> list[SessionInfo]:
        if not self.root.is_dir():
            return []
        sessions: list[SessionInfo] = []
        with _io(f"list {self.root}"):
            children = sorted(self.root.iterdir())
        for child in children:
            if not (child / "session_info.json").is_file():
                continue
            try:
                info = self._read_session(child.name)
            except HistoryPersistenceError as exc:
                logger.warning("Skipping unreadable session %s: %s", child.name, exc)
                continue
            if info is not None:
                sessions.append(info)
        return sessions

    def _write_initial(
        self, info: SessionInfo, code: str, generation_log: str | dict | None
    ) -> None:
        initial = self._session_dir(info.session_id) / "initial"
        name = self._artifact_name(info)
        with _io(f"write {initial}"):
            initial.mkdir(parents=True, exist_ok=True)
            (initial / name).write_text(code, encoding="utf-8")
            self._write_json(
                initial / "generation_log.json",
                {
                    "timestamp": utcnow().isoformat(),
                    "code_file": name,
                    "generation_details": generation_log or "",
                    "status": "GENERATED",
                },
            )

    def _attempt_dir(self, session_id: str, index: int) -> Path:
        return self._session_dir(session_id) / "attempts" / f"attempt_{index:03d}"

    def _write_attempt(self, info: SessionInfo, record: AttemptRecord) -> None:
        attempt_dir = self._attempt_dir(info.session_id, record.attempt)
        stamp = record.timestamp.isoformat()
        with _io(f"write {attempt_dir}"):
            attempt_dir.mkdir(parents=True, exist_ok=True)
            (attempt_dir / self._artifact_name(info)).write_text(record.code, encoding="utf-8")
            (attempt_dir / "build_error.txt").write_text(record.diagnostic, encoding="utf-8")
            self._write_json(
                attempt_dir / "analysis.json",
                {"attempt": record.attempt, "timestamp": stamp, "analysis": record.analysis},
            )
            self._write_json(
                attempt_dir / "fixes_applied.json",
                {"attempt": record.attempt, "timestamp": stamp, "fixes": record.fixes},
            )

    def _read_attempts(self, session_id: str) -> list[AttemptRecord]:
        info = self._read_session(session_id)
        if info is None:
            return []
        attempts_dir = self._session_dir(session_id) / "attempts"
        if not attempts_dir.is_dir():
            return []
        name = self._artifact_name(info)
        records: list[AttemptRecord] = []
        with _io(f"list {attempts_dir}"):
            attempt_dirs = sorted(attempts_dir.glob("attempt_*"))
        for attempt_dir in attempt_dirs:
            match = _ATTEMPT_DIR.match(attempt_dir.name)
            if match is None:
                continue
            index = int(match.group(1))
            try:
                records.append(self._read_attempt(attempt_dir, index, name))
            except HistoryPersistenceError as exc:
                # The directory still counts toward attempt ordering
                logger.warning("Unreadable attempt %s: %s", attempt_dir, exc)
                records.append(AttemptRecord(attempt=index))
        return sorted(records, key=lambda record: record.attempt)

    @staticmethod
    def _read_attempt(attempt_dir: Path, index: int, name: str) -> AttemptRecord:
        with _io(f"read {attempt_dir}"):
            analysis = json.loads((attempt_dir / "analysis.json").read_text(encoding="utf-8"))
            fixes = json.loads((attempt_dir / "fixes_applied.json").read_text(encoding="utf-8"))
            code_file = attempt_dir / name
            error_file = attempt_dir / "build_error.txt"
            diagnostic = error_file.read_text(encoding="utf-8") if error_file.is_file() else ""
            data: dict[str, Any] = {
                "attempt": index,
                "code": code_file.read_text(encoding="utf-8") if code_file.is_file() else "",
                "diagnostic": diagnostic,
                "analysis": analysis.get("analysis", ""),
                "fixes": fixes.get("fixes", []),
            }
            if analysis.get("timestamp"):
                data["timestamp"] = analysis["timestamp"]
            return AttemptRecord.model_validate(data)

    def _write_outcome(self, info: SessionInfo, summary: SessionSummary) -> None:
        solution = self._session_dir(info.session_id) / "solution"
        with _io(f"write {solution}"):
            solution.mkdir(parents=True, exist_ok=True)
            if summary.final_code is not None:
                (solution / self._artifact_name(info)).write_text(
                    summary.final_code, encoding="utf-8"
                )
            if summary.build_log is not None:
                (solution / "build_success.txt").write_text(summary.build_log, encoding="utf-8")
            (solution / "summary.json").write_text(
                summary.model_dump_json(indent=2, exclude={"final_code", "build_log"}),
                encoding="utf-8",
            )

    def _read_summary(self, session_id: str) -> SessionSummary | None:
        solution = self._session_dir(session_id) / "solution"
        summary_file = solution / "summary.json"
        if not summary_file.is_file():
            return None
        with _io(f"read {summary_file}"):
            summary = SessionSummary.model_validate_json(summary_file.read_text(encoding="utf-8"))
            info = self._read_session(session_id)
            update: dict[str, Any] = {}
            if info is not None:
                code_file = solution / self._artifact_name(info)
                if code_file.is_file():
                    update["final_code"] = code_file.read_text(encoding="utf-8")
            log_file = solution / "build_success.txt"
            if log_file.is_file():
                update["build_log"] = log_file.read_text(encoding="utf-8")
            return summary.model_copy(update=update) if update else summary

    def solution_path(self, session_id: str) -> Path | None:
        """Path of the stored final artifact, if the session succeeded."""
        info = self.get_session(session_id)
        if info is None:
            return None
        path = self._session_dir(session_id) / "solution" / self._artifact_name(info)
        return path if path.is_file() else None
