"""SQL implementation of the HistoryStore.

All queries use SQLAlchemy 2.0 style (select() + session.execute()). Each
storage primitive runs in its own short transaction.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from mender.exceptions import HistoryPersistenceError
from mender.history.engine import create_history_engine, create_session_factory, init_db
from mender.history.models import AttemptRecord, SessionInfo, SessionSummary, utcnow
from mender.history.schema import AttemptRow, SessionOutcomeRow, SessionRow, StatusEventRow
from mender.history.store import HistoryStore

if TYPE_CHECKING:
    from collections.abc import Iterator

    from sqlalchemy import Engine
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def _to_info(row: SessionRow) -> SessionInfo:
    return SessionInfo(
        session_id=row.session_id,
        project_identifier=row.project_identifier,
        description=row.description,
        workspace_path=row.workspace_path,
        artifact_path=row.artifact_path,
        status=row.status,
        status_history=[event.status for event in row.status_events],
        start_time=row.start_time,
        last_updated=row.last_updated,
    )


class SqlHistoryStore(HistoryStore):
    """History backed by any SQLAlchemy engine.

    Usage::

        store = SqlHistoryStore.from_url("sqlite:///history.db")
        sid = store.init_session("dex", "a token swap", "/tmp/dex")
    """

    def __init__(self, engine: Engine) -> None:
        super().__init__()
        self._engine = engine
        self._session_factory = create_session_factory(engine)
        try:
            init_db(engine)
        except SQLAlchemyError as exc:
            logger.warning("Could not initialize history tables: %s", exc)

    @classmethod
    def from_url(cls, url: str | None = None) -> SqlHistoryStore:
        """Open a store at *url*, or an in-memory SQLite store if None."""
        return cls(create_history_engine(url=url) if url else create_history_engine())

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise HistoryPersistenceError(f"{action}: {exc}") from exc

    def _get_row(self, session: Session, session_id: str) -> SessionRow | None:
        return session.execute(
            select(SessionRow).where(SessionRow.session_id == session_id)
        ).scalar_one_or_none()

    def _create_session(self, info: SessionInfo) -> None:
        with self._session(f"create session {info.session_id}") as session:
            if self._get_row(session, info.session_id) is not None:
                raise HistoryPersistenceError(f"session already exists: {info.session_id}")
            session.add(
                SessionRow(
                    session_id=info.session_id,
                    project_identifier=info.project_identifier,
                    description=info.description,
                    workspace_path=info.workspace_path,
                    artifact_path=info.artifact_path,
                    status=info.status,
                    start_time=info.start_time,
                    last_updated=info.last_updated,
                )
            )
            for status in info.status_history:
                session.add(
                    StatusEventRow(
                        session_id=info.session_id, status=status, created_at=info.start_time
                    )
                )

    def _write_session(self, info: SessionInfo) -> None:
        with self._session(f"update session {info.session_id}") as session:
            row = self._get_row(session, info.session_id)
            if row is None:
                raise HistoryPersistenceError(f"unknown session: {info.session_id}")
            recorded = session.execute(
                select(func.count())
                .select_from(StatusEventRow)
                .where(StatusEventRow.session_id == info.session_id)
            ).scalar_one()
            for status in info.status_history[recorded:]:
                session.add(
                    StatusEventRow(
                        session_id=info.session_id, status=status, created_at=info.last_updated
                    )
                )
            row.status = info.status
            row.last_updated = info.last_updated
            row.description = info.description
            row.artifact_path = info.artifact_path

    def _read_session(self, session_id: str) -> SessionInfo | None:
        with self._session(f"read session {session_id}") as session:
            row = self._get_row(session, session_id)
            return _to_info(row) if row is not None else None

    def _list_sessions(self) -> list[SessionInfo]:
        with self._session("list sessions") as session:
            rows = session.execute(select(SessionRow).order_by(SessionRow.start_time)).scalars()
            return [_to_info(row) for row in rows]

    def _write_initial(
        self, info: SessionInfo, code: str, generation_log: str | dict | None
    ) -> None:
        with self._session(f"record initial generation {info.session_id}") as session:
            row = self._get_row(session, info.session_id)
            if row is None:
                raise HistoryPersistenceError(f"unknown session: {info.session_id}")
            row.initial_code = code
            row.generation_log_json = {
                "timestamp": utcnow().isoformat(),
                "generation_details": generation_log or "",
            }

    def _write_attempt(self, info: SessionInfo, record: AttemptRecord) -> None:
        with self._session(f"record attempt {record.attempt} of {info.session_id}") as session:
            session.add(
                AttemptRow(
                    session_id=info.session_id,
                    attempt=record.attempt,
                    code=record.code,
                    diagnostic=record.diagnostic,
                    analysis=record.analysis,
                    fixes_json=list(record.fixes),
                    created_at=record.timestamp,
                )
            )

    def _read_attempts(self, session_id: str) -> list[AttemptRecord]:
        with self._session(f"read attempts of {session_id}") as session:
            rows = session.execute(
                select(AttemptRow)
                .where(AttemptRow.session_id == session_id)
                .order_by(AttemptRow.attempt)
            ).scalars()
            return [
                AttemptRecord(
                    attempt=row.attempt,
                    code=row.code,
                    diagnostic=row.diagnostic,
                    analysis=row.analysis,
                    fixes=list(row.fixes_json or []),
                    timestamp=row.created_at,
                )
                for row in rows
            ]

    def _last_attempt_index(self, session_id: str) -> int:
        with self._session(f"read last attempt of {session_id}") as session:
            last = session.execute(
                select(func.max(AttemptRow.attempt)).where(AttemptRow.session_id == session_id)
            ).scalar_one_or_none()
            return last or 0

    def _write_outcome(self, info: SessionInfo, summary: SessionSummary) -> None:
        with self._session(f"record outcome of {info.session_id}") as session:
            session.merge(
                SessionOutcomeRow(
                    session_id=info.session_id,
                    success=summary.success,
                    total_attempts=summary.total_attempts,
                    errors_json=list(summary.errors_encountered),
                    last_error=summary.last_error,
                    final_code=summary.final_code,
                    build_log=summary.build_log,
                    completed_at=summary.completed_at,
                )
            )

    def _read_summary(self, session_id: str) -> SessionSummary | None:
        with self._session(f"read outcome of {session_id}") as session:
            outcome = session.execute(
                select(SessionOutcomeRow).where(SessionOutcomeRow.session_id == session_id)
            ).scalar_one_or_none()
            if outcome is None:
                return None
            row = self._get_row(session, session_id)
            return SessionSummary(
                session_id=session_id,
                success=outcome.success,
                total_attempts=outcome.total_attempts,
                errors_encountered=list(outcome.errors_json or []),
                last_error=outcome.last_error,
                artifact_path=row.artifact_path if row is not None else None,
                final_code=outcome.final_code,
                build_log=outcome.build_log,
                completed_at=outcome.completed_at,
            )

    def close(self) -> None:
        self._engine.dispose()
