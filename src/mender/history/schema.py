"""SQLAlchemy ORM schema for the SQL history backend.

Tables: sessions, attempts, status_events, session_outcomes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all history ORM models."""

    pass


class SessionRow(Base):
    """One repair session."""

    __tablename__ = "sessions"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    workspace_path: Mapped[str] = mapped_column(Text, nullable=False, default="")
    artifact_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(64), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    initial_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    generation_log_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    attempts: Mapped[list["AttemptRow"]] = relationship(
        "AttemptRow",
        back_populates="session",
        order_by="AttemptRow.attempt",
        cascade="all, delete-orphan",
    )
    status_events: Mapped[list["StatusEventRow"]] = relationship(
        "StatusEventRow",
        order_by="StatusEventRow.event_id",
        cascade="all, delete-orphan",
    )


class AttemptRow(Base):
    """One correction attempt of a session."""

    __tablename__ = "attempts"
    __table_args__ = (UniqueConstraint("session_id", "attempt", name="uq_attempt_index"),)

    attempt_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("sessions.session_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    code: Mapped[str] = mapped_column(Text, nullable=False, default="")
    diagnostic: Mapped[str] = mapped_column(Text, nullable=False, default="")
    analysis: Mapped[str] = mapped_column(Text, nullable=False, default="")
    fixes_json: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    session: Mapped["SessionRow"] = relationship("SessionRow", back_populates="attempts")


class StatusEventRow(Base):
    """Every accepted status transition, in order."""

    __tablename__ = "status_events"

    event_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("sessions.session_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SessionOutcomeRow(Base):
    """Final outcome of a session. At most one per session."""

    __tablename__ = "session_outcomes"

    session_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("sessions.session_id", ondelete="CASCADE"),
        primary_key=True,
    )
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    total_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    errors_json: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    final_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    build_log: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
