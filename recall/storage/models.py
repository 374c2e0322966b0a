"""SQLAlchemy ORM models for the context memory store."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

PATTERN_TYPES = ("command_sequence", "error_solution", "file_cluster", "success_signal")


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ContextFolder(Base):
    __tablename__ = "context_folders"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    project_path: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    auto_created: Mapped[bool] = mapped_column(Boolean, default=True)
    watcher_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    sessions: Mapped[list["ContextSession"]] = relationship(back_populates="folder")
    insights: Mapped[list["LearnedInsight"]] = relationship(back_populates="folder")


class ContextSession(Base):
    __tablename__ = "context_sessions"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    folder_id: Mapped[str] = mapped_column(
        Text, ForeignKey("context_folders.id", ondelete="CASCADE"), nullable=False
    )
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    total_conversations: Mapped[int] = mapped_column(Integer, default=0)
    success_rate: Mapped[float] = mapped_column(Float, default=0.0)
    summary: Mapped[Optional[str]] = mapped_column(Text)
    next_steps: Mapped[Optional[list[str]]] = mapped_column(JSON)
    files_modified: Mapped[Optional[list[str]]] = mapped_column(JSON, default=lambda: [])

    folder: Mapped["ContextFolder"] = relationship(back_populates="sessions")
    conversations: Mapped[list["ClaudeConversation"]] = relationship(
        back_populates="session", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_context_sessions_folder", "folder_id"),
        Index(
            "uq_context_sessions_open_folder",
            "folder_id",
            unique=True,
            sqlite_where=text("end_time IS NULL"),
            postgresql_where=text("end_time IS NULL"),
        ),
        Index("idx_context_sessions_activity", "last_activity_at"),
    )


class ClaudeConversation(Base):
    __tablename__ = "claude_conversations"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        Text, ForeignKey("context_sessions.id", ondelete="CASCADE"), nullable=False
    )
    turn_key: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    source_session_id: Mapped[Optional[str]] = mapped_column(Text)
    user_input: Mapped[str] = mapped_column(Text, CheckConstraint("length(user_input) > 0"), nullable=False)
    claude_reply: Mapped[str] = mapped_column(Text, nullable=False, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    success: Mapped[Optional[int]] = mapped_column(
        Integer, CheckConstraint("success IN (0, 1) OR success IS NULL")
    )
    error_type: Mapped[Optional[str]] = mapped_column(Text)
    files_involved: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=lambda: [])
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    context_used: Mapped[Optional[str]] = mapped_column(Text)
    embedding: Mapped[Optional[str]] = mapped_column(Text)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    session: Mapped["ContextSession"] = relationship(back_populates="conversations")

    __table_args__ = (
        Index("idx_claude_conversations_session", "session_id"),
        Index("idx_claude_conversations_timestamp", "timestamp"),
        Index("idx_claude_conversations_source", "source_session_id"),
    )


class DetectedPattern(Base):
    __tablename__ = "detected_patterns"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        Text, ForeignKey("context_sessions.id", ondelete="CASCADE"), nullable=False
    )
    folder_id: Mapped[str] = mapped_column(
        Text, ForeignKey("context_folders.id", ondelete="CASCADE"), nullable=False
    )
    pattern_type: Mapped[str] = mapped_column(
        Text,
        CheckConstraint(
            "pattern_type IN ('command_sequence','error_solution','file_cluster','success_signal')"
        ),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_description: Mapped[str] = mapped_column(Text, nullable=False)
    frequency: Mapped[int] = mapped_column(Integer, default=1)
    confidence: Mapped[float] = mapped_column(
        Float, CheckConstraint("confidence >= 0.0 AND confidence <= 1.0"), default=0.5
    )
    first_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSON, default=lambda: {})

    __table_args__ = (
        UniqueConstraint("folder_id", "pattern_type", "normalized_description"),
        Index("idx_detected_patterns_type", "pattern_type"),
        Index("idx_detected_patterns_session", "session_id"),
    )


class LearnedInsight(Base):
    __tablename__ = "learned_insights"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    folder_id: Mapped[str] = mapped_column(
        Text, ForeignKey("context_folders.id", ondelete="CASCADE"), nullable=False
    )
    insight_type: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(
        Float, CheckConstraint("confidence >= 0.0 AND confidence <= 1.0"), default=0.5
    )
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    source_pattern_id: Mapped[Optional[str]] = mapped_column(
        Text, ForeignKey("detected_patterns.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_used: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    folder: Mapped["ContextFolder"] = relationship(back_populates="insights")

    __table_args__ = (
        UniqueConstraint("folder_id", "insight_type", "title"),
        Index("idx_learned_insights_folder", "folder_id"),
    )
