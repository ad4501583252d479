from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back; every timestamp we write is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionORM(Base):
    __tablename__ = "conversation_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(String, nullable=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    # Messages, draft and stage history are stored as JSON documents; they are
    # always read and written together with the session row.
    messages: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    structure_draft: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    stage_history: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    @staticmethod
    def column_values(session: "ConversationSession") -> dict[str, Any]:  # type: ignore[name-defined]
        data = session.model_dump(mode="json")
        return {
            "owner_id": session.owner_id,
            "title": session.title,
            "stage": session.stage.value,
            "messages": data["messages"],
            "structure_draft": data["structure_draft"],
            "stage_history": data["stage_history"],
            "revision": session.revision,
            "created_at": session.created_at,
            "updated_at": session.updated_at,
            "expires_at": session.expires_at,
            "expired_at": session.expired_at,
        }

    @classmethod
    def from_domain(cls, session: "ConversationSession") -> "SessionORM":  # type: ignore[name-defined]
        return cls(id=session.id, **cls.column_values(session))

    def to_domain(self) -> "ConversationSession":  # type: ignore[name-defined]
        from src.copilot.domain.models.conversation_session import ConversationSession

        return ConversationSession.model_validate(
            {
                "id": self.id,
                "owner_id": self.owner_id,
                "title": self.title,
                "stage": self.stage,
                "messages": self.messages or [],
                "structure_draft": self.structure_draft,
                "stage_history": self.stage_history or [],
                "revision": self.revision,
                "created_at": _aware(self.created_at),
                "updated_at": _aware(self.updated_at),
                "expires_at": _aware(self.expires_at),
                "expired_at": _aware(self.expired_at),
            }
        )


class GenerationTransactionORM(Base):
    __tablename__ = "generation_transactions"

    idempotency_key: Mapped[str] = mapped_column(String(160), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    failure: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def update_from_domain(self, transaction: "GenerationTransaction") -> None:  # type: ignore[name-defined]
        data = transaction.model_dump(mode="json")
        self.session_id = transaction.session_id
        self.owner_id = transaction.owner_id
        self.status = transaction.status.value
        self.created = data["created"]
        self.result = data["result"]
        self.failure = data["failure"]
        self.started_at = transaction.started_at
        self.finished_at = transaction.finished_at

    @classmethod
    def from_domain(cls, transaction: "GenerationTransaction") -> "GenerationTransactionORM":  # type: ignore[name-defined]
        orm = cls(idempotency_key=transaction.idempotency_key)
        orm.update_from_domain(transaction)
        return orm

    def to_domain(self) -> "GenerationTransaction":  # type: ignore[name-defined]
        from src.copilot.domain.models.generation import GenerationTransaction

        return GenerationTransaction.model_validate(
            {
                "idempotency_key": self.idempotency_key,
                "session_id": self.session_id,
                "owner_id": self.owner_id,
                "status": self.status,
                "created": self.created or [],
                "result": self.result,
                "failure": self.failure,
                "started_at": _aware(self.started_at),
                "finished_at": _aware(self.finished_at),
            }
        )
