from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.aba.models import Base, utcnow
from app.aba.utils import iso


class EmailQueueItem(Base):
    __tablename__ = "email_queue_items"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", name="uq_email_queue_entity"),
        Index("idx_email_queue_status", "status"),
        Index("idx_email_queue_batch", "batch_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)  # REGULAR, BCBA
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)  # timesheet id
    queued_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="QUEUED")  # QUEUED, SENDING, SENT, FAILED
    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    queued_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    queued_by = relationship("User", foreign_keys=[queued_by_user_id], lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "queued_by": self.queued_by.email if self.queued_by else None,
            "status": self.status,
            "batch_id": self.batch_id,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "queued_at": iso(self.queued_at),
            "sent_at": iso(self.sent_at),
        }
