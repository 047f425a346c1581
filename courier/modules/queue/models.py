from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Text, JSON, Index
from courier.core.base import Base, TimestampedMixin, UTCDateTime, utcnow

PENDING = "pending"
PROCESSING = "processing"
SENT = "sent"
FAILED = "failed"

STATUSES = (PENDING, PROCESSING, SENT, FAILED)

class OutboundMessage(Base, TimestampedMixin):
    kind: Mapped[str] = mapped_column(String(16))  # chat | email
    recipient: Mapped[str] = mapped_column(String(255))
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text)

    # NULL = unassigned; otherwise the channel that owns / last owned the row
    channel_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(16), default=PENDING)  # pending | processing | sent | failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    provider_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_outboundmessage_status_scheduled", "status", "scheduled_at"),
    )
