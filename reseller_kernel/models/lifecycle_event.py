"""
Module: reseller_kernel.models.lifecycle_event
Responsibility: ORM persistence for webhook dispatch history.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Exactly one row per attempted dispatch, whatever the outcome
      (delivered, rejected, failed, timed out, not configured).
    - Append-only: no UPDATE or DELETE (db/immutability.py).
    - target_account_id carries no foreign key, so a delete_user event can
      be recorded after its account is gone.

Audit relevance:
    Notification problems never surface to callers; this table is the only
    place they are observable.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import BigInteger, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from reseller_kernel.db.base import Base, JSONType, UUIDString
from reseller_kernel.db.types import UTCDateTime


class LifecycleEventType(str, Enum):
    CREATE_USER = "create_user"
    DELETE_USER = "delete_user"
    UPDATE_USER_STATUS = "update_user_status"


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"  # 2xx
    REJECTED = "rejected"  # non-2xx response
    FAILED = "failed"  # request raised
    TIMED_OUT = "timed_out"
    NOT_CONFIGURED = "not_configured"  # no endpoint, synthetic success


# Stored in target_url when no endpoint is configured
NOT_CONFIGURED_URL = "not_configured"


class LifecycleEvent(Base):
    """Record of one webhook dispatch attempt."""

    __tablename__ = "lifecycle_events"

    __table_args__ = (
        Index("idx_lifecycle_target", "target_account_id"),
        Index("idx_lifecycle_type_sent", "event_type", "sent_at"),
    )

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)

    target_url: Mapped[str] = mapped_column(String(2048), nullable=False)

    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Secret credentials are redacted before storage
    request_headers: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False
    )

    outcome: Mapped[str] = mapped_column(String(20), nullable=False)

    response_status_code: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )

    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)

    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    target_account_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    sent_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    def __repr__(self) -> str:
        return f"<LifecycleEvent {self.event_type} {self.outcome} {self.target_account_id}>"
