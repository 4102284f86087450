"""
Module: reseller_kernel.models.balance
Responsibility: ORM persistence for the one-per-account credit balance.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One row per non-operator account (unique account_id).
    - balance >= 0 unless unlimited (ck_balance_non_negative).
    - balance and unlimited never change through the ORM unit of work; the
      only write path is LedgerStore's compare-and-set UPDATE
      (db/immutability.py blocks attribute-level changes).

Failure modes:
    - IntegrityError if a write would leave a limited balance negative.
    - ImmutabilityViolationError if balance/unlimited are assigned on a
      loaded instance and flushed.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from reseller_kernel.db.base import Base, UUIDString, utcnow
from reseller_kernel.db.types import UTCDateTime


class Balance(Base):
    """Integer credit balance plus the unlimited flag for one account."""

    __tablename__ = "balances"

    __table_args__ = (
        UniqueConstraint("account_id", name="uq_balance_account"),
        CheckConstraint(
            "balance >= 0 OR unlimited",
            name="ck_balance_non_negative",
        ),
    )

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
    )

    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # When true the account pays nothing for grants and charges; incoming
    # credit is still tracked
    unlimited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        flag = " unlimited" if self.unlimited else ""
        return f"<Balance {self.account_id} {self.balance}{flag}>"
