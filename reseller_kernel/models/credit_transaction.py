"""
Module: reseller_kernel.models.credit_transaction
Responsibility: ORM persistence for the append-only credit audit trail.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (db/immutability.py).
    - seq is strictly increasing in write order.
    - Exactly one row per balance a transfer-protocol call touches; all rows
      from one call share batch_id and created_at.
    - balance_after equals the owning Balance row at the instant the row
      was written.
    - account_id carries no foreign key, so history survives the deletion
      of the account it describes.

Audit relevance:
    The reconciliation check (selectors/ledger_selector.py) replays these
    rows against the live Balance.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from reseller_kernel.db.base import Base, UUIDString, utcnow
from reseller_kernel.db.types import UTCDateTime


class TransactionType(str, Enum):
    CREDIT_ADDED = "credit_added"
    CREDIT_REMOVED = "credit_removed"
    CREDIT_SPENT = "credit_spent"
    UNLIMITED_GRANTED = "unlimited_granted"
    UNLIMITED_REVOKED = "unlimited_revoked"


class CreditTransaction(Base):
    """
    One signed movement on one account's balance.

    amount > 0 is credit added, amount < 0 is credit spent or removed,
    amount == 0 only for unlimited flag changes.
    """

    __tablename__ = "credit_transactions"

    __table_args__ = (
        Index("idx_credit_txn_account", "account_id", "seq"),
        Index("idx_credit_txn_batch", "batch_id"),
        Index("idx_credit_txn_related", "related_account_id"),
    )

    # Global write order, from SequenceService
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    account_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # Signed amount
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Balance of account_id right after this row was applied
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    description: Mapped[str] = mapped_column(String(4000), nullable=False)

    # Counterparty (the other leg, or the account a charge paid for)
    related_account_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    performed_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Shared by every row written by one protocol call
    batch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction {self.transaction_type} {self.amount:+d} "
            f"on {self.account_id} -> {self.balance_after}>"
        )
