"""
Module: reseller_kernel.models.account
Responsibility: ORM persistence for provisioned identities (operator, master,
    reseller, client) and their position in the reseller hierarchy.
Architecture position: Kernel > Models.  May import from db/ only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - role is one of AccountRole; status is one of AccountStatus.
    - creator_id is a plain column with no foreign key: removing a creator
      never cascades into or blocks the accounts it provisioned.
    - email is unique when present.

Failure modes:
    - IntegrityError on duplicate email (uq_account_email).

Audit relevance:
    creator_id is the hierarchy edge every authorization rule walks.
    TrackedBase columns record who provisioned and who last edited.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from reseller_kernel.db.base import TrackedBase, UUIDString
from reseller_kernel.db.types import UTCDateTime


class AccountRole(str, Enum):
    """Position of an account in the reseller hierarchy.

    operator > master > reseller > client.  Operators are always unlimited
    and never own a Balance row.
    """

    OPERATOR = "operator"
    MASTER = "master"
    RESELLER = "reseller"
    CLIENT = "client"

    @property
    def label(self) -> str:
        """Display label used in transaction descriptions."""
        return _ROLE_LABELS[self]


_ROLE_LABELS = {
    AccountRole.OPERATOR: "Admin",
    AccountRole.MASTER: "Master",
    AccountRole.RESELLER: "Revenda",
    AccountRole.CLIENT: "Cliente",
}


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class Account(TrackedBase):
    """
    A provisioned identity.

    Guarantees:
        - Non-operator accounts are created together with exactly one
          Balance row, in the same transaction.
        - status/credit_expiry_at are only changed by the provisioning
          service (explicit caller actions or the expiry sweep).
    """

    __tablename__ = "accounts"

    __table_args__ = (
        UniqueConstraint("email", name="uq_account_email"),
        Index("idx_account_creator", "creator_id"),
        Index("idx_account_role", "role"),
        Index("idx_account_status_expiry", "status", "credit_expiry_at"),
    )

    role: Mapped[str] = mapped_column(String(20), nullable=False)

    # Account that provisioned this one; None for self-registered operators
    creator_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=AccountStatus.ACTIVE.value,
    )

    credit_expiry_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )

    plan_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    billing_expiry_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )

    # Trial accounts are never charged
    is_trial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Contact profile
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    tax_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    def __repr__(self) -> str:
        return f"<Account {self.id} {self.role} {self.status}>"

    @property
    def account_role(self) -> AccountRole:
        return AccountRole(self.role)

    @property
    def is_operator(self) -> bool:
        return self.role == AccountRole.OPERATOR.value
