"""
Module: reseller_kernel.selectors.hierarchy_selector
Responsibility: Role & hierarchy resolution.  Pure reads against the
    accounts table: an account's role, its creator, and batched versions of
    both for listing screens.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - No side effects.  The only failure mode is AccountNotFoundError.
    - Batched lookups issue one query per call regardless of input size,
      and simply omit ids that do not exist.
"""

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select

from reseller_kernel.domain.dtos import AccountInfo
from reseller_kernel.exceptions import AccountNotFoundError
from reseller_kernel.models.account import Account, AccountRole
from reseller_kernel.selectors.base import BaseSelector


class HierarchySelector(BaseSelector[Account]):
    """Read-side view of the account hierarchy."""

    def resolve_role(self, account_id: UUID) -> AccountRole:
        role = self.session.execute(
            select(Account.role).where(Account.id == account_id)
        ).scalar_one_or_none()
        if role is None:
            raise AccountNotFoundError(str(account_id))
        return AccountRole(role)

    def resolve_creator(self, account_id: UUID) -> UUID | None:
        row = self.session.execute(
            select(Account.id, Account.creator_id).where(Account.id == account_id)
        ).one_or_none()
        if row is None:
            raise AccountNotFoundError(str(account_id))
        return row.creator_id

    def resolve_roles(self, account_ids: Iterable[UUID]) -> dict[UUID, AccountRole]:
        """Roles for many accounts in one query."""
        ids = list(set(account_ids))
        if not ids:
            return {}
        rows = self.session.execute(
            select(Account.id, Account.role).where(Account.id.in_(ids))
        ).all()
        return {row.id: AccountRole(row.role) for row in rows}

    def resolve_creators(
        self, account_ids: Iterable[UUID]
    ) -> dict[UUID, UUID | None]:
        """Creator pointers for many accounts in one query."""
        ids = list(set(account_ids))
        if not ids:
            return {}
        rows = self.session.execute(
            select(Account.id, Account.creator_id).where(Account.id.in_(ids))
        ).all()
        return {row.id: row.creator_id for row in rows}

    def get_account(self, account_id: UUID) -> AccountInfo:
        account = self.session.get(Account, account_id, populate_existing=True)
        if account is None:
            raise AccountNotFoundError(str(account_id))
        return AccountInfo.from_model(account)

    def email_in_use(self, email: str, exclude_id: UUID | None = None) -> bool:
        stmt = select(Account.id).where(Account.email == email)
        if exclude_id is not None:
            stmt = stmt.where(Account.id != exclude_id)
        return self.session.execute(stmt.limit(1)).first() is not None

    def list_accounts(
        self,
        creator_id: UUID | None = None,
        role: AccountRole | None = None,
    ) -> list[AccountInfo]:
        """
        Accounts ordered by creation time.

        Args:
            creator_id: Only accounts provisioned by this account.
            role: Only accounts of this role.
        """
        stmt = select(Account)
        if creator_id is not None:
            stmt = stmt.where(Account.creator_id == creator_id)
        if role is not None:
            stmt = stmt.where(Account.role == role.value)
        stmt = stmt.order_by(Account.created_at, Account.id)
        accounts = self.session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalars()
        return [AccountInfo.from_model(a) for a in accounts]
