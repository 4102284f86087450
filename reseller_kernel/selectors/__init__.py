"""Selectors for the reseller kernel (read side)."""

from reseller_kernel.selectors.hierarchy_selector import HierarchySelector
from reseller_kernel.selectors.ledger_selector import LedgerSelector

__all__ = [
    "HierarchySelector",
    "LedgerSelector",
]
