"""
Reseller Kernel

A multi-tier credit ledger and delegated-provisioning core:
- operator -> master -> reseller -> client hierarchy
- Integer credit balances with compare-and-set writes
- Append-only credit transaction trail with reconciliation
- Account lifecycle (create, renew, update, delete, reassign)
- Best-effort lifecycle webhooks with one audit record per attempt
"""

__version__ = "0.1.0"
