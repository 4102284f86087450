"""Services for the reseller kernel (write side)."""

from reseller_kernel.services.gateway import ResellerGateway
from reseller_kernel.services.ledger_store import LedgerStore
from reseller_kernel.services.lifecycle_notifier import LifecycleNotifier
from reseller_kernel.services.provisioning_service import ProvisioningService
from reseller_kernel.services.sequence_service import SequenceService
from reseller_kernel.services.transfer_protocol import TransferProtocol

__all__ = [
    "LedgerStore",
    "LifecycleNotifier",
    "ProvisioningService",
    "ResellerGateway",
    "SequenceService",
    "TransferProtocol",
]
