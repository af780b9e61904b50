"""
Kernel services.

Each service works inside a session owned by its caller and only
flushes.  The DispatchOrchestrator (dispatch_services) wraps them with
transactions, bounded retry and idempotency.
"""

from dispatch_kernel.services.delivery_manager import DeliveryManager
from dispatch_kernel.services.idempotency_store import IdempotencyStore
from dispatch_kernel.services.inventory_ledger import InventoryLedger
from dispatch_kernel.services.order_lifecycle import OrderLifecycleManager
from dispatch_kernel.services.proof_capture import ProofCaptureService
from dispatch_kernel.services.qr_verification import QRVerificationService
from dispatch_kernel.services.task_scheduler import TaskScheduler

__all__ = [
    "DeliveryManager",
    "IdempotencyStore",
    "InventoryLedger",
    "OrderLifecycleManager",
    "ProofCaptureService",
    "QRVerificationService",
    "TaskScheduler",
]
