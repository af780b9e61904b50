"""Read-only query selectors.  Every method returns DTOs."""

from dispatch_kernel.selectors.delivery_selector import DeliverySelector
from dispatch_kernel.selectors.inventory_selector import InventorySelector, LedgerVerification
from dispatch_kernel.selectors.order_selector import OrderSelector
from dispatch_kernel.selectors.replay_selector import ReplayResult, ReplaySelector
from dispatch_kernel.selectors.task_selector import TaskSelector

__all__ = [
    "DeliverySelector",
    "InventorySelector",
    "LedgerVerification",
    "OrderSelector",
    "ReplayResult",
    "ReplaySelector",
    "TaskSelector",
]
