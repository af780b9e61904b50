"""
ORM models for the dispatch kernel.

Importing this package registers every table on ``Base.metadata``.
Snapshot tables (orders, deliveries, tasks, stock_items) carry a
``version`` column used for optimistic locking; log tables are declared
``__append_only__`` and guarded by db/immutability.py.
"""

from dispatch_kernel.models.delivery import (
    Delivery,
    DeliveryHistory,
    DeliveryIssue,
    ProofOfDelivery,
)
from dispatch_kernel.models.idempotency import IdempotencyRecord
from dispatch_kernel.models.inventory import ReservationEntry, StockItem, StockMovement
from dispatch_kernel.models.order import Order, OrderHistory, OrderItem
from dispatch_kernel.models.qr_scan import QRScanRecord
from dispatch_kernel.models.task import Task, TaskHistory

__all__ = [
    "Order",
    "OrderItem",
    "OrderHistory",
    "Delivery",
    "DeliveryHistory",
    "DeliveryIssue",
    "ProofOfDelivery",
    "Task",
    "TaskHistory",
    "StockItem",
    "StockMovement",
    "ReservationEntry",
    "IdempotencyRecord",
    "QRScanRecord",
]
