"""
Dispatch Kernel

Order, delivery and inventory lifecycle core for a small logistics
operation:
- One status enum and one transition table per entity
- All stock arithmetic in a single inventory ledger
- Append-only history for every entity, replayable into its snapshot
- Optimistic versioning with bounded retry under concurrent staff,
  driver and admin activity
"""

__version__ = "0.1.0"
