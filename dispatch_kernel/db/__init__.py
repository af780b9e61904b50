"""Database infrastructure: declarative base, engine, column types, immutability."""

from dispatch_kernel.db.base import Base, TrackedBase, UUIDString
from dispatch_kernel.db.types import UTCDateTime

__all__ = ["Base", "TrackedBase", "UUIDString", "UTCDateTime"]
