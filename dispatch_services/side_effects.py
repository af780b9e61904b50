"""
dispatch_services.side_effects -- work that happens after a commit.

Responsibility:
    Publishes committed domain events and uploads proof photos on a small
    thread pool, off the request path.  A failing side effect is logged
    with its exception and dropped; the transaction it followed stays
    committed.

Architecture position:
    Services.  Owned by DispatchOrchestrator, which submits to it only
    after ``session.commit()`` returns.

Invariants enforced:
    - Events of one transaction are published in the order they were
      raised, by a single job.
    - ``synchronous=True`` runs every job inline (tests, CLI).
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any

from dispatch_kernel.domain.events import DomainEvent, EventPublisher
from dispatch_kernel.logging_config import get_logger

logger = get_logger("services.side_effects")


class PhotoStore(ABC):
    """Port to the blob store holding proof-of-delivery photos."""

    @abstractmethod
    def put(self, ref: str, data: bytes) -> None:
        ...


class InMemoryPhotoStore(PhotoStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.photos: dict[str, bytes] = {}

    def put(self, ref: str, data: bytes) -> None:
        with self._lock:
            self.photos[ref] = data

    def get(self, ref: str) -> bytes | None:
        with self._lock:
            return self.photos.get(ref)


class SideEffectDispatcher:
    """
    Runs post-commit jobs.

    Contract:
        ``submit`` never raises for a failing job.  ``drain`` blocks until
        every job submitted so far has finished; ``shutdown`` drains and
        stops the pool.
    """

    def __init__(
        self,
        publisher: EventPublisher,
        *,
        max_workers: int = 4,
        synchronous: bool = False,
    ) -> None:
        self.publisher = publisher
        self.synchronous = synchronous
        self._executor = (
            None
            if synchronous
            else ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch-side-effect")
        )
        self._lock = threading.Lock()
        self._pending: set[Future] = set()

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        if self._executor is None:
            self._run(name, fn, args, kwargs)
            return
        future = self._executor.submit(self._run, name, fn, args, kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def publish(self, events: Iterable[DomainEvent]) -> None:
        events = list(events)
        if events:
            self.submit("publish_events", self._publish_all, events)

    def drain(self, timeout: float | None = None) -> None:
        with self._lock:
            pending = set(self._pending)
        if pending:
            wait_futures(pending, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            logger.info("side_effect_dispatcher_stopped")

    # ------------------------------------------------------------------

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _publish_all(self, events: list[DomainEvent]) -> None:
        for event in events:
            self._run(f"publish:{event.event_type.value}", self.publisher.publish, (event,), {})

    def _run(self, name: str, fn: Callable[..., Any], args: tuple, kwargs: dict) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.exception("side_effect_failed", extra={"side_effect": name})
