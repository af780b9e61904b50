"""
IdempotencyStore -- at-most-once application of keyed mutating calls.

Responsibility:
    Stores the result of each mutating call made with a client-supplied
    idempotency key, and answers replays with that stored result.

Architecture position:
    Kernel > Services.  Used only by the orchestrator, inside the same
    transaction as the mutation it guards: the record and the effects
    commit together or not at all.

Invariants enforced:
    - One record per key (UNIQUE).  Two concurrent first attempts collide
      on INSERT; the loser's transaction rolls back and its retry finds
      the winner's record and replays it.
    - A key is bound to one operation and one request fingerprint.  Reuse
      for anything else raises IdempotencyKeyReuseError.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select

from dispatch_kernel.exceptions import IdempotencyKeyReuseError, ValidationError
from dispatch_kernel.logging_config import get_logger
from dispatch_kernel.models.idempotency import IdempotencyRecord
from dispatch_kernel.services.base import BaseService
from dispatch_kernel.utils.hashing import hash_payload
from dispatch_kernel.utils.identifiers import is_valid_idempotency_key

logger = get_logger("services.idempotency_store")


def request_fingerprint(operation: str, request: dict[str, Any]) -> str:
    return hash_payload({"operation": operation, "request": request})


class IdempotencyStore(BaseService[IdempotencyRecord]):
    def check_key(self, key: str) -> str:
        if not is_valid_idempotency_key(key):
            raise ValidationError(
                "idempotency key must be 16-128 letters, digits or hyphens",
                field="idempotency_key",
            )
        return key

    def lookup(self, key: str, operation: str, fingerprint: str) -> dict[str, Any] | None:
        """
        Stored result for ``key``, or None on first use.

        Raises:
            IdempotencyKeyReuseError: key already used for a different
                operation or request.
        """
        record = self.session.execute(
            select(IdempotencyRecord).where(IdempotencyRecord.key == key)
        ).scalar_one_or_none()
        if record is None:
            return None
        if record.operation != operation or record.request_fingerprint != fingerprint:
            logger.warning(
                "idempotency_key_reused",
                extra={
                    "key": key,
                    "operation": operation,
                    "original_operation": record.operation,
                },
            )
            raise IdempotencyKeyReuseError(key, operation, record.operation)
        logger.info("idempotent_replay", extra={"key": key, "operation": operation})
        return record.result

    def save(
        self,
        key: str,
        operation: str,
        fingerprint: str,
        result: dict[str, Any],
        *,
        actor: str,
        entity_id: UUID | None = None,
    ) -> None:
        self.session.add(
            IdempotencyRecord(
                key=key,
                operation=operation,
                entity_id=entity_id,
                request_fingerprint=fingerprint,
                result=result,
                actor=actor,
                created_at=self.clock.now(),
            )
        )
        self.session.flush()
