"""Persist payment mutation outcomes by client idempotency key so retries are replayed, not re-sent."""

import hashlib
import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import IdempotencyConflictError, IdempotencyInProgressError
from app.core.models import IdempotencyRecord

logger = logging.getLogger(__name__)

CREATE_LEDGER = "CREATE_LEDGER"
APPEND_PAYMENT = "APPEND_PAYMENT"


def request_fingerprint(operation: str, body: Dict[str, Any]) -> str:
    canonical = json.dumps({"operation": operation, "body": body}, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyStore:
    """
    One row per (school, key). A row is reserved with no payload before the
    upstream write and completed afterwards, so a concurrent retry carrying the
    same key is refused instead of reaching the school API a second time.
    """

    def __init__(self, db: AsyncSession, school_id: int) -> None:
        self.db = db
        self.school_id = school_id

    async def _get(self, key: str) -> Optional[IdempotencyRecord]:
        result = await self.db.execute(
            select(IdempotencyRecord).where(
                IdempotencyRecord.school_id == self.school_id,
                IdempotencyRecord.idempotency_key == key,
            )
        )
        return result.scalar_one_or_none()

    async def lookup(self, key: str, operation: str, fingerprint: str) -> Optional[Dict[str, Any]]:
        """Stored response for this key, None if unseen. Reusing a key for another request is a conflict."""
        record = await self._get(key)
        if record is None:
            return None
        if record.operation != operation or record.request_fingerprint != fingerprint:
            raise IdempotencyConflictError(key)
        if record.response_payload is None:
            raise IdempotencyInProgressError(key)
        logger.info("Replaying %s for idempotency key %s", operation, key)
        return record.response_payload

    async def reserve(self, key: str, operation: str, fingerprint: str) -> Optional[Dict[str, Any]]:
        """
        Claim the key before writing upstream. Returns None once claimed, or the
        stored response when another request completed with it in the meantime.
        """
        self.db.add(
            IdempotencyRecord(
                school_id=self.school_id,
                idempotency_key=key,
                operation=operation,
                request_fingerprint=fingerprint,
                response_payload=None,
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.warning("Idempotency key %s claimed concurrently", key)
            return await self.lookup(key, operation, fingerprint)
        return None

    async def complete(self, key: str, payload: Dict[str, Any]) -> None:
        record = await self._get(key)
        if record is None:
            logger.warning("Idempotency key %s vanished before completion", key)
            return
        record.response_payload = payload
        await self.db.commit()

    async def release(self, key: str) -> None:
        """Drop an unfinished reservation so the client can retry after a failure."""
        await self.db.execute(
            delete(IdempotencyRecord).where(
                IdempotencyRecord.school_id == self.school_id,
                IdempotencyRecord.idempotency_key == key,
                IdempotencyRecord.response_payload.is_(None),
            )
        )
        await self.db.commit()
