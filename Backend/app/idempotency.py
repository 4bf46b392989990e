"""
Idempotency store for write endpoints that accept X-Idempotency-Key.

The first successful response for (organization, key) is stored with a TTL;
retries inside that window get the stored body back instead of repeating
the write. Expired records are ignored and replaced.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .models import IdempotencyRecord

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "X-Idempotency-Key"


async def get_stored_response(
    session: AsyncSession,
    organization_id: uuid.UUID,
    key: str,
    now: Optional[datetime] = None,
) -> Optional[dict]:
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        select(IdempotencyRecord).where(
            IdempotencyRecord.organization_id == organization_id,
            IdempotencyRecord.key == key,
            IdempotencyRecord.expires_at > now,
        )
    )
    record = result.scalar_one_or_none()
    if record is None:
        return None
    logger.info(f"Idempotency hit for key {key}")
    return record.response_body


async def store_response(
    session: AsyncSession,
    organization_id: uuid.UUID,
    user_id: uuid.UUID,
    key: str,
    body: dict,
    now: Optional[datetime] = None,
) -> None:
    now = now or datetime.now(timezone.utc)
    ttl = timedelta(hours=get_settings().idempotency_ttl_hours)

    # Drop an expired record for the same key so the unique constraint allows reuse.
    await session.execute(
        delete(IdempotencyRecord).where(
            IdempotencyRecord.organization_id == organization_id,
            IdempotencyRecord.key == key,
            IdempotencyRecord.expires_at <= now,
        )
    )
    session.add(
        IdempotencyRecord(
            organization_id=organization_id,
            user_id=user_id,
            key=key,
            response_body=body,
            created_at=now,
            expires_at=now + ttl,
        )
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.warning(f"Idempotency key {key} was stored by a concurrent request")
