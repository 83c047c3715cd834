"""Idempotency store: request fingerprints and cached responses.

The store is shared by every guarded mutation. Lookups never mutate a
record; writes go through a single conditional upsert so that concurrent
first-time callers resolve on the database's unique constraint.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hrm_payroll.database import dialect_insert
from hrm_payroll.errors import IdempotencyConflictError
from hrm_payroll.models import IdempotencyRecord

logger = logging.getLogger(__name__)


def canonicalize_body(body: bytes | str | None) -> Any:
    """Reduce a request body to a value whose JSON encoding is stable."""
    if body is None:
        return None
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except ValueError:
        return body


def compute_fingerprint(
    method: str,
    route_template: str,
    path_params: Mapping[str, Any],
    body: bytes | str | None = None,
) -> str:
    """Compute a deterministic fingerprint of a logical request.

    The route template and path parameters are part of the digest, so the
    same literal key reused against a different resource is detectable even
    when the bodies are identical.
    """
    canonical = {
        "method": method.upper(),
        "route": route_template,
        "path_params": {name: str(value) for name, value in path_params.items()},
        "body": canonicalize_body(body),
    }
    json_str = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(json_str.encode()).hexdigest()


class IdempotencyStore:
    """Database-backed idempotency records.

    Key invariants:
    1. One record per (tenant_id, user_id, key, endpoint)
    2. A committed request_hash is never overwritten
    3. A lookup with a different request_hash is a conflict, not a miss
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def check(
        self,
        tenant_id: UUID,
        user_id: UUID,
        endpoint: str,
        key: str,
        request_hash: str,
    ) -> IdempotencyRecord | None:
        """Return the stored record for a matching request, or None if unseen.

        Raises:
            IdempotencyConflictError: If the key was used for another request
        """
        result = await self.session.execute(
            select(IdempotencyRecord).where(
                IdempotencyRecord.tenant_id == tenant_id,
                IdempotencyRecord.user_id == user_id,
                IdempotencyRecord.key == key,
                IdempotencyRecord.endpoint == endpoint,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None

        if record.request_hash != request_hash:
            logger.warning(
                "Idempotency key %r reused with a different request on %s",
                key,
                endpoint,
            )
            raise IdempotencyConflictError(key, endpoint)

        return record

    async def save(
        self,
        tenant_id: UUID,
        user_id: UUID,
        endpoint: str,
        key: str,
        request_hash: str,
        status_code: int,
        body: Any,
    ) -> None:
        """Persist the response for a request.

        Inserts a new record, or refreshes the cached response of an existing
        record only if its request_hash matches.

        Raises:
            IdempotencyConflictError: If a record with another hash already won
        """
        insert = dialect_insert(self.session)
        stmt = insert(IdempotencyRecord).values(
            tenant_id=tenant_id,
            user_id=user_id,
            key=key,
            endpoint=endpoint,
            request_hash=request_hash,
            response_status=status_code,
            response_body=body,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "user_id", "key", "endpoint"],
            set_={
                "response_status": stmt.excluded.response_status,
                "response_body": stmt.excluded.response_body,
            },
            where=IdempotencyRecord.request_hash == stmt.excluded.request_hash,
        )
        result = await self.session.execute(stmt)

        if result.rowcount == 0:
            raise IdempotencyConflictError(key, endpoint)
