"""Idempotency gate for guarded mutations.

Wraps a handler so that a retried request with the same Idempotency-Key
replays the first successful response instead of running the mutation again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping
from uuid import UUID

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hrm_payroll.errors import IdempotencyConflictError, ValidationError
from hrm_payroll.services.idempotency import IdempotencyStore, compute_fingerprint

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
REPLAYED_HEADER = "Idempotent-Replayed"
MAX_KEY_LENGTH = 255


@dataclass(frozen=True)
class GuardedResponse:
    """Status and JSON-ready body produced by a guarded operation."""

    status_code: int
    body: Any

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


class IdempotencyGate:
    """Replays, rejects, or runs a guarded mutation based on its key.

    Usage:
        gate = IdempotencyGate(session_factory, "payroll.finalize")
        return await gate.execute(request, tenant_id, user_id, key, operation)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], endpoint: str):
        self.session_factory = session_factory
        self.endpoint = endpoint

    async def execute(
        self,
        request: Request,
        tenant_id: UUID,
        user_id: UUID,
        key: str | None,
        operation: Callable[[], Awaitable[GuardedResponse]],
        path_params: Mapping[str, Any] | None = None,
    ) -> JSONResponse:
        """Run operation at most once per (tenant, user, key, endpoint).

        Args:
            path_params: Validated path parameters of the route. Defaults to
                the raw strings matched from the URL.

        Raises:
            ValidationError: If the key is missing, blank, or too long
            IdempotencyConflictError: If the key was used for another request
        """
        key = self._validate_key(key)
        request_hash = await self._fingerprint(request, path_params)

        async with self.session_factory() as session, session.begin():
            record = await IdempotencyStore(session).check(
                tenant_id, user_id, self.endpoint, key, request_hash
            )
            if record is not None:
                logger.info("Replaying %s response for idempotency key %r", self.endpoint, key)
                return JSONResponse(
                    content=record.response_body,
                    status_code=record.response_status,
                    headers={REPLAYED_HEADER: "true"},
                )

        response = await operation()

        if response.is_success:
            await self._save(tenant_id, user_id, key, request_hash, response)

        return JSONResponse(content=response.body, status_code=response.status_code)

    async def _save(
        self,
        tenant_id: UUID,
        user_id: UUID,
        key: str,
        request_hash: str,
        response: GuardedResponse,
    ) -> None:
        try:
            async with self.session_factory() as session, session.begin():
                await IdempotencyStore(session).save(
                    tenant_id,
                    user_id,
                    self.endpoint,
                    key,
                    request_hash,
                    response.status_code,
                    response.body,
                )
        except IdempotencyConflictError:
            # another request won the key; the next retry sees its fingerprint
            logger.warning(
                "Idempotency key %r on %s was recorded by a concurrent request",
                key,
                self.endpoint,
            )
        except SQLAlchemyError:
            # the operation already committed; a retry will not replay it
            logger.exception(
                "Recording idempotency key %r on %s failed", key, self.endpoint
            )

    @staticmethod
    def _validate_key(key: str | None) -> str:
        if key is None or not key.strip():
            raise ValidationError(f"{IDEMPOTENCY_KEY_HEADER} header is required")
        key = key.strip()
        if len(key) > MAX_KEY_LENGTH:
            raise ValidationError(
                f"{IDEMPOTENCY_KEY_HEADER} must be at most {MAX_KEY_LENGTH} characters"
            )
        return key

    @staticmethod
    async def _fingerprint(request: Request, path_params: Mapping[str, Any] | None) -> str:
        route = request.scope.get("route")
        route_template = getattr(route, "path", None) or request.url.path
        if path_params is None:
            path_params = request.path_params
        body = await request.body()
        return compute_fingerprint(request.method, route_template, path_params, body)
