"""Tests for the idempotency gate in isolation from payroll routes."""

from typing import Awaitable, Callable

import pytest
from fastapi import FastAPI, Header, Request
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from hrm_payroll.api.idempotency import GuardedResponse, IdempotencyGate
from hrm_payroll.errors import IdempotencyConflictError, InvalidStateError, ValidationError
from hrm_payroll.models import IdempotencyRecord
from hrm_payroll.services.idempotency import IdempotencyStore

from .conftest import TENANT_ID, USER_ID

ENDPOINT = "items.apply"


def build_client(session_factory, operation: Callable[[], Awaitable[GuardedResponse]]) -> AsyncClient:
    app = FastAPI()

    @app.post("/items/{item_id}/apply")
    async def apply(request: Request, item_id: str, idempotency_key: str | None = Header(default=None)):
        gate = IdempotencyGate(session_factory, ENDPOINT)
        return await gate.execute(request, TENANT_ID, USER_ID, idempotency_key, operation)

    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def stored_records(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(IdempotencyRecord))


class TestIdempotencyGate:

    async def test_operation_runs_once_per_key(self, session_factory):
        calls = []

        async def operation() -> GuardedResponse:
            calls.append(1)
            return GuardedResponse(201, {"applied": len(calls)})

        async with build_client(session_factory, operation) as client:
            first = await client.post("/items/a/apply", headers={"Idempotency-Key": "k1"}, json={"x": 1})
            second = await client.post("/items/a/apply", headers={"Idempotency-Key": "k1"}, json={"x": 1})

        assert len(calls) == 1
        assert first.status_code == second.status_code == 201
        assert first.json() == second.json() == {"applied": 1}
        assert second.headers["Idempotent-Replayed"] == "true"

    async def test_different_body_conflicts(self, session_factory):
        async def operation() -> GuardedResponse:
            return GuardedResponse(200, {"ok": True})

        async with build_client(session_factory, operation) as client:
            await client.post("/items/a/apply", headers={"Idempotency-Key": "k1"}, json={"x": 1})
            with pytest.raises(IdempotencyConflictError):
                await client.post(
                    "/items/a/apply", headers={"Idempotency-Key": "k1"}, json={"x": 2}
                )

    async def test_non_success_response_not_recorded(self, session_factory):
        calls = []

        async def operation() -> GuardedResponse:
            calls.append(1)
            return GuardedResponse(202 if len(calls) > 1 else 422, {"attempt": len(calls)})

        async with build_client(session_factory, operation) as client:
            first = await client.post("/items/a/apply", headers={"Idempotency-Key": "k1"})
            second = await client.post("/items/a/apply", headers={"Idempotency-Key": "k1"})

        assert first.status_code == 422
        assert second.status_code == 202
        assert len(calls) == 2
        assert await stored_records(session_factory) == 1

    async def test_operation_errors_propagate_uncached(self, session_factory):
        async def operation() -> GuardedResponse:
            raise InvalidStateError("finalized", reason="nothing to apply")

        async with build_client(session_factory, operation) as client:
            with pytest.raises(InvalidStateError):
                await client.post("/items/a/apply", headers={"Idempotency-Key": "k1"})

        assert await stored_records(session_factory) == 0

    async def test_lost_save_race_still_returns_response(self, session_factory):
        async def operation() -> GuardedResponse:
            # a concurrent request with another fingerprint records the key first
            async with session_factory() as session, session.begin():
                await IdempotencyStore(session).save(
                    TENANT_ID, USER_ID, ENDPOINT, "k1", "f" * 64, 200, {"winner": "other"}
                )
            return GuardedResponse(200, {"winner": "me"})

        async with build_client(session_factory, operation) as client:
            response = await client.post("/items/a/apply", headers={"Idempotency-Key": "k1"})

        assert response.status_code == 200
        assert response.json() == {"winner": "me"}
        async with session_factory() as session:
            record = await session.scalar(select(IdempotencyRecord))
        assert record.response_body == {"winner": "other"}

    async def test_save_failure_still_returns_response(self, session_factory, monkeypatch):
        async def storage_down(self, *args, **kwargs):
            raise OperationalError("INSERT INTO idempotency_keys", {}, Exception("database is locked"))

        async def operation() -> GuardedResponse:
            return GuardedResponse(200, {"applied": True})

        monkeypatch.setattr(IdempotencyStore, "save", storage_down)

        async with build_client(session_factory, operation) as client:
            response = await client.post("/items/a/apply", headers={"Idempotency-Key": "k1"})

        assert response.status_code == 200
        assert response.json() == {"applied": True}
        assert await stored_records(session_factory) == 0

    async def test_missing_key_never_runs_operation(self, session_factory):
        calls = []

        async def operation() -> GuardedResponse:
            calls.append(1)
            return GuardedResponse(200, {})

        async with build_client(session_factory, operation) as client:
            with pytest.raises(ValidationError):
                await client.post("/items/a/apply")

        assert calls == []
