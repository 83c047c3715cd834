"""Concurrent finalize attempts against one period.

Each attempt runs on its own database connection; the period row lock is
the only thing ordering them.
"""

import asyncio

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from hrm_payroll.errors import InvalidStateError
from hrm_payroll.models import AuditEvent, IdempotencyRecord, Payslip

from .conftest import TENANT_ID, api_headers

ATTEMPTS = 5


async def count(session_factory, model, *criteria) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model).where(*criteria))


class TestConcurrentFinalize:

    async def test_exactly_one_service_call_wins(self, service, session_factory, reviewed_period):
        outcomes = await asyncio.gather(
            *(service.finalize_period(TENANT_ID, reviewed_period.period_id) for _ in range(ATTEMPTS)),
            return_exceptions=True,
        )

        winners = [o for o in outcomes if not isinstance(o, BaseException)]
        losers = [o for o in outcomes if isinstance(o, BaseException)]
        assert len(winners) == 1
        assert winners[0].payslip_count == 2
        assert all(isinstance(o, InvalidStateError) for o in losers)
        assert all(o.from_status == "finalized" for o in losers)

        assert await count(
            session_factory, Payslip, Payslip.period_id == reviewed_period.period_id
        ) == 2
        assert await count(
            session_factory,
            AuditEvent,
            AuditEvent.entity_id == reviewed_period.period_id,
            AuditEvent.action == "payroll.finalize",
        ) == 1

    async def test_distinct_keys_over_http(
        self, client: AsyncClient, session_factory, reviewed_period
    ):
        url = f"/api/v1/payroll/periods/{reviewed_period.period_id}/finalize"
        responses = await asyncio.gather(
            *(
                client.post(url, headers=api_headers(**{"Idempotency-Key": f"fin-{i}"}))
                for i in range(ATTEMPTS)
            )
        )

        statuses = sorted(r.status_code for r in responses)
        assert statuses == [200] + [400] * (ATTEMPTS - 1)
        assert all(
            r.json()["code"] == "invalid_state" for r in responses if r.status_code == 400
        )
        assert await count(
            session_factory, Payslip, Payslip.period_id == reviewed_period.period_id
        ) == 2
        # only the successful attempt is recorded
        assert await count(session_factory, IdempotencyRecord) == 1

    async def test_same_key_over_http(self, client: AsyncClient, session_factory, reviewed_period):
        url = f"/api/v1/payroll/periods/{reviewed_period.period_id}/finalize"
        headers = api_headers(**{"Idempotency-Key": "fin-shared"})
        responses = await asyncio.gather(*(client.post(url, headers=headers) for _ in range(ATTEMPTS)))

        successes = [r for r in responses if r.status_code == 200]
        assert successes
        assert len({r.json()["finalized_at"] for r in successes}) == 1
        for response in responses:
            if response.status_code != 200:
                assert response.status_code == 400
                assert response.json()["code"] == "invalid_state"

        assert await count(
            session_factory, Payslip, Payslip.period_id == reviewed_period.period_id
        ) == 2

        # after the race settles, a retry is a replay
        retry = await client.post(url, headers=headers)
        assert retry.status_code == 200
        assert retry.headers["Idempotent-Replayed"] == "true"
        assert retry.json() == successes[0].json()

    @pytest.mark.parametrize("attempts", [2, ATTEMPTS])
    async def test_concurrent_reopen(self, service, reviewed_period, attempts):
        period_id = reviewed_period.period_id
        await service.finalize_period(TENANT_ID, period_id)

        outcomes = await asyncio.gather(
            *(service.reopen_period(TENANT_ID, period_id, "correction") for _ in range(attempts)),
            return_exceptions=True,
        )

        reopened = [o for o in outcomes if not isinstance(o, BaseException)]
        assert len(reopened) == 1
        assert reopened[0].reopen_count == 1
        assert all(isinstance(o, InvalidStateError) for o in outcomes if isinstance(o, BaseException))
