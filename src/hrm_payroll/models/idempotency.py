"""Idempotency record model."""

from __future__ import annotations

from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from hrm_payroll.models.base import Base, TimestampMixin


class IdempotencyRecord(Base, TimestampMixin):
    """Cached outcome of a guarded mutation.

    Unique per (tenant, user, key, endpoint). Once committed, request_hash
    never changes; only the cached response of a matching request may be
    rewritten.
    """

    __tablename__ = "idempotency_record"

    idempotency_record_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    user_id: Mapped[UUID] = mapped_column(nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    endpoint: Mapped[str] = mapped_column(String, nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    response_status: Mapped[int] = mapped_column(Integer, nullable=False)
    response_body: Mapped[Any] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "user_id",
            "key",
            "endpoint",
            name="idempotency_record_scope_unique",
        ),
    )
