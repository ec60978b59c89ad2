"""Audit log model."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class AuditLog(SQLModel, table=True):
    """Append-only record of administrative actions, separate from device events."""

    id: int | None = Field(default=None, primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    tenant_id: str | None = Field(default=None, index=True)
    event: str
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
