"""Device model, lifecycle enums and the device event trail."""

import enum
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DeviceStatus(enum.StrEnum):
    pending = "pending"
    active = "active"
    revoked = "revoked"


class TrustLevel(enum.StrEnum):
    low = "low"
    medium = "medium"
    high = "high"


class DeviceType(enum.StrEnum):
    laptop = "laptop"
    desktop = "desktop"
    mobile = "mobile"
    tablet = "tablet"
    windows = "windows"
    macos = "macos"


class Device(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    owner_id: str = Field(index=True)
    tenant_id: str | None = Field(default=None, index=True)

    name: str = Field(max_length=100)
    device_type: DeviceType = DeviceType.laptop
    os: str | None = Field(default=None, max_length=50)

    status: DeviceStatus = Field(default=DeviceStatus.pending, index=True)
    trust_level: TrustLevel = TrustLevel.low
    fingerprint: str | None = Field(default=None, max_length=100, index=True)

    # One-time secrets; both are nulled on the pending -> active transition
    enrollment_token: str | None = Field(default=None, unique=True, index=True)
    enrollment_expires_at: datetime | None = None
    external_auth_key: str | None = None

    # Mesh linkage, set only once reconciliation succeeds
    external_device_id: str | None = Field(default=None, index=True)
    external_hostname: str | None = None
    external_ip: str | None = None

    last_seen_at: datetime | None = None
    enrolled_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    # "metadata" is reserved on declarative models; exposed as metadata via the API
    meta: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


class DeviceEvent(SQLModel, table=True):
    """Append-only audit trail of state changes on a Device."""

    id: int | None = Field(default=None, primary_key=True)
    device_id: str = Field(index=True, foreign_key="device.id")
    event_type: str
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    ip_address: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
