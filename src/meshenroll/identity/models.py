"""Organization, profile and per-tenant mesh configuration models."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class Role(enum.StrEnum):
    global_admin = "global_admin"
    org_admin = "org_admin"
    support = "support"
    user = "user"


ADMIN_ROLES = frozenset({Role.global_admin, Role.org_admin, Role.support})


class Organization(SQLModel, table=True):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    name: str = Field(index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Profile(SQLModel, table=True):
    """A console user. ``id`` is the user id used as device owner."""

    id: str = Field(primary_key=True)
    tenant_id: str | None = Field(default=None, foreign_key="organization.id", index=True)
    role: Role = Role.user
    full_name: str | None = None
    email: str | None = None
    api_token_hash: str | None = Field(default=None, unique=True, index=True)


class TenantMeshConfig(SQLModel, table=True):
    """An operator-provisioned pre-authorization key for one organization."""

    id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(foreign_key="organization.id", index=True)
    auth_key: str
    tags: list[str] = Field(default_factory=lambda: ["tag:prod"], sa_column=Column(JSON))
    description: str | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime | None = None
