"""Profile lookups, bearer-token authentication and tenant key resolution."""

import hashlib
import logging
import secrets
from datetime import UTC, datetime

from sqlmodel import Session, select

from meshenroll.identity.models import ADMIN_ROLES, Organization, Profile, TenantMeshConfig
from meshenroll.registry.store import as_utc

logger = logging.getLogger(__name__)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_api_token(session: Session, profile: Profile) -> str:
    """Generate a bearer token for a profile. Only the hash is stored."""
    token = secrets.token_urlsafe(32)
    profile.api_token_hash = hash_token(token)
    session.add(profile)
    session.commit()
    session.refresh(profile)
    return token


def authenticate_bearer(session: Session, token: str) -> Profile | None:
    if not token:
        return None
    stmt = select(Profile).where(Profile.api_token_hash == hash_token(token))
    return session.exec(stmt).first()


def get_profile(session: Session, user_id: str) -> Profile | None:
    return session.get(Profile, user_id)


def get_organization(session: Session, tenant_id: str | None) -> Organization | None:
    if tenant_id is None:
        return None
    return session.get(Organization, tenant_id)


def is_admin(profile: Profile | None) -> bool:
    return profile is not None and profile.role in ADMIN_ROLES


def get_tenant_mesh_config(session: Session, tenant_id: str | None) -> TenantMeshConfig | None:
    """Newest active, unexpired key configured for the tenant."""
    if tenant_id is None:
        return None
    stmt = (
        select(TenantMeshConfig)
        .where(TenantMeshConfig.tenant_id == tenant_id)
        .where(TenantMeshConfig.is_active == True)  # noqa: E712
        .order_by(TenantMeshConfig.created_at.desc())  # type: ignore[attr-defined]
    )
    now = datetime.now(UTC)
    for config in session.exec(stmt).all():
        expires_at = as_utc(config.expires_at)
        if expires_at is not None and expires_at <= now:
            logger.debug("Skipping expired mesh key config %s for tenant %s", config.id, tenant_id)
            continue
        return config
    return None
