"""Enrollment token service: issue, verify and silent self-service enrollment.

A token is a field projection of its pending Device (``enrollment_token`` +
``enrollment_expires_at``), never a separate row, so no secret outlives the
device it was issued for. ``verify`` is deliberately non-destructive: the
token is only cleared when reconciliation confirms the device joined the
mesh (see ``meshenroll.enrollment.reconcile``).
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from meshenroll.audit.log import record_audit
from meshenroll.config import settings
from meshenroll.enrollment.fingerprint import MAX_FINGERPRINT_LENGTH, is_valid_fingerprint
from meshenroll.errors import (
    ConfigurationError,
    DeviceNotFoundError,
    ExpiredError,
    NotFoundError,
    PermissionDeniedError,
    PersistenceError,
    ValidationError,
)
from meshenroll.identity.models import Role
from meshenroll.identity.store import (
    get_organization,
    get_profile,
    get_tenant_mesh_config,
    is_admin,
)
from meshenroll.mesh.base import PreAuthKey
from meshenroll.registry.models import Device, DeviceStatus, DeviceType, TrustLevel
from meshenroll.registry.store import (
    as_utc,
    commit_or_raise,
    find_by_fingerprint,
    get_device,
    get_pending_by_token,
    list_expired_pending,
    merge_metadata,
    notify_change,
    record_event,
    touch_last_seen,
)

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
MAX_OS_LENGTH = 50


@dataclass
class TokenGrant:
    device_id: str
    token: str
    expires_at: datetime
    has_external_key: bool
    status: DeviceStatus = DeviceStatus.pending


@dataclass
class VerifyResult:
    device_id: str
    device_name: str
    tenant_name: str | None
    external_auth_key: str
    external_tags: list[str]
    external_group: str
    expires_at: datetime | None


@dataclass
class SilentEnrollResult:
    device_id: str
    status: DeviceStatus
    created: bool


def validate_enrollment_input(
    device_name: str | None = None,
    device_type: str | None = None,
    os: str | None = None,
    fingerprint: str | None = None,
) -> DeviceType | None:
    """Check caller-supplied fields. Returns the parsed device type, if given."""
    if device_name is not None and not 0 < len(device_name) <= MAX_NAME_LENGTH:
        raise ValidationError(f"Invalid device name: must be 1-{MAX_NAME_LENGTH} characters")

    parsed_type = None
    if device_type is not None:
        try:
            parsed_type = DeviceType(device_type)
        except ValueError:
            allowed = ", ".join(t.value for t in DeviceType)
            raise ValidationError(f"Invalid device type: must be one of {allowed}") from None

    if os is not None and not 0 < len(os) <= MAX_OS_LENGTH:
        raise ValidationError(f"Invalid OS: must be 1-{MAX_OS_LENGTH} characters")

    if fingerprint is not None and not is_valid_fingerprint(fingerprint):
        raise ValidationError(
            "Invalid fingerprint: must be alphanumeric with hyphens, "
            f"max {MAX_FINGERPRINT_LENGTH} characters"
        )

    return parsed_type


def resolve_auth_key(session: Session, tenant_id: str | None) -> str | None:
    """Tenant-specific pre-authorization key, falling back to the default key."""
    config = get_tenant_mesh_config(session, tenant_id)
    if config is not None:
        logger.debug("Using tenant-specific mesh key for %s", tenant_id)
        return config.auth_key
    if settings.tailscale_auth_key:
        logger.debug("Using default mesh key for tenant %s", tenant_id)
        return settings.tailscale_auth_key
    return None


def _tenant_tags(session: Session, tenant_id: str | None) -> list[str]:
    config = get_tenant_mesh_config(session, tenant_id)
    if config is not None and config.tags:
        return list(config.tags)
    return list(settings.default_tags)


def _new_token() -> str:
    return secrets.token_urlsafe(32)


def _create_pending(
    session: Session,
    owner_id: str,
    tenant_id: str | None,
    name: str,
    device_type: DeviceType,
    os: str | None,
    auth_key: str | None,
    extra_meta: dict[str, object],
) -> tuple[Device, str, datetime]:
    now = datetime.now(UTC)
    token = _new_token()
    expires_at = now + timedelta(hours=settings.enrollment_ttl_hours)
    device = Device(
        owner_id=owner_id,
        tenant_id=tenant_id,
        name=name,
        device_type=device_type,
        os=os,
        status=DeviceStatus.pending,
        trust_level=TrustLevel.low,
        enrollment_token=token,
        enrollment_expires_at=expires_at,
        external_auth_key=auth_key,
        meta={
            "mesh_tags": _tenant_tags(session, tenant_id),
            "mesh_group": settings.default_group,
            **extra_meta,
        },
    )
    session.add(device)
    try:
        session.flush()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Failed to create pending device for %s: %s", owner_id, e)
        raise PersistenceError("Failed to create pending device") from e
    return device, token, expires_at


def _grant(device: Device, token: str, expires_at: datetime) -> TokenGrant:
    return TokenGrant(
        device_id=device.id,
        token=token,
        expires_at=expires_at,
        has_external_key=device.external_auth_key is not None,
    )


def generate_token(
    session: Session,
    owner_id: str,
    tenant_id: str | None,
    device_name: str | None = None,
    device_type: str | None = None,
    os: str | None = None,
    ip_address: str | None = None,
) -> TokenGrant:
    """Create a pending device and the bearer token that redeems its key.

    A missing pre-authorization key is not fatal here; ``verify`` tries to
    resolve one again when the token is redeemed.
    """
    parsed_type = validate_enrollment_input(device_name, device_type, os)
    auth_key = resolve_auth_key(session, tenant_id)

    device, token, expires_at = _create_pending(
        session,
        owner_id=owner_id,
        tenant_id=tenant_id,
        name=device_name or "New Device",
        device_type=parsed_type or DeviceType.laptop,
        os=os,
        auth_key=auth_key,
        extra_meta={"enrollment_method": "qr_code"},
    )

    record_event(
        session,
        device.id,
        "enrollment_initiated",
        {"method": "qr_code", "has_external_key": auth_key is not None},
        ip_address=ip_address,
    )
    commit_or_raise(session, "generate enrollment token")
    session.refresh(device)
    notify_change(device.id)

    logger.info("Enrollment token issued for device %s (owner %s)", device.id, owner_id)
    return _grant(device, token, expires_at)


def create_pending_for_user(
    session: Session,
    admin_id: str,
    target_user_id: str | None = None,
    tenant_id: str | None = None,
    device_name: str | None = None,
    device_type: str | None = None,
    os: str | None = None,
    explicit_auth_key: str | None = None,
    ip_address: str | None = None,
) -> TokenGrant:
    """Administrator-initiated pending device for another user.

    Unlike ``generate_token`` this refuses to create anything without a
    resolvable pre-authorization key.
    """
    admin = get_profile(session, admin_id)
    if admin is None or not is_admin(admin):
        raise PermissionDeniedError(f"{admin_id} may not create pending devices")

    parsed_type = validate_enrollment_input(device_name, device_type, os)
    target_id = target_user_id or admin_id

    target = get_profile(session, target_id)
    if target is None:
        raise ValidationError("Unknown target user")
    if tenant_id is None:
        tenant_id = target.tenant_id
    elif tenant_id != target.tenant_id:
        raise ValidationError("Target user does not belong to that tenant")

    if admin.role != Role.global_admin and tenant_id != admin.tenant_id:
        raise PermissionDeniedError(f"{admin_id} may not act on tenant {tenant_id}")

    auth_key = explicit_auth_key or resolve_auth_key(session, tenant_id)
    if not auth_key:
        raise ConfigurationError(f"No pre-authorization key for tenant {tenant_id}")

    device, token, expires_at = _create_pending(
        session,
        owner_id=target_id,
        tenant_id=tenant_id,
        name=device_name or "Pending Device",
        device_type=parsed_type or DeviceType.laptop,
        os=os,
        auth_key=auth_key,
        extra_meta={"enrollment_method": "admin", "created_by": admin_id},
    )

    record_event(
        session,
        device.id,
        "pending_device_created",
        {"created_by": admin_id, "expires_at": expires_at.isoformat()},
        ip_address=ip_address,
    )
    record_audit(
        session,
        actor_id=admin_id,
        tenant_id=tenant_id,
        event="pending_device_created",
        details={"device_id": device.id, "target_user_id": target_id},
    )
    commit_or_raise(session, "create pending device")
    session.refresh(device)
    notify_change(device.id)

    logger.info("Pending device %s created by %s for user %s", device.id, admin_id, target_id)
    return _grant(device, token, expires_at)


def verify(
    session: Session,
    token: str,
    fingerprint: str | None = None,
    device_type: str | None = None,
    ip_address: str | None = None,
    now: datetime | None = None,
) -> VerifyResult:
    """Redeem a token for the device's pre-authorization key.

    Safe to call repeatedly while the device is pending: the token is not
    consumed here. Unknown, consumed and expired tokens all surface the same
    public message.
    """
    if not token:
        raise ValidationError("Enrollment token required")
    parsed_type = validate_enrollment_input(device_type=device_type, fingerprint=fingerprint)

    device = get_pending_by_token(session, token)
    if device is None:
        logger.info("Token validation failed: no pending device")
        raise NotFoundError("No pending device for token")

    now = now or datetime.now(UTC)
    expires_at = as_utc(device.enrollment_expires_at)
    if expires_at is not None and now > expires_at:
        logger.info("Token for device %s expired at %s", device.id, expires_at.isoformat())
        raise ExpiredError(f"Token for device {device.id} expired")

    auth_key = device.external_auth_key or resolve_auth_key(session, device.tenant_id)
    if not auth_key:
        raise ConfigurationError(f"No pre-authorization key for tenant {device.tenant_id}")

    if parsed_type is not None:
        device.device_type = parsed_type
    if fingerprint is not None:
        device.fingerprint = fingerprint
    merge_metadata(device, token_validated_at=now.isoformat())
    session.add(device)

    record_event(
        session,
        device.id,
        "token_validated",
        {"device_type": device_type, "has_external_key": True},
        ip_address=ip_address,
    )
    commit_or_raise(session, "record token validation")
    session.refresh(device)
    notify_change(device.id)

    org = get_organization(session, device.tenant_id)
    meta = device.meta or {}
    logger.info("Token validated for device %s", device.id)
    return VerifyResult(
        device_id=device.id,
        device_name=device.name,
        tenant_name=org.name if org else None,
        external_auth_key=auth_key,
        external_tags=list(meta.get("mesh_tags") or settings.default_tags),
        external_group=str(meta.get("mesh_group") or settings.default_group),
        expires_at=as_utc(device.enrollment_expires_at),
    )


def silent_enroll(
    session: Session,
    owner_id: str,
    tenant_id: str | None,
    device_name: str | None,
    device_type: str | None,
    os: str | None,
    fingerprint: str | None,
    ip_address: str | None = None,
) -> SilentEnrollResult:
    """Self-service enrollment keyed on ``(owner_id, fingerprint)``.

    This path skips the token handshake and any mesh confirmation, so new
    devices start ``active`` with only ``medium`` trust. It is weaker than
    the token flow and never hands out a pre-authorization key.
    """
    if not fingerprint:
        raise ValidationError("Device fingerprint required")
    parsed_type = validate_enrollment_input(device_name, device_type, os, fingerprint)

    existing = find_by_fingerprint(session, owner_id, fingerprint)
    if existing is not None:
        touch_last_seen(session, existing)
        return SilentEnrollResult(device_id=existing.id, status=existing.status, created=False)

    now = datetime.now(UTC)
    device = Device(
        owner_id=owner_id,
        tenant_id=tenant_id,
        name=device_name or "Auto-enrolled Device",
        device_type=parsed_type or DeviceType.laptop,
        os=os,
        fingerprint=fingerprint,
        status=DeviceStatus.active,
        trust_level=TrustLevel.medium,
        enrolled_at=now,
        last_seen_at=now,
        meta={"enrollment_method": "silent"},
    )
    session.add(device)
    try:
        session.flush()
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceError("Failed to enroll device") from e

    record_event(session, device.id, "enrolled", {"method": "silent", "os": os}, ip_address)
    record_audit(
        session,
        actor_id=owner_id,
        tenant_id=tenant_id,
        event="device_enrolled",
        details={"device_id": device.id, "device_name": device.name, "method": "silent"},
    )
    commit_or_raise(session, "enroll device")
    session.refresh(device)
    notify_change(device.id)

    logger.info("Device %s silently enrolled for %s", device.id, owner_id)
    return SilentEnrollResult(device_id=device.id, status=device.status, created=True)


def attach_issued_key(
    session: Session,
    device_id: str,
    key: PreAuthKey,
    tags: list[str],
    group: str,
) -> Device:
    """Store a freshly issued pre-authorization key on a pending device."""
    device = get_device(session, device_id)
    if device is None:
        raise DeviceNotFoundError(device_id)
    if device.status != DeviceStatus.pending:
        raise ValidationError("Device is not pending enrollment")
    if device.external_auth_key:
        raise ValidationError("Device already holds a pre-authorization key")

    expires = key.expires_at.isoformat() if key.expires_at else None
    device.external_auth_key = key.key
    merge_metadata(device, mesh_tags=tags, mesh_group=group, key_expires_at=expires)
    session.add(device)
    record_event(
        session,
        device.id,
        "tailscale_auth_key_generated",
        {"tags": tags, "group": group, "expires_at": expires},
    )
    commit_or_raise(session, "store pre-authorization key")
    session.refresh(device)
    notify_change(device.id)
    return device


def expire_stale_pending(session: Session, now: datetime | None = None) -> list[str]:
    """Revoke pending devices whose enrollment window has passed.

    Secrets are cleared in the same commit. Returns the revoked device ids.
    """
    now = now or datetime.now(UTC)
    expired = list_expired_pending(session, now)
    for device in expired:
        device.status = DeviceStatus.revoked
        device.enrollment_token = None
        device.external_auth_key = None
        merge_metadata(device, revoked_reason="enrollment_expired", revoked_at=now.isoformat())
        session.add(device)
        record_event(session, device.id, "enrollment_expired", {"expired_at": now.isoformat()})

    if expired:
        commit_or_raise(session, "expire stale pending devices")
        for device in expired:
            notify_change(device.id)
        logger.info("Revoked %d expired pending device(s)", len(expired))
    return [d.id for d in expired]


def revoke_device(session: Session, actor_id: str, device_id: str) -> Device:
    """Administratively revoke a device. Revocation is terminal."""
    actor = get_profile(session, actor_id)
    device = get_device(session, device_id)
    if device is None:
        raise DeviceNotFoundError(device_id)
    if actor is None or not is_admin(actor):
        raise PermissionDeniedError(f"{actor_id} may not revoke devices")
    if actor.role != Role.global_admin and device.tenant_id != actor.tenant_id:
        raise PermissionDeniedError(f"{actor_id} may not act on tenant {device.tenant_id}")

    if device.status == DeviceStatus.revoked:
        return device

    device.status = DeviceStatus.revoked
    device.enrollment_token = None
    device.external_auth_key = None
    merge_metadata(device, revoked_reason="administrative", revoked_by=actor_id)
    session.add(device)
    record_event(session, device.id, "device_revoked", {"revoked_by": actor_id})
    record_audit(
        session,
        actor_id=actor_id,
        tenant_id=device.tenant_id,
        event="device_revoked",
        details={"device_id": device.id},
    )
    commit_or_raise(session, "revoke device")
    session.refresh(device)
    notify_change(device.id)
    return device
