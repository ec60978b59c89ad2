"""REST API endpoints."""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from sqlmodel import Session

from meshenroll.audit.log import list_audit
from meshenroll.audit.models import AuditLog
from meshenroll.config import settings
from meshenroll.database import get_session
from meshenroll.enrollment.fingerprint import (
    detect_device_info,
    generate_fingerprint,
    signals_from_headers,
)
from meshenroll.enrollment.monitor import check_connection
from meshenroll.enrollment.reconcile import reconcile, sync_all
from meshenroll.enrollment.tokens import (
    TokenGrant,
    attach_issued_key,
    create_pending_for_user,
    expire_stale_pending,
    generate_token,
    revoke_device,
    silent_enroll,
    verify,
)
from meshenroll.errors import (
    AuthenticationError,
    DeviceNotFoundError,
    PermissionDeniedError,
    UpstreamError,
    ValidationError,
)
from meshenroll.identity.models import Profile, Role
from meshenroll.identity.store import authenticate_bearer, is_admin
from meshenroll.mesh.base import MeshDirectory
from meshenroll.registry.models import Device, DeviceEvent
from meshenroll.registry.store import get_device, get_device_events, list_owner_devices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

ACTIONS = frozenset(
    {"generate_token", "enroll", "verify", "create_pending_device", "check_tailscale_status"}
)


# Request models
class EnrollmentRequest(BaseModel):
    action: str
    token: str | None = None
    device_id: str | None = None
    device_name: str | None = None
    device_type: str | None = None
    os: str | None = None
    fingerprint: str | None = None
    hostname: str | None = None
    target_user_id: str | None = None
    tenant_id: str | None = None
    auth_key: str | None = None


class CheckDeviceRequest(BaseModel):
    identifier: str


class IssueKeyRequest(BaseModel):
    device_id: str | None = None
    tags: list[str] | None = None
    description: str | None = None


# Response models
class DeviceView(BaseModel):
    """Device as shown to API callers. One-time secrets are never included."""

    id: str
    owner_id: str
    tenant_id: str | None
    name: str
    device_type: str
    os: str | None
    status: str
    trust_level: str
    fingerprint: str | None
    external_device_id: str | None
    external_hostname: str | None
    external_ip: str | None
    enrollment_expires_at: datetime | None
    last_seen_at: datetime | None
    enrolled_at: datetime | None
    created_at: datetime
    metadata: dict[str, Any]

    @classmethod
    def from_device(cls, device: Device) -> "DeviceView":
        return cls(
            id=device.id,
            owner_id=device.owner_id,
            tenant_id=device.tenant_id,
            name=device.name,
            device_type=str(device.device_type),
            os=device.os,
            status=str(device.status),
            trust_level=str(device.trust_level),
            fingerprint=device.fingerprint,
            external_device_id=device.external_device_id,
            external_hostname=device.external_hostname,
            external_ip=device.external_ip,
            enrollment_expires_at=device.enrollment_expires_at,
            last_seen_at=device.last_seen_at,
            enrolled_at=device.enrolled_at,
            created_at=device.created_at,
            metadata=device.meta or {},
        )


# Dependencies
def get_optional_profile(
    authorization: str | None = Header(default=None),
    session: Session = Depends(get_session),
) -> Profile | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authenticate_bearer(session, authorization[7:].strip())


def get_current_profile(profile: Profile | None = Depends(get_optional_profile)) -> Profile:
    if profile is None:
        raise AuthenticationError("Missing or invalid bearer token")
    return profile


def get_admin_profile(profile: Profile = Depends(get_current_profile)) -> Profile:
    if not is_admin(profile):
        raise PermissionDeniedError(f"{profile.id} is not an administrator")
    return profile


def get_directory(request: Request) -> MeshDirectory | None:
    return getattr(request.app.state, "directory", None)


def _require_directory(directory: MeshDirectory | None) -> MeshDirectory:
    if directory is None:
        raise UpstreamError("No mesh directory configured")
    return directory


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _can_view(profile: Profile, device: Device) -> bool:
    if device.owner_id == profile.id:
        return True
    if not is_admin(profile):
        return False
    return profile.role == Role.global_admin or device.tenant_id == profile.tenant_id


def _visible_device(session: Session, profile: Profile, device_id: str) -> Device:
    device = get_device(session, device_id)
    if device is None or not _can_view(profile, device):
        raise DeviceNotFoundError(device_id)
    return device


def _grant_response(grant: TokenGrant) -> dict[str, Any]:
    return {
        "success": True,
        "device_id": grant.device_id,
        "token": grant.token,
        "expires_at": grant.expires_at,
        "has_external_key": grant.has_external_key,
        "status": grant.status,
    }


# --- Enrollment ---


@router.post("/enrollment")
async def enrollment_action(
    body: EnrollmentRequest,
    request: Request,
    session: Session = Depends(get_session),
    profile: Profile | None = Depends(get_optional_profile),
    directory: MeshDirectory | None = Depends(get_directory),
) -> dict[str, Any]:
    action = body.action
    if action not in ACTIONS:
        raise ValidationError(f"Invalid action: {action}")

    ip_address = _client_ip(request)

    # Public self-service path: the enrollment token is the credential
    if action == "verify":
        result = verify(
            session,
            body.token or "",
            fingerprint=body.fingerprint,
            device_type=body.device_type,
            ip_address=ip_address,
        )
        return {
            "success": True,
            "device_id": result.device_id,
            "device_name": result.device_name,
            "tenant_name": result.tenant_name,
            "auth_key": result.external_auth_key,
            "tags": result.external_tags,
            "group": result.external_group,
            "expires_at": result.expires_at,
        }

    if profile is None:
        raise AuthenticationError(f"Action {action} requires authentication")

    if action == "check_tailscale_status":
        if not body.device_id:
            raise ValidationError("Device ID required")
        device = _visible_device(session, profile, body.device_id)
        # Only administrators may steer matching with an explicit hostname
        outcome = await reconcile(
            session,
            _require_directory(directory),
            device.id,
            hostname=body.hostname if is_admin(profile) else None,
            ip_address=ip_address,
        )
        return {
            "success": True,
            "connected": outcome.connected,
            "status": outcome.status,
            "hostname": outcome.hostname,
            "ip": outcome.ip,
        }

    if action == "generate_token":
        grant = generate_token(
            session,
            owner_id=profile.id,
            tenant_id=profile.tenant_id,
            device_name=body.device_name,
            device_type=body.device_type,
            os=body.os,
            ip_address=ip_address,
        )
        return _grant_response(grant)

    if action == "create_pending_device":
        grant = create_pending_for_user(
            session,
            admin_id=profile.id,
            target_user_id=body.target_user_id,
            tenant_id=body.tenant_id,
            device_name=body.device_name,
            device_type=body.device_type,
            os=body.os,
            explicit_auth_key=body.auth_key,
            ip_address=ip_address,
        )
        return _grant_response(grant)

    # enroll: fill anything the caller left out from the request itself
    info = detect_device_info(request.headers.get("user-agent"))
    fingerprint = body.fingerprint or generate_fingerprint(signals_from_headers(request.headers))
    enrolled = silent_enroll(
        session,
        owner_id=profile.id,
        tenant_id=profile.tenant_id,
        device_name=body.device_name or info.name,
        device_type=body.device_type or info.device_type,
        os=body.os or info.os,
        fingerprint=fingerprint,
        ip_address=ip_address,
    )
    return {
        "success": True,
        "device_id": enrolled.device_id,
        "status": enrolled.status,
        "created": enrolled.created,
        "fingerprint": fingerprint,
    }


# --- Devices ---


@router.get("/devices")
def list_my_devices(
    profile: Profile = Depends(get_current_profile),
    session: Session = Depends(get_session),
) -> list[DeviceView]:
    return [DeviceView.from_device(d) for d in list_owner_devices(session, profile.id)]


# Literal paths must come before the {device_id} parametric path
@router.post("/devices/sync")
async def sync_devices(
    profile: Profile = Depends(get_admin_profile),
    session: Session = Depends(get_session),
    directory: MeshDirectory | None = Depends(get_directory),
) -> dict[str, Any]:
    result = await sync_all(session, _require_directory(directory))
    return {"success": True, "synced": result.synced, "total": result.total_upstream}


@router.post("/devices/expire")
def expire_devices(
    profile: Profile = Depends(get_admin_profile),
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    revoked = expire_stale_pending(session)
    return {"success": True, "revoked": revoked}


@router.get("/devices/{device_id}")
def device_detail(
    device_id: str,
    profile: Profile = Depends(get_current_profile),
    session: Session = Depends(get_session),
) -> DeviceView:
    return DeviceView.from_device(_visible_device(session, profile, device_id))


@router.get("/devices/{device_id}/events")
def device_events(
    device_id: str,
    limit: int = 100,
    profile: Profile = Depends(get_current_profile),
    session: Session = Depends(get_session),
) -> list[DeviceEvent]:
    _visible_device(session, profile, device_id)
    return get_device_events(session, device_id, limit=limit)


@router.post("/devices/{device_id}/revoke")
def revoke(
    device_id: str,
    profile: Profile = Depends(get_admin_profile),
    session: Session = Depends(get_session),
) -> DeviceView:
    return DeviceView.from_device(revoke_device(session, profile.id, device_id))


# --- Connection status ---


@router.get("/connection-status")
async def connection_status(
    fingerprint: str | None = None,
    profile: Profile = Depends(get_current_profile),
    session: Session = Depends(get_session),
    directory: MeshDirectory | None = Depends(get_directory),
) -> dict[str, Any]:
    status = await check_connection(
        session,
        directory,
        profile.id,
        fingerprint=fingerprint,
        heartbeat_window=settings.heartbeat_window,
    )
    return {
        "is_connected": status.is_connected,
        "device_id": status.device_id,
        "device_name": status.device_name,
        "last_seen": status.last_seen,
        "external_online": status.external_online,
        "external_ip": status.external_ip,
    }


# --- Mesh directory ---


@router.post("/mesh/devices/check")
async def check_mesh_device(
    body: CheckDeviceRequest,
    profile: Profile = Depends(get_current_profile),
    directory: MeshDirectory | None = Depends(get_directory),
) -> dict[str, Any]:
    mesh = _require_directory(directory)
    access_token, network = await mesh.connect()
    found = await mesh.find_device_by_identifier(access_token, network, body.identifier)
    if found is None:
        return {"success": True, "found": False}
    return {
        "success": True,
        "found": True,
        "device": {
            "id": found.id,
            "hostname": found.hostname,
            "name": found.name,
            "online": found.online,
            "ip": found.primary_ip,
            "os": found.os,
            "last_seen": found.last_seen,
        },
    }


@router.post("/mesh/auth-keys")
async def issue_auth_key(
    body: IssueKeyRequest,
    profile: Profile = Depends(get_admin_profile),
    session: Session = Depends(get_session),
    directory: MeshDirectory | None = Depends(get_directory),
) -> dict[str, Any]:
    if body.device_id:
        # Tenant check before anything is issued upstream
        _visible_device(session, profile, body.device_id)

    tags = body.tags or list(settings.default_tags)
    description = body.description or f"Issued by {profile.id}"
    mesh = _require_directory(directory)
    access_token, network = await mesh.connect()
    key = await mesh.issue_pre_auth_key(access_token, network, tags, description)

    if body.device_id:
        attach_issued_key(session, body.device_id, key, tags, settings.default_group)

    return {
        "success": True,
        "auth_key": key.key,
        "expires_at": key.expires_at,
        "tags": tags,
        "device_id": body.device_id,
    }


# --- Audit ---


@router.get("/audit")
def recent_audit(
    event: str | None = None,
    limit: int = 100,
    profile: Profile = Depends(get_admin_profile),
    session: Session = Depends(get_session),
) -> list[AuditLog]:
    tenant_id = None if profile.role == Role.global_admin else profile.tenant_id
    return list_audit(session, tenant_id=tenant_id, event=event, limit=limit)
