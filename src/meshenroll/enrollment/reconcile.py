"""Reconcile local devices against the mesh provider's device list.

A pending device becomes active only once the provider reports it as a
member of the network. Nothing is written on uncertain information: any
provider failure leaves the row exactly as it was.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlmodel import Session

from meshenroll.audit.log import record_audit
from meshenroll.errors import DeviceNotFoundError, UpstreamError
from meshenroll.mesh.base import MeshDevice, MeshDirectory
from meshenroll.registry.models import Device, DeviceStatus
from meshenroll.registry.store import (
    activate_if_pending,
    commit_or_raise,
    get_device,
    hostname_hint,
    linked_external_ids,
    list_active_devices,
    merge_metadata,
    notify_change,
    record_event,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    connected: bool
    status: DeviceStatus
    hostname: str | None = None
    ip: str | None = None


@dataclass
class SyncResult:
    synced: int
    total_upstream: int


def _first_label(name: str) -> str:
    return name.split(".", 1)[0].lower()


def match_device(
    device: Device,
    candidates: list[MeshDevice],
    hostname: str | None = None,
) -> MeshDevice | None:
    """Find the provider device corresponding to a local one.

    Stored linkage (provider id, hostname) wins over an explicit hostname
    hint, which wins over a guess derived from the display name.
    """
    linked_id = device.external_device_id
    linked_host = (device.external_hostname or "").lower()
    for candidate in candidates:
        if linked_id and candidate.id == linked_id:
            return candidate
        if linked_host and candidate.hostname.lower() == linked_host:
            return candidate

    hints = [h for h in (hostname, (device.meta or {}).get("hostname_hint")) if h]
    hints.append(hostname_hint(device.name))
    for hint in hints:
        needle = str(hint).lower()
        if not needle:
            continue
        for candidate in candidates:
            if candidate.hostname.lower() == needle or _first_label(candidate.name) == needle:
                return candidate
    return None


async def reconcile(
    session: Session,
    directory: MeshDirectory,
    device_id: str,
    hostname: str | None = None,
    ip_address: str | None = None,
) -> ReconcileResult:
    """Promote a pending device to active once it shows up in the mesh.

    Idempotent: active devices report their stored linkage without a write,
    and the transition itself is guarded on the row still being pending.
    """
    device = get_device(session, device_id)
    if device is None:
        raise DeviceNotFoundError(device_id)

    if device.status == DeviceStatus.active:
        return ReconcileResult(
            connected=True,
            status=device.status,
            hostname=device.external_hostname,
            ip=device.external_ip,
        )
    if device.status != DeviceStatus.pending:
        return ReconcileResult(connected=False, status=device.status)

    try:
        access_token, network = await directory.connect()
        candidates = await directory.list_devices(access_token, network)
    except UpstreamError as e:
        logger.warning("Mesh lookup failed for device %s: %s", device.id, e.detail)
        return ReconcileResult(connected=False, status=device.status)

    # One provider node backs at most one local device
    taken = linked_external_ids(session, exclude_device_id=device.id)
    candidates = [c for c in candidates if c.id not in taken]

    match = match_device(device, candidates, hostname)
    if match is None:
        logger.debug("Device %s not yet visible in the mesh", device.id)
        return ReconcileResult(connected=False, status=device.status)

    now = datetime.now(UTC)
    owner_id, tenant_id = device.owner_id, device.tenant_id
    if not activate_if_pending(
        session,
        device.id,
        external_device_id=match.id,
        external_hostname=match.hostname or None,
        external_ip=match.primary_ip,
        now=now,
    ):
        session.rollback()
        session.refresh(device)
        logger.info("Device %s was not activated by this writer (now %s)", device.id, device.status)
        return ReconcileResult(
            connected=device.status == DeviceStatus.active,
            status=device.status,
            hostname=device.external_hostname,
            ip=device.external_ip,
        )

    details = {
        "external_device_id": match.id,
        "external_hostname": match.hostname,
        "external_ip": match.primary_ip,
    }
    record_event(session, device_id, "tailscale_connected", details, ip_address=ip_address)
    record_audit(
        session,
        actor_id=owner_id,
        tenant_id=tenant_id,
        event="device_enrolled_tailscale",
        details={"device_id": device_id, "external_hostname": match.hostname},
    )
    commit_or_raise(session, "record mesh enrollment")
    notify_change(device_id)

    logger.info("Device %s joined the mesh as %s (%s)", device_id, match.hostname, match.primary_ip)
    return ReconcileResult(
        connected=True,
        status=DeviceStatus.active,
        hostname=match.hostname,
        ip=match.primary_ip,
    )


async def sync_all(session: Session, directory: MeshDirectory) -> SyncResult:
    """Refresh presence metadata of every linked active device.

    Never changes ``status``. Provider errors propagate to the caller.
    """
    access_token, network = await directory.connect()
    upstream = await directory.list_devices(access_token, network)
    by_id = {d.id: d for d in upstream if d.id}
    by_host = {d.hostname.lower(): d for d in upstream if d.hostname}

    now = datetime.now(UTC)
    synced: list[str] = []
    for local in list_active_devices(session):
        match = None
        if local.external_device_id:
            match = by_id.get(local.external_device_id)
        if match is None and local.external_hostname:
            match = by_host.get(local.external_hostname.lower())
        if match is None:
            continue

        if match.online:
            local.last_seen_at = now
        merge_metadata(
            local,
            mesh_online=match.online,
            mesh_last_seen=match.last_seen.isoformat() if match.last_seen else None,
            mesh_ip=match.primary_ip,
        )
        session.add(local)
        synced.append(local.id)

    if synced:
        commit_or_raise(session, "sync mesh presence")
        for device_id in synced:
            notify_change(device_id)

    logger.info("Mesh sync: %d of %d upstream device(s) matched", len(synced), len(upstream))
    return SyncResult(synced=len(synced), total_upstream=len(upstream))
