"""Device registry queries, event trail and the guarded status transition."""

import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import exists, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased
from sqlmodel import Session, select

from meshenroll.errors import PersistenceError
from meshenroll.registry.models import Device, DeviceEvent, DeviceStatus, TrustLevel

logger = logging.getLogger(__name__)

_HOSTNAME_UNSAFE_RE = re.compile(r"[^a-z0-9]+")

# Process-local listeners told about device writes (the connection monitor)
_change_listeners: list[Callable[[str], None]] = []


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite strips tzinfo)."""
    if value is None:
        return None
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def hostname_hint(name: str) -> str:
    """Guess the hostname a device will register with from its display name."""
    return _HOSTNAME_UNSAFE_RE.sub("-", name.lower()).strip("-")


def add_change_listener(callback: Callable[[str], None]) -> None:
    _change_listeners.append(callback)


def remove_change_listener(callback: Callable[[str], None]) -> None:
    if callback in _change_listeners:
        _change_listeners.remove(callback)


def notify_change(device_id: str) -> None:
    for cb in list(_change_listeners):
        try:
            cb(device_id)
        except Exception:
            logger.exception("Device change listener failed for %s", device_id)


def commit_or_raise(session: Session, what: str) -> None:
    """Commit, turning storage failures into PersistenceError."""
    try:
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Failed to %s: %s", what, e)
        raise PersistenceError(f"Failed to {what}") from e


def get_device(session: Session, device_id: str) -> Device | None:
    return session.get(Device, device_id)


def get_pending_by_token(session: Session, token: str) -> Device | None:
    """Return the pending device holding this enrollment token, if any."""
    stmt = select(Device).where(
        Device.enrollment_token == token,
        Device.status == DeviceStatus.pending,
    )
    return session.exec(stmt).first()


def find_by_fingerprint(session: Session, owner_id: str, fingerprint: str) -> Device | None:
    stmt = select(Device).where(
        Device.owner_id == owner_id,
        Device.fingerprint == fingerprint,
    )
    return session.exec(stmt).first()


def list_owner_devices(
    session: Session,
    owner_id: str,
    status: DeviceStatus | None = None,
) -> list[Device]:
    """Get a user's devices, most recently seen first."""
    stmt = select(Device).where(Device.owner_id == owner_id)
    if status is not None:
        stmt = stmt.where(Device.status == status)
    stmt = stmt.order_by(
        Device.last_seen_at.desc().nulls_last(),  # type: ignore[union-attr]
        Device.created_at.desc(),  # type: ignore[attr-defined]
    )
    return list(session.exec(stmt).all())


def list_active_devices(session: Session) -> list[Device]:
    stmt = select(Device).where(Device.status == DeviceStatus.active)
    return list(session.exec(stmt).all())


def linked_external_ids(session: Session, exclude_device_id: str | None = None) -> set[str]:
    """Provider ids already linked to a live (non-revoked) local device."""
    stmt = select(Device.external_device_id).where(
        Device.external_device_id.is_not(None),  # type: ignore[union-attr]
        Device.status != DeviceStatus.revoked,
    )
    if exclude_device_id is not None:
        stmt = stmt.where(Device.id != exclude_device_id)
    return {row for row in session.exec(stmt).all() if row}


def list_expired_pending(session: Session, now: datetime) -> list[Device]:
    # Naive UTC for SQLite compatibility
    cutoff = now.astimezone(UTC).replace(tzinfo=None)
    stmt = select(Device).where(
        Device.status == DeviceStatus.pending,
        Device.enrollment_expires_at < cutoff,  # type: ignore[operator]
    )
    return list(session.exec(stmt).all())


def record_event(
    session: Session,
    device_id: str,
    event_type: str,
    details: dict[str, Any] | None = None,
    ip_address: str | None = None,
) -> DeviceEvent:
    """Append to the device event trail. Caller commits."""
    event = DeviceEvent(
        device_id=device_id,
        event_type=event_type,
        details=details or {},
        ip_address=ip_address,
    )
    session.add(event)
    return event


def get_device_events(session: Session, device_id: str, limit: int = 100) -> list[DeviceEvent]:
    stmt = (
        select(DeviceEvent)
        .where(DeviceEvent.device_id == device_id)
        .order_by(
            DeviceEvent.created_at.desc(),  # type: ignore[attr-defined]
            DeviceEvent.id.desc(),  # type: ignore[union-attr]
        )
        .limit(limit)
    )
    return list(session.exec(stmt).all())


def touch_last_seen(session: Session, device: Device, now: datetime | None = None) -> Device:
    device.last_seen_at = now or datetime.now(UTC)
    session.add(device)
    session.commit()
    session.refresh(device)
    notify_change(device.id)
    return device


def merge_metadata(device: Device, **values: Any) -> None:
    """Replace the JSON map so the change is flushed."""
    device.meta = {**(device.meta or {}), **values}


def activate_if_pending(
    session: Session,
    device_id: str,
    external_device_id: str,
    external_hostname: str | None,
    external_ip: str | None,
    now: datetime,
) -> bool:
    """Transition pending -> active, clearing both one-time secrets.

    The UPDATE is conditioned on the row still being pending and on no other
    live device already holding the provider id. Returns False when another
    writer got there first; that is a lost race, not an error.
    Caller commits.
    """
    other = aliased(Device)
    already_linked = exists().where(
        other.external_device_id == external_device_id,
        other.id != device_id,
        other.status != DeviceStatus.revoked,
    )
    stmt = (
        update(Device)
        .where(Device.id == device_id)  # type: ignore[arg-type]
        .where(Device.status == DeviceStatus.pending)  # type: ignore[arg-type]
        .where(~already_linked)
        .values(
            status=DeviceStatus.active,
            trust_level=TrustLevel.high,
            enrolled_at=now,
            last_seen_at=now,
            external_device_id=external_device_id,
            external_hostname=external_hostname,
            external_ip=external_ip,
            enrollment_token=None,
            external_auth_key=None,
        )
    )
    result = session.connection().execute(stmt)
    return result.rowcount == 1
