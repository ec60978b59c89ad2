"""Connection status: is the user's current device reachable right now?

Two independent signals are merged: the local heartbeat (``last_seen_at``
within the freshness window) and the provider's live online flag. The
provider signal is optional; when it cannot be read the heartbeat alone
decides. Every check doubles as a heartbeat for the selected device.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy.engine import Engine
from sqlmodel import Session

from meshenroll.errors import UpstreamError
from meshenroll.mesh.base import MeshDevice, MeshDirectory
from meshenroll.registry.models import Device, DeviceStatus
from meshenroll.registry.store import (
    add_change_listener,
    as_utc,
    list_owner_devices,
    remove_change_listener,
    touch_last_seen,
)

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_WINDOW = 300


@dataclass
class ConnectionStatus:
    is_connected: bool
    device_id: str | None = None
    device_name: str | None = None
    last_seen: datetime | None = None
    external_online: bool = False
    external_ip: str | None = None


def select_current_device(devices: list[Device], fingerprint: str | None) -> Device | None:
    """Fingerprint match if any, else the first (most recently seen) device."""
    if fingerprint:
        for device in devices:
            if device.fingerprint == fingerprint:
                return device
    return devices[0] if devices else None


async def _lookup_external(directory: MeshDirectory, device: Device) -> MeshDevice | None:
    access_token, network = await directory.connect()
    if device.external_device_id:
        return await directory.get_device(access_token, device.external_device_id)
    if device.external_hostname:
        return await directory.find_device_by_identifier(
            access_token, network, device.external_hostname
        )
    return None


async def check_connection(
    session: Session,
    directory: MeshDirectory | None,
    owner_id: str,
    fingerprint: str | None = None,
    heartbeat_window: int = DEFAULT_HEARTBEAT_WINDOW,
    now: datetime | None = None,
) -> ConnectionStatus:
    devices = list_owner_devices(session, owner_id, status=DeviceStatus.active)
    current = select_current_device(devices, fingerprint)
    if current is None:
        return ConnectionStatus(is_connected=False)

    now = now or datetime.now(UTC)
    last_seen = as_utc(current.last_seen_at)
    recently_active = last_seen is not None and last_seen > now - timedelta(
        seconds=heartbeat_window
    )

    meta = current.meta or {}
    external_online = bool(meta.get("mesh_online", False))
    external_ip = meta.get("mesh_ip") or current.external_ip

    if directory is not None and (current.external_device_id or current.external_hostname):
        try:
            found = await _lookup_external(directory, current)
            if found is not None:
                external_online = found.online
                external_ip = found.primary_ip or external_ip
        except UpstreamError as e:
            logger.warning("Could not check mesh status for %s: %s", current.id, e.detail)

    status = ConnectionStatus(
        is_connected=external_online or (recently_active and current.status == DeviceStatus.active),
        device_id=current.id,
        device_name=current.name,
        last_seen=last_seen,
        external_online=external_online,
        external_ip=external_ip,
    )

    touch_last_seen(session, current, now)
    return status


class ConnectionMonitor:
    """Polls connection status on an interval and on device-change notifications.

    Checks are single-flight: a trigger arriving while a check is running is
    dropped rather than queued, so timer and notification never race.
    """

    def __init__(
        self,
        engine: Engine,
        directory: MeshDirectory | None,
        owner_id: str,
        fingerprint: str | None = None,
        poll_interval: int = 30,
        heartbeat_window: int = DEFAULT_HEARTBEAT_WINDOW,
    ) -> None:
        self.engine = engine
        self.directory = directory
        self.owner_id = owner_id
        self.fingerprint = fingerprint
        self.poll_interval = poll_interval
        self.heartbeat_window = heartbeat_window
        self.last_status: ConnectionStatus | None = None
        self._callbacks: list[Callable[[ConnectionStatus], None]] = []
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._inflight: asyncio.Task[ConnectionStatus] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    async def start(self) -> None:
        logger.info("Starting connection monitor for %s", self.owner_id)
        self._loop = asyncio.get_running_loop()
        self._running = True
        add_change_listener(self._on_device_change)
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        logger.info("Stopping connection monitor for %s", self.owner_id)
        self._running = False
        remove_change_listener(self._on_device_change)
        for task in (self._task, self._inflight):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    def on_status(self, callback: Callable[[ConnectionStatus], None]) -> None:
        self._callbacks.append(callback)

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def trigger(self) -> asyncio.Task[ConnectionStatus] | None:
        """Start a check unless one is already running. Returns the new task."""
        if self.busy:
            logger.debug("Connection check already in flight, coalescing")
            return None
        self._inflight = asyncio.create_task(self._run_check())
        return self._inflight

    def notify(self) -> None:
        """Device-change hook; safe to call from any thread.

        Dropped while a check is running, including the heartbeat write the
        check itself makes.
        """
        if self._loop is None or not self._running or self.busy:
            return
        self._loop.call_soon_threadsafe(self.trigger)

    def _on_device_change(self, device_id: str) -> None:
        self.notify()

    async def _run_check(self) -> ConnectionStatus:
        with Session(self.engine) as session:
            status = await check_connection(
                session,
                self.directory,
                self.owner_id,
                fingerprint=self.fingerprint,
                heartbeat_window=self.heartbeat_window,
            )
        self.last_status = status
        for cb in self._callbacks:
            cb(status)
        return status

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                task = self.trigger()
                if task is not None:
                    await task
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Connection status check failed")

            await asyncio.sleep(self.poll_interval)
