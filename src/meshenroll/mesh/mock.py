"""In-memory mesh directory for development and testing.

Devices are added with ``join()`` to simulate an enrolling device redeeming
its pre-authorization key out of band.
"""

import logging
import secrets
from datetime import UTC, datetime, timedelta

from meshenroll.errors import UpstreamAuthError, UpstreamError
from meshenroll.mesh.base import DEFAULT_NETWORK, MeshDevice, MeshDirectory, PreAuthKey

logger = logging.getLogger(__name__)

_MOCK_TOKEN = "mock-access-token"


class MockDirectory(MeshDirectory):
    """Fake mesh provider holding its device list in memory."""

    def __init__(
        self,
        devices: list[MeshDevice] | None = None,
        provisioned_key: str | None = None,
        network: str = DEFAULT_NETWORK,
    ) -> None:
        self.devices: list[MeshDevice] = list(devices or [])
        self.provisioned_key = provisioned_key
        self.network = network
        self.fail_auth = False
        self.fail_listing = False
        self.calls: list[str] = []
        self._next_ip = 2

    def join(
        self,
        hostname: str,
        name: str | None = None,
        online: bool = True,
        os: str | None = None,
        tags: list[str] | None = None,
    ) -> MeshDevice:
        """Simulate a device joining the network."""
        device = MeshDevice(
            id=f"n{secrets.token_hex(6)}",
            hostname=hostname,
            name=name or f"{hostname}.mock.ts.net",
            online=online,
            addresses=[f"100.64.0.{self._next_ip}"],
            os=os,
            tags=list(tags or []),
            last_seen=datetime.now(UTC),
        )
        self._next_ip += 1
        self.devices.append(device)
        logger.info("Mock device joined: %s (%s)", hostname, device.primary_ip)
        return device

    def set_online(self, device_id: str, online: bool) -> None:
        for device in self.devices:
            if device.id == device_id:
                device.online = online
                device.last_seen = datetime.now(UTC)

    async def authenticate(self) -> str:
        self.calls.append("authenticate")
        if self.fail_auth:
            raise UpstreamAuthError("mock credentials rejected", status=401)
        return _MOCK_TOKEN

    async def resolve_network_name(self, access_token: str) -> str:
        self.calls.append("resolve_network_name")
        return self.network

    async def list_devices(self, access_token: str, network: str) -> list[MeshDevice]:
        self.calls.append("list_devices")
        if self.fail_listing:
            raise UpstreamError("mock directory unavailable", status=503)
        return list(self.devices)

    async def get_device(self, access_token: str, device_id: str) -> MeshDevice | None:
        self.calls.append("get_device")
        if self.fail_listing:
            raise UpstreamError("mock directory unavailable", status=503)
        for device in self.devices:
            if device.id == device_id:
                return device
        return None

    async def issue_pre_auth_key(
        self,
        access_token: str,
        network: str,
        tags: list[str],
        description: str,
    ) -> PreAuthKey:
        self.calls.append("issue_pre_auth_key")
        key = self.provisioned_key or f"tskey-auth-mock-{secrets.token_hex(8)}"
        return PreAuthKey(key=key, expires_at=datetime.now(UTC) + timedelta(hours=24))
