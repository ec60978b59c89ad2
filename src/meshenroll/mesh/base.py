"""Base interface for mesh-network directory clients."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Network-scope marker meaning "the tailnet of the authenticated caller"
DEFAULT_NETWORK = "-"


def parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed


def _str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v]


@dataclass
class MeshDevice:
    """A device as reported by the mesh provider."""

    id: str
    hostname: str
    name: str = ""
    online: bool = False
    addresses: list[str] = field(default_factory=list)
    os: str | None = None
    tags: list[str] = field(default_factory=list)
    last_seen: datetime | None = None

    @property
    def primary_ip(self) -> str | None:
        return self.addresses[0] if self.addresses else None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "MeshDevice":
        """Parse one provider device payload.

        The provider has shipped both ``addresses`` and ``ipAddresses`` for
        the IP list; either is accepted. Missing fields get neutral defaults.
        """
        addresses = _str_list(data.get("addresses")) or _str_list(data.get("ipAddresses"))
        device_id = data.get("id") or data.get("nodeId") or ""
        return cls(
            id=str(device_id),
            hostname=str(data.get("hostname") or ""),
            name=str(data.get("name") or ""),
            online=bool(data.get("online", False)),
            addresses=addresses,
            os=data.get("os") or None,
            tags=_str_list(data.get("tags")),
            last_seen=parse_timestamp(data.get("lastSeen")),
        )

    def matches(self, identifier: str) -> bool:
        """Hostname equals, name contains, or an address equals the identifier."""
        needle = identifier.lower()
        return (
            self.hostname.lower() == needle
            or (bool(self.name) and needle in self.name.lower())
            or identifier in self.addresses
        )


@dataclass
class PreAuthKey:
    key: str
    expires_at: datetime | None


class MeshDirectory(ABC):
    """Minimal view of the mesh provider's device directory.

    Operations never retry; callers own the retry policy.
    """

    @abstractmethod
    async def authenticate(self) -> str:
        """Exchange service credentials for a short-lived access token."""

    @abstractmethod
    async def resolve_network_name(self, access_token: str) -> str:
        """Discover the network scope to query. Never raises."""

    @abstractmethod
    async def list_devices(self, access_token: str, network: str) -> list[MeshDevice]:
        """List every device in the network."""

    @abstractmethod
    async def get_device(self, access_token: str, device_id: str) -> MeshDevice | None:
        """Look up a single device by provider id."""

    @abstractmethod
    async def issue_pre_auth_key(
        self,
        access_token: str,
        network: str,
        tags: list[str],
        description: str,
    ) -> PreAuthKey:
        """Return a pre-authorization key new devices can join with."""

    async def find_device_by_identifier(
        self,
        access_token: str,
        network: str,
        identifier: str,
    ) -> MeshDevice | None:
        """First device matching by hostname, name or IP in one scan."""
        for device in await self.list_devices(access_token, network):
            if device.matches(identifier):
                return device
        return None

    async def connect(self) -> tuple[str, str]:
        """Authenticate and resolve the network scope in one step."""
        token = await self.authenticate()
        network = await self.resolve_network_name(token)
        return token, network

    async def aclose(self) -> None:
        """Release any held connections."""
