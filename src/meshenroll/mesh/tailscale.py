"""Tailscale API v2 directory client via httpx.

Authenticates with an OAuth client-credentials grant and exposes the
device listing, single-device lookup and auth-key issuance the enrollment
flow needs. Provider payloads are parsed into MeshDevice at this boundary.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from meshenroll.errors import UpstreamAuthError, UpstreamError
from meshenroll.mesh.base import (
    DEFAULT_NETWORK,
    MeshDevice,
    MeshDirectory,
    PreAuthKey,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

# Nominal lifetime reported for an operator-provisioned key
_PROVISIONED_KEY_TTL = timedelta(hours=24)
_ISSUED_KEY_EXPIRY_SECONDS = 86400


def _payload(resp: httpx.Response, error: type[UpstreamError] = UpstreamError) -> dict[str, Any]:
    """Decode a success body. Anything but a JSON object is an upstream failure."""
    try:
        data = resp.json()
    except ValueError as e:
        logger.error("Non-JSON response (HTTP %d): %s", resp.status_code, resp.text[:200])
        raise error(resp.text, status=resp.status_code) from e
    if not isinstance(data, dict):
        logger.error("Unexpected response shape (HTTP %d): %s", resp.status_code, resp.text[:200])
        raise error(resp.text, status=resp.status_code)
    return data


class TailscaleDirectory(MeshDirectory):
    """Talks to the Tailscale control API."""

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        api_url: str = "https://api.tailscale.com/api/v2",
        provisioned_key: str | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_url = api_url.rstrip("/")
        self.provisioned_key = provisioned_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            return await self._http().request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Tailscale request %s %s failed: %s", method, path, e)
            raise UpstreamError(f"{method} {path}: {e}") from e

    async def authenticate(self) -> str:
        if not self.client_id or not self.client_secret:
            raise UpstreamAuthError("Tailscale OAuth credentials not configured")

        resp = await self._request(
            "POST",
            "/oauth/token",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            },
        )
        if not resp.is_success:
            logger.error("OAuth token error (HTTP %d): %s", resp.status_code, resp.text)
            raise UpstreamAuthError(resp.text, status=resp.status_code)

        token = _payload(resp, UpstreamAuthError).get("access_token")
        if not token:
            raise UpstreamAuthError("OAuth response carried no access_token")
        return str(token)

    async def resolve_network_name(self, access_token: str) -> str:
        try:
            resp = await self._request(
                "GET", f"/tailnet/{DEFAULT_NETWORK}/devices", access_token=access_token
            )
            if resp.is_success:
                return DEFAULT_NETWORK

            resp = await self._request("GET", "/whoami", access_token=access_token)
            if resp.is_success:
                tailnet = _payload(resp).get("tailnet") or {}
                return tailnet.get("name") or DEFAULT_NETWORK
        except (UpstreamError, ValueError, AttributeError):
            logger.warning("Could not resolve tailnet name, using default scope", exc_info=True)
        return DEFAULT_NETWORK

    async def list_devices(self, access_token: str, network: str) -> list[MeshDevice]:
        resp = await self._request("GET", f"/tailnet/{network}/devices", access_token=access_token)
        if not resp.is_success:
            logger.error("List devices error (HTTP %d): %s", resp.status_code, resp.text)
            raise UpstreamError(resp.text, status=resp.status_code)

        rows = _payload(resp).get("devices") or []
        return [MeshDevice.from_api(row) for row in rows if isinstance(row, dict)]

    async def get_device(self, access_token: str, device_id: str) -> MeshDevice | None:
        resp = await self._request("GET", f"/device/{device_id}", access_token=access_token)
        if resp.status_code == 404:
            return None
        if not resp.is_success:
            logger.error("Device lookup error (HTTP %d): %s", resp.status_code, resp.text)
            raise UpstreamError(resp.text, status=resp.status_code)
        return MeshDevice.from_api(_payload(resp))

    async def issue_pre_auth_key(
        self,
        access_token: str,
        network: str,
        tags: list[str],
        description: str,
    ) -> PreAuthKey:
        if self.provisioned_key:
            logger.info("Using provisioned Tailscale auth key")
            return PreAuthKey(
                key=self.provisioned_key,
                expires_at=datetime.now(UTC) + _PROVISIONED_KEY_TTL,
            )

        create: dict[str, Any] = {
            "reusable": True,
            "ephemeral": False,
            "preauthorized": True,
        }
        if tags:
            create["tags"] = tags
        body = {
            "capabilities": {"devices": {"create": create}},
            "expirySeconds": _ISSUED_KEY_EXPIRY_SECONDS,
            "description": description,
        }
        resp = await self._request(
            "POST", f"/tailnet/{network}/keys", access_token=access_token, json=body
        )
        if not resp.is_success:
            logger.error("Generate auth key error (HTTP %d): %s", resp.status_code, resp.text)
            raise UpstreamError(resp.text, status=resp.status_code)

        data = _payload(resp)
        key = data.get("key")
        if not key:
            raise UpstreamError("Auth key response carried no key")
        return PreAuthKey(key=str(key), expires_at=parse_timestamp(data.get("expires")))
