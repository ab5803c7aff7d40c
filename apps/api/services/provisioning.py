"""Game panel provisioning client used for suspend/delete side effects."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from config import settings
from models.server import ManagedServer

logger = logging.getLogger(__name__)


class ProvisioningError(RuntimeError):
    """Raised when the game panel rejects or fails a provisioning command."""


class Provisioner(Protocol):
    async def suspend_server(self, server: ManagedServer) -> None: ...

    async def delete_server(self, server: ManagedServer) -> None: ...


class NullProvisioner:
    """Provisioner used when no panel is configured."""

    async def suspend_server(self, server: ManagedServer) -> None:
        logger.info("provisioning_disabled action=suspend server=%s", server.id)

    async def delete_server(self, server: ManagedServer) -> None:
        logger.info("provisioning_disabled action=delete server=%s", server.id)


class PanelProvisioner:
    """Pterodactyl application API client."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        force_delete: bool = False,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.force_delete = force_delete
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )

    async def _send(self, method: str, path: str, *, params: Optional[dict] = None) -> None:
        try:
            async with self._client() as client:
                response = await client.request(method, path, params=params)
        except httpx.HTTPError as exc:
            raise ProvisioningError(f"Panel request {method} {path} failed: {exc}") from exc
        if response.status_code == 404 and method == "DELETE":
            # Already gone on the panel side.
            return
        if response.status_code != 204:
            raise ProvisioningError(
                f"Panel request {method} {path} returned {response.status_code}: {response.text[:300]}"
            )

    async def suspend_server(self, server: ManagedServer) -> None:
        if server.panel_server_id is None:
            return
        await self._send("POST", f"/api/application/servers/{server.panel_server_id}/suspend")

    async def delete_server(self, server: ManagedServer) -> None:
        if server.panel_server_id is None:
            return
        params = {"force": "true"} if self.force_delete else None
        await self._send("DELETE", f"/api/application/servers/{server.panel_server_id}", params=params)


def get_provisioner() -> Provisioner:
    """Return the panel client when configured, otherwise a logging no-op."""
    if settings.PANEL_URL and settings.PANEL_API_KEY:
        return PanelProvisioner(
            settings.PANEL_URL,
            settings.PANEL_API_KEY,
            force_delete=settings.PANEL_FORCE_DELETE,
            timeout=float(settings.PANEL_TIMEOUT_SECONDS),
        )
    return NullProvisioner()
