"""HTTP client for the audio server's bridge API."""

from __future__ import annotations

from typing import Any

import httpx

from .models import BridgeConfigResponse, BridgeRegisterRequest, BridgeStatusRequest


class ApiError(Exception):
    """Raised when a request fails or its answer cannot be used."""


class ServerApi:
    """Registers the bridge and reports its status to the server."""

    def __init__(
        self,
        base_url: str,
        register_path: str,
        status_path: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.register_path = register_path
        self.status_path = status_path
        self._client = httpx.AsyncClient(
            transport=transport, timeout=None, follow_redirects=True
        )

    async def __aenter__(self) -> ServerApi:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self._client.aclose()

    def status_url(self, bridge_id: str) -> str:
        """URL of the status endpoint for ``bridge_id``."""
        return self.base_url + self.status_path.replace("{bridge_id}", bridge_id)

    async def _post(self, url: str, body: Any, action: str) -> BridgeConfigResponse:
        try:
            response = await self._client.post(url, json=body)
        except httpx.HTTPError as err:
            raise ApiError(f"{action}: {err}") from err
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as err:
            raise ApiError(f"{action} response status: {err}") from err
        try:
            return BridgeConfigResponse.from_dict(response.json())
        except ValueError as err:
            raise ApiError(f"parse {action} response: {err}") from err

    async def register_bridge(self, request: BridgeRegisterRequest) -> BridgeConfigResponse:
        """Announce this bridge; return the configuration assigned to it."""
        return await self._post(
            self.base_url + self.register_path, request.to_dict(), "register"
        )

    async def post_status(
        self, bridge_id: str, status: BridgeStatusRequest
    ) -> BridgeConfigResponse:
        """Report status; return the current configuration."""
        return await self._post(self.status_url(bridge_id), status.to_dict(), "status")