"""Capability interface to the live chat network connection.

The handshake itself is opaque: a bridge is told to open a session and reports
back ``qr``, ``authenticated``, ``ready``, ``disconnected`` and ``message`` events.
"""

from typing import Any, Awaitable, Callable, Optional, Protocol
from uuid import UUID

import httpx

from switchboard.config import settings
from switchboard.logging_config import get_logger
from switchboard.services.channel_errors import send_error_from_httpx

logger = get_logger("session_bridge")

BRIDGE_EVENT_TYPES = ("qr", "authenticated", "ready", "disconnected", "message")

EmitEvent = Callable[[str, dict[str, Any]], Awaitable[None]]


class ChannelConnection(Protocol):
    async def send_text(self, address: str, content: str) -> Optional[str]:
        """Send text to a chat id, returning the network's message id when known."""
        ...

    async def send_media(
        self, address: str, media_ref: str, *, media_type: str = "image", caption: Optional[str] = None
    ) -> Optional[str]:
        ...

    async def close(self) -> None:
        ...


class ChannelBridge(Protocol):
    async def open(self, session_id: str, tenant_id: UUID, emit: EmitEvent) -> ChannelConnection:
        ...


class HttpSidecarConnection:
    def __init__(self, client: httpx.AsyncClient, session_id: str):
        self._client = client
        self.session_id = session_id

    async def send_text(self, address: str, content: str) -> Optional[str]:
        return await self._post_send("send", {"to": address, "message": content})

    async def send_media(
        self, address: str, media_ref: str, *, media_type: str = "image", caption: Optional[str] = None
    ) -> Optional[str]:
        payload = {"to": address, "media": media_ref, "mediaType": media_type}
        if caption:
            payload["caption"] = caption
        return await self._post_send("send-media", payload)

    async def _post_send(self, path: str, payload: dict[str, Any]) -> Optional[str]:
        try:
            response = await self._client.post(f"/sessions/{self.session_id}/{path}", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise send_error_from_httpx(e, channel="session bridge") from e
        try:
            data = response.json() if response.content else {}
        except ValueError:
            logger.warning(f"Bridge accepted send on {self.session_id} with a non-JSON body")
            return None
        if not isinstance(data, dict):
            return None
        return data.get("id") or data.get("message_id")

    async def close(self) -> None:
        try:
            response = await self._client.delete(f"/sessions/{self.session_id}")
            if response.status_code not in (200, 202, 204, 404):
                logger.warning(f"Bridge close for {self.session_id} returned {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Bridge close for {self.session_id} failed: {e}")


class HttpSidecarBridge:
    """Bridge to a browser-automation sidecar over HTTP.

    The sidecar reports events by calling ``POST /bridge/sessions/{id}/events``,
    so ``emit`` is not used here; the router hands those events to the manager.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {}
        token = token if token is not None else settings.bridge_token
        if token:
            headers["X-Bridge-Token"] = token
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.session_bridge_url,
            timeout=timeout or settings.session_bridge_timeout_seconds,
            headers=headers,
        )

    async def open(self, session_id: str, tenant_id: UUID, emit: EmitEvent) -> HttpSidecarConnection:
        response = await self._client.post(f"/sessions/{session_id}/start", json={"tenant_id": str(tenant_id)})
        response.raise_for_status()
        logger.info(f"Bridge session start requested: {session_id}")
        return HttpSidecarConnection(self._client, session_id)

    async def aclose(self) -> None:
        await self._client.aclose()
