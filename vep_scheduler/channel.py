"""Messaging channel abstraction and the HTTP WhatsApp bridge client."""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

import aiohttp

from .logger import get_logger

GROUP_SUFFIX = "@g.us"
USER_SUFFIX = "@s.whatsapp.net"


def jid_for(address: str, is_group: bool = False) -> str:
    """Return the WhatsApp address of a phone number or group id."""
    address = (address or "").strip()
    if "@" in address:
        return address
    return f"{address}{GROUP_SUFFIX if is_group else USER_SUFFIX}"


class MessagingChannel(Protocol):
    async def is_connected(self) -> bool:
        ...

    async def send_text(self, jid: str, text: str) -> None:
        ...

    async def send_document(
        self,
        jid: str,
        content: bytes,
        filename: str,
        caption: Optional[str] = None,
        mimetype: str = "application/pdf",
    ) -> None:
        ...


class WhatsAppBridgeChannel:
    """Talk to a WhatsApp bridge sidecar over HTTP.

    The bridge owns the WhatsApp session (pairing, reconnection). This client
    only asks for its status and submits messages; HTTP errors surface as
    :class:`aiohttp.ClientError`.
    """

    def __init__(self, bridge_url: str, token: Optional[str] = None, request_timeout: float = 60.0, logger=None):
        self.bridge_url = bridge_url
        self.token = token
        self.request_timeout = request_timeout
        self.logger = logger or get_logger()

    def _endpoint(self, suffix: str) -> str:
        base = self.bridge_url.rstrip("/")
        return f"{base}/{suffix.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def _session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(
            headers=self._headers(),
            timeout=aiohttp.ClientTimeout(total=self.request_timeout),
        )

    async def status(self) -> Dict[str, Any]:
        async with self._session() as session:
            async with session.get(self._endpoint("status")) as resp:
                resp.raise_for_status()
                return await resp.json()

    async def is_connected(self) -> bool:
        try:
            data = await self.status()
        except (aiohttp.ClientError, TimeoutError) as exc:
            self.logger.warning("WhatsApp bridge status check failed: %s", exc)
            return False
        return bool(data.get("connected"))

    async def send_text(self, jid: str, text: str) -> None:
        async with self._session() as session:
            async with session.post(self._endpoint("messages/text"), json={"jid": jid, "text": text}) as resp:
                resp.raise_for_status()

    async def send_document(
        self,
        jid: str,
        content: bytes,
        filename: str,
        caption: Optional[str] = None,
        mimetype: str = "application/pdf",
    ) -> None:
        form = aiohttp.FormData()
        form.add_field("jid", jid)
        if caption:
            form.add_field("caption", caption)
        form.add_field("document", content, filename=filename, content_type=mimetype)
        async with self._session() as session:
            async with session.post(self._endpoint("messages/document"), data=form) as resp:
                resp.raise_for_status()
