"""Outbound reply delivery to messaging platforms.

ReplyRouter maps a platform name to its sender and isolates delivery
failures: nothing raised by a sender escapes dispatch(). Each sender
POSTs a platform-shaped JSON body to a configured webhook with retry
(tenacity, 3 attempts, exponential backoff 1-10s). A sender without a
webhook URL logs the reply instead of sending it.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

import httpx
import structlog
from pydantic import BaseModel, ConfigDict
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.chatbot.config import Settings
from src.chatbot.core.errors import ReplyDispatchError
from src.chatbot.core.monitoring import replies_sent_total

logger = structlog.get_logger(__name__)

_reply_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


class ReplyPayload(BaseModel):
    """A reply addressed to one user on one platform."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    user_id: str
    platform: str
    text: str
    media: tuple[str, ...] = ()


class PlatformSender(Protocol):
    platform: str

    async def send(self, reply: ReplyPayload) -> None: ...


# ── HTTP Senders ─────────────────────────────────────────────────────────────


class HttpPlatformSender:
    """Base webhook sender. Subclasses shape the request body.

    Args:
        url: Webhook URL. Empty means dry-run (log only).
        client: Shared httpx client.
        token: Optional bearer token sent as Authorization header.
    """

    platform: str = "generic"

    def __init__(self, url: str, client: httpx.AsyncClient, token: str = "") -> None:
        self._url = url
        self._client = client
        self._headers = {"Content-Type": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"

    def build_body(self, reply: ReplyPayload) -> dict[str, Any]:
        return {
            "agent_id": reply.tenant_id,
            "user_id": reply.user_id,
            "text": reply.text,
            "media": list(reply.media),
        }

    async def send(self, reply: ReplyPayload) -> None:
        """Deliver one reply.

        Raises:
            ReplyDispatchError: Delivery failed after retries.
        """
        if not self._url:
            logger.info(
                "reply_dry_run",
                platform=self.platform,
                tenant_id=reply.tenant_id,
                user_id=reply.user_id,
                text_preview=reply.text[:100],
                media_count=len(reply.media),
            )
            return

        try:
            await self._deliver(self.build_body(reply))
        except httpx.HTTPError as exc:
            raise ReplyDispatchError(f"{self.platform} delivery failed: {exc}") from exc

    @_reply_retry
    async def _deliver(self, body: dict[str, Any]) -> None:
        response = await self._client.post(self._url, json=body, headers=self._headers)
        response.raise_for_status()


class WhatsAppSender(HttpPlatformSender):
    platform = "whatsapp"

    def build_body(self, reply: ReplyPayload) -> dict[str, Any]:
        body: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "agent_id": reply.tenant_id,
            "to": reply.user_id,
            "type": "text",
            "text": {"body": reply.text},
        }
        if reply.media:
            body["media"] = [{"link": url} for url in reply.media]
        return body


class InstagramSender(HttpPlatformSender):
    platform = "instagram"

    def build_body(self, reply: ReplyPayload) -> dict[str, Any]:
        message: dict[str, Any] = {"text": reply.text}
        if reply.media:
            message["attachments"] = [
                {"type": "file", "payload": {"url": url}} for url in reply.media
            ]
        return {
            "agent_id": reply.tenant_id,
            "recipient": {"id": reply.user_id},
            "message": message,
        }


class WebsiteSender(HttpPlatformSender):
    platform = "website"


# ── Router ───────────────────────────────────────────────────────────────────


class ReplyRouter:
    """Routes replies to the sender registered for their platform.

    Args:
        senders: Platform name -> sender.
        client: httpx client owned by the router, closed by aclose().
    """

    def __init__(
        self,
        senders: Mapping[str, PlatformSender],
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._senders = dict(senders)
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> ReplyRouter:
        """Build the router with WhatsApp, Instagram, and website senders."""
        client = httpx.AsyncClient(timeout=settings.REPLY_TIMEOUT)
        token = settings.REPLY_API_TOKEN
        senders: list[HttpPlatformSender] = [
            WhatsAppSender(settings.REPLY_WHATSAPP_URL, client, token),
            InstagramSender(settings.REPLY_INSTAGRAM_URL, client, token),
            WebsiteSender(settings.REPLY_WEBSITE_URL, client, token),
        ]
        return cls({s.platform: s for s in senders}, client=client)

    @property
    def platforms(self) -> list[str]:
        return sorted(self._senders)

    async def dispatch(
        self,
        tenant_id: str,
        user_id: str,
        platform: str,
        text: str,
        media: Sequence[str] | None = None,
    ) -> bool:
        """Deliver a reply. Never raises.

        Returns:
            True if the sender accepted the reply, False on unknown
            platform or delivery failure.
        """
        sender = self._senders.get(platform)
        if sender is None:
            replies_sent_total.labels(platform="unknown", status="skipped").inc()
            logger.error(
                "reply_unknown_platform",
                tenant_id=tenant_id,
                user_id=user_id,
                platform=platform,
            )
            return False

        reply = ReplyPayload(
            tenant_id=tenant_id,
            user_id=user_id,
            platform=platform,
            text=text,
            media=tuple(media or ()),
        )
        try:
            await sender.send(reply)
        except Exception as exc:
            replies_sent_total.labels(platform=platform, status="error").inc()
            logger.error(
                "reply_dispatch_failed",
                tenant_id=tenant_id,
                user_id=user_id,
                platform=platform,
                error=str(exc),
            )
            return False

        replies_sent_total.labels(platform=platform, status="sent").inc()
        logger.info("reply_sent", tenant_id=tenant_id, user_id=user_id, platform=platform)
        return True

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
