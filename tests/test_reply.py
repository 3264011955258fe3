"""Tests for outbound reply delivery.

Covers:
- Platform body shapes (WhatsApp, Instagram, website)
- Dry-run senders without a webhook URL
- ReplyRouter isolation of unknown platforms and delivery failures
- Retry on transient webhook errors
"""

from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest
from tenacity import wait_none

from src.chatbot.config import Settings
from src.chatbot.services.reply import (
    HttpPlatformSender,
    InstagramSender,
    ReplyPayload,
    ReplyRouter,
    WebsiteSender,
    WhatsAppSender,
)


def _reply(platform: str = "whatsapp", media: tuple[str, ...] = ()) -> ReplyPayload:
    return ReplyPayload(
        tenant_id="biz_001",
        user_id="user_1",
        platform=platform,
        text="We are open 9 to 5.",
        media=media,
    )


@pytest.fixture(autouse=True)
def no_retry_wait():
    """Retry immediately instead of sleeping between webhook attempts."""
    with patch.object(HttpPlatformSender._deliver.retry, "wait", wait_none()):
        yield


class _Webhook:
    """MockTransport handler that replays scripted status codes."""

    def __init__(self, *statuses: int) -> None:
        self.statuses = list(statuses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status, json={"ok": status < 400})


# ── Body Shapes ───────────────────────────────────────────────────────────


class TestBodies:
    def test_whatsapp_body(self):
        sender = WhatsAppSender("", httpx.AsyncClient())
        body = sender.build_body(_reply(media=("https://cdn.example.com/menu.pdf",)))
        assert body["messaging_product"] == "whatsapp"
        assert body["to"] == "user_1"
        assert body["text"] == {"body": "We are open 9 to 5."}
        assert body["media"] == [{"link": "https://cdn.example.com/menu.pdf"}]

    def test_instagram_body(self):
        sender = InstagramSender("", httpx.AsyncClient())
        body = sender.build_body(_reply("instagram"))
        assert body["recipient"] == {"id": "user_1"}
        assert body["message"] == {"text": "We are open 9 to 5."}

    def test_website_body(self):
        sender = WebsiteSender("", httpx.AsyncClient())
        assert sender.build_body(_reply("website")) == {
            "agent_id": "biz_001",
            "user_id": "user_1",
            "text": "We are open 9 to 5.",
            "media": [],
        }


# ── Router ────────────────────────────────────────────────────────────────


class TestReplyRouter:
    async def test_delivers_to_platform_webhook(self):
        webhook = _Webhook(200)
        http = httpx.AsyncClient(transport=httpx.MockTransport(webhook))
        router = ReplyRouter(
            {"whatsapp": WhatsAppSender("https://hooks.test/wa", http, token="secret")},
            client=http,
        )

        delivered = await router.dispatch("biz_001", "user_1", "whatsapp", "Hello")
        await router.aclose()

        assert delivered is True
        assert len(webhook.requests) == 1
        request = webhook.requests[0]
        assert str(request.url) == "https://hooks.test/wa"
        assert request.headers["Authorization"] == "Bearer secret"

    async def test_unknown_platform_is_skipped(self, senders):
        router = ReplyRouter(senders)
        assert await router.dispatch("biz_001", "user_1", "telegram", "Hello") is False
        assert all(not s.sent for s in senders.values())

    async def test_transient_failure_retried(self):
        webhook = _Webhook(503, 200)
        http = httpx.AsyncClient(transport=httpx.MockTransport(webhook))
        router = ReplyRouter({"website": WebsiteSender("https://hooks.test/web", http)})

        assert await router.dispatch("biz_001", "user_1", "website", "Hello") is True
        assert len(webhook.requests) == 2

    async def test_persistent_failure_returns_false(self):
        webhook = _Webhook(500)
        http = httpx.AsyncClient(transport=httpx.MockTransport(webhook))
        router = ReplyRouter({"website": WebsiteSender("https://hooks.test/web", http)})

        assert await router.dispatch("biz_001", "user_1", "website", "Hello") is False
        assert len(webhook.requests) == 3

    async def test_dry_run_without_url(self):
        webhook = _Webhook(200)
        http = httpx.AsyncClient(transport=httpx.MockTransport(webhook))
        router = ReplyRouter({"whatsapp": WhatsAppSender("", http)})

        assert await router.dispatch("biz_001", "user_1", "whatsapp", "Hello") is True
        assert webhook.requests == []

    async def test_from_settings_registers_platforms(self):
        router = ReplyRouter.from_settings(Settings())
        assert router.platforms == ["instagram", "website", "whatsapp"]
        await router.aclose()
