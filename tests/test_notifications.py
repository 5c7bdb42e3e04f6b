"""Tests for the webhook notifier."""

import json

import httpx
import pytest

from job_engine.notifications import WebhookNotifier, build_default_notifier


class TestWebhookNotifier:

    @pytest.mark.asyncio
    async def test_posts_notification(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = WebhookNotifier("http://hooks.test/alerts", client=client)

        await notifier({"event": "execution_failed", "recipients": ["ops@example.com"]})

        assert seen["url"] == "http://hooks.test/alerts"
        assert seen["body"]["recipients"] == ["ops@example.com"]

    @pytest.mark.asyncio
    async def test_rejected_notification_raises(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        notifier = WebhookNotifier("http://hooks.test/alerts", client=client)

        with pytest.raises(httpx.HTTPStatusError):
            await notifier({"event": "execution_failed", "recipients": []})

    def test_default_notifier_follows_configuration(self):
        assert build_default_notifier(url="") is None
        notifier = build_default_notifier(url="http://hooks.test/alerts", timeout=3.0)
        assert notifier.url == "http://hooks.test/alerts"
        assert notifier.timeout == 3.0
