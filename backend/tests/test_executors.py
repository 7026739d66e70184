"""
Tests for the default executors and the tracked email builder
"""

import json
from unittest.mock import patch

import httpx
import pytest

from leadflow.models.automation import ActionType
from leadflow.services.email import add_click_tracking, build_message, convert_text_to_html, serializer
from leadflow.services.executors import HttpHookExecutor, SmtpEmailExecutor, build_default_registry


def mock_client(status_code=200, captured=None):
    def handler(request: httpx.Request):
        if captured is not None:
            captured.append(request)
        return httpx.Response(status_code, json={"ok": status_code < 400})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestHttpHookExecutor:
    @pytest.mark.asyncio
    async def test_posts_json_body(self):
        captured = []
        executor = HttpHookExecutor(client=mock_client(captured=captured))

        outcome = await executor.execute({"url": "https://hooks.example.com/lead", "body": '{"name": "Sam"}'})

        assert outcome.success is True
        assert outcome.output["status_code"] == 200
        assert captured[0].method == "POST"
        assert json.loads(captured[0].content) == {"name": "Sam"}

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(self):
        executor = HttpHookExecutor(client=mock_client(status_code=500))
        outcome = await executor.execute({"url": "https://hooks.example.com/lead"})
        assert outcome.success is False
        assert outcome.error == "HTTP 500 from https://hooks.example.com/lead"

    @pytest.mark.asyncio
    async def test_workflow_hook_keys(self):
        captured = []
        executor = HttpHookExecutor("webhookUrl", "payload", client=mock_client(captured=captured))

        outcome = await executor.execute({"webhookUrl": "https://hook.make.com/abc", "payload": {"lead": "Sam"}})

        assert outcome.success is True
        assert str(captured[0].url) == "https://hook.make.com/abc"
        assert json.loads(captured[0].content) == {"lead": "Sam"}

    @pytest.mark.asyncio
    async def test_missing_url(self):
        outcome = await HttpHookExecutor(client=mock_client()).execute({"url": " "})
        assert outcome.success is False
        assert outcome.error == "Missing url"

    @pytest.mark.asyncio
    async def test_invalid_json_body_raises(self):
        with pytest.raises(ValueError, match="not valid JSON"):
            await HttpHookExecutor(client=mock_client()).execute({"url": "https://x", "body": "{oops"})

    @pytest.mark.asyncio
    async def test_connection_error_is_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        outcome = await HttpHookExecutor(client=client).execute({"url": "https://down.example.com"})
        assert outcome.success is False
        assert "failed" in outcome.error


class TestSmtpEmailExecutor:
    @pytest.mark.asyncio
    async def test_sends_in_thread(self):
        with patch("leadflow.services.executors.send_email_with_tracking") as send:
            outcome = await SmtpEmailExecutor().execute(
                {"to": "sam@example.com", "subject": "Hi Sam", "body": "Welcome"}
            )

        assert outcome.success is True
        assert send.call_args.kwargs["recipient_email"] == "sam@example.com"
        assert send.call_args.kwargs["subject"] == "Hi Sam"

    @pytest.mark.asyncio
    async def test_empty_recipient(self):
        outcome = await SmtpEmailExecutor().execute({"to": "", "subject": "Hi", "body": "x"})
        assert outcome.success is False

    @pytest.mark.asyncio
    async def test_ai_email_needs_generator(self):
        outcome = await SmtpEmailExecutor().execute({"to": "a@b.c", "subject": "Hi", "useAI": True})
        assert outcome.success is False
        assert "ai_generate" in outcome.error


def test_default_registry_types():
    registry = build_default_registry()
    assert set(registry.registered_types) == {
        ActionType.SEND_EMAIL,
        ActionType.WEBHOOK,
        ActionType.MAKE_WORKFLOW,
        ActionType.N8N_WORKFLOW,
    }


class TestEmailBuilder:
    def test_text_is_escaped_and_links_appended(self):
        html_body = convert_text_to_html("Hi <Sam>\nWelcome", [{"text": "Book a call", "url": "https://cal.example.com"}])
        assert "Hi &lt;Sam&gt;<br>Welcome" in html_body
        assert 'href="https://cal.example.com"' in html_body

    def test_click_tracking_rewrites_links(self):
        rewritten = add_click_tracking('<a href="https://example.com">x</a> <a href="mailto:a@b.c">m</a>', "tok")
        assert "/api/track/click?token=tok&amp;url=https%3A%2F%2Fexample.com" in rewritten
        assert 'href="mailto:a@b.c"' in rewritten

    def test_message_carries_signed_open_pixel(self):
        message = build_message("Hi Sam", "Welcome", "sam@example.com", lead_id="lead_1")
        html_part = message.get_payload()[1].get_payload(decode=True).decode()

        assert message["To"] == "sam@example.com"
        token = html_part.split("/api/track/open?token=")[1].split('"')[0]
        assert serializer.loads(token) == {
            "type": "open",
            "email": "sam@example.com",
            "subject": "Hi Sam",
            "lead_id": "lead_1",
        }

    def test_untracked_message_has_no_pixel(self):
        message = build_message("Hi Sam", "Welcome", "sam@example.com", track=False)
        assert "/api/track/open" not in message.get_payload()[1].get_payload(decode=True).decode()
