"""Default executors for the integrations that need no OAuth credentials.

Everything else (sheets, calendly, AI generation, task and lead updates) is
registered by the host application against ``ActionRegistry``.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import httpx

from leadflow.models.automation import ActionType
from leadflow.services.actions import ActionExecutor, ActionOutcome, ActionRegistry
from leadflow.services.email import send_email_with_tracking

logger = logging.getLogger(__name__)


def _parse_json_body(raw: Any) -> Any:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            raise ValueError(f"Request body is not valid JSON: {raw[:80]}")
    return raw


class SmtpEmailExecutor(ActionExecutor):
    async def execute(self, config: Dict[str, Any]) -> ActionOutcome:
        if config.get("useAI"):
            return ActionOutcome(success=False, error="AI-written emails need an ai_generate executor")
        recipient = (config.get("to") or "").strip()
        if not recipient:
            return ActionOutcome(success=False, error="Recipient email is empty")
        await asyncio.to_thread(
            send_email_with_tracking,
            subject=config.get("subject", ""),
            body=config.get("body", ""),
            recipient_email=recipient,
            links=config.get("links") or [],
            lead_id=config.get("leadId") or None,
            track=config.get("track", True),
        )
        return ActionOutcome(success=True, output={"to": recipient, "subject": config.get("subject")})


class HttpHookExecutor(ActionExecutor):
    """JSON request to a webhook, Make scenario or n8n workflow. Non-2xx is a failure."""

    def __init__(
        self,
        url_key: str = "url",
        body_key: str = "body",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self.url_key = url_key
        self.body_key = body_key
        self.client = client
        self.timeout = timeout

    async def execute(self, config: Dict[str, Any]) -> ActionOutcome:
        url = (config.get(self.url_key) or "").strip()
        if not url:
            return ActionOutcome(success=False, error=f"Missing {self.url_key}")
        method = (config.get("method") or "POST").upper()
        payload = _parse_json_body(config.get(self.body_key))
        headers = {"Content-Type": "application/json", **(config.get("headers") or {})}

        try:
            if self.client is not None:
                response = await self._send(self.client, method, url, payload, headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await self._send(client, method, url, payload, headers)
        except httpx.TimeoutException:
            return ActionOutcome(success=False, error=f"Request to {url} timed out")
        except httpx.RequestError as e:
            return ActionOutcome(success=False, error=f"Request to {url} failed: {e}")

        output = {"status_code": response.status_code, "body": response.text[:1000]}
        if response.is_success:
            logger.info(f"[HOOK] {method} {url} -> {response.status_code}")
            return ActionOutcome(success=True, output=output)
        logger.warning(f"[HOOK] {method} {url} -> {response.status_code}")
        return ActionOutcome(success=False, output=output, error=f"HTTP {response.status_code} from {url}")

    async def _send(self, client, method, url, payload, headers):
        if method in ("GET", "DELETE"):
            return await client.request(method, url, params=payload if isinstance(payload, dict) else None, headers=headers)
        return await client.request(method, url, content=json.dumps(payload), headers=headers)


def build_default_registry(client: Optional[httpx.AsyncClient] = None) -> ActionRegistry:
    registry = ActionRegistry()
    registry.register(ActionType.SEND_EMAIL, SmtpEmailExecutor())
    registry.register(ActionType.WEBHOOK, HttpHookExecutor("url", "body", client=client))
    registry.register(ActionType.MAKE_WORKFLOW, HttpHookExecutor("webhookUrl", "payload", client=client))
    registry.register(ActionType.N8N_WORKFLOW, HttpHookExecutor("webhookUrl", "payload", client=client))
    return registry
