from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp

from medinterp.internal_core.contracts import Action, utc_now_iso
from medinterp.internal_core.errors import WebhookDispatchError

logger = logging.getLogger(__name__)

SOURCE_TAG = "medical-interpreter"


@dataclass(frozen=True)
class WebhookResult:
    http_status: int
    response_body: str
    reason: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= int(self.http_status) < 300


def build_webhook_payload(action: Action, *, timestamp: str | None = None) -> dict[str, Any]:
    return {
        "action": action.action_type,
        "actionType": action.action_type,
        "parameters": dict(action.parameters),
        "conversationId": action.conversation_id,
        "timestamp": timestamp or utc_now_iso(),
        "source": SOURCE_TAG,
        "actionId": action.id,
    }


class Dispatcher(Protocol):
    async def dispatch(self, url: str, payload: dict[str, Any]) -> WebhookResult: ...


class WebhookDispatcher:
    """
    Single-shot JSON POST to an external webhook.

    Any HTTP response, including 4xx/5xx, is returned as a `WebhookResult`;
    only network-level failures (connection errors, timeouts, bad URLs)
    raise `WebhookDispatchError`. Retrying is left to the caller.
    """

    def __init__(self, *, timeout_sec: float = 10.0) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(0.1, float(timeout_sec)))

    async def dispatch(self, url: str, payload: dict[str, Any]) -> WebhookResult:
        body = json.dumps(payload, ensure_ascii=False)
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(
                    url,
                    data=body.encode("utf-8"),
                    headers={"Content-Type": "application/json"},
                ) as response:
                    text = await response.text()
                    result = WebhookResult(
                        http_status=int(response.status),
                        response_body=text,
                        reason=str(response.reason or ""),
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            detail = str(exc) or type(exc).__name__
            logger.warning("webhook_dispatch_failed action_id=%s error=%s", payload.get("actionId"), detail)
            raise WebhookDispatchError(detail) from exc

        logger.info(
            "webhook_dispatched action_id=%s status=%s",
            payload.get("actionId"),
            result.http_status,
        )
        return result
