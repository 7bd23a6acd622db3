"""
HTTP status reporting and failure notification.

Both classes PATCH/POST JSON to a bot management API when
``providers.status_api_url`` is configured and only log otherwise.
Transport errors are logged, never raised: reporting must not change the
outcome of a session.
"""

import logging
from typing import Optional

import aiohttp

from meetbot.config import ProviderConfig, get_config

logger = logging.getLogger(__name__)


async def _send(method: str, url: str, token: str, payload: dict, timeout: float) -> bool:
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    try:
        async with aiohttp.ClientSession() as session:
            async with session.request(
                method, url, json=payload, headers=headers, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as resp:
                if resp.status >= 400:
                    logger.warning(f"{method} {url} failed: {resp.status}")
                    return False
                return True
    except Exception as e:
        logger.warning(f"{method} {url} failed: {e}")
        return False


class HttpStatusReporter:
    """StatusReporter that PATCHes the status history to ``/bots/{bot_id}/status``."""

    def __init__(self, config: Optional[ProviderConfig] = None):
        self.config = config or get_config().providers

    async def report(
        self,
        bot_id: Optional[str],
        event_id: Optional[str],
        provider: str,
        token: str,
        status: list[str],
    ) -> None:
        logger.info(f"[STATUS] bot={bot_id} event={event_id} provider={provider} status={status}")
        if not self.config.status_api_url or not bot_id:
            return
        await _send(
            "PATCH",
            f"{self.config.status_api_url.rstrip('/')}/bots/{bot_id}/status",
            token,
            {"eventId": event_id, "provider": provider, "status": status},
            self.config.request_timeout_seconds,
        )


class HttpErrorHandlers:
    """ErrorHandlers that POST the failure to ``/bots/{bot_id}/errors``."""

    def __init__(self, config: Optional[ProviderConfig] = None):
        self.config = config or get_config().providers

    async def _notify(self, kind: str, ctx: dict, error: Exception, extra: dict) -> None:
        bot_id = ctx.get("bot_id")
        logger.error(f"[ERROR] {kind} for bot={bot_id} event={ctx.get('event_id')}: {error}")
        if not self.config.status_api_url or not bot_id:
            return
        payload = {
            "eventId": ctx.get("event_id"),
            "provider": ctx.get("provider"),
            "kind": kind,
            "message": str(error),
            **extra,
        }
        await _send(
            "POST",
            f"{self.config.status_api_url.rstrip('/')}/bots/{bot_id}/errors",
            ctx.get("token", ""),
            payload,
            self.config.request_timeout_seconds,
        )

    async def unsupported_meeting(self, ctx: dict, error: Exception) -> None:
        await self._notify("unsupported_meeting", ctx, error, {"reason": getattr(error, "reason", None)})

    async def admission_failure(self, ctx: dict, error: Exception) -> None:
        await self._notify(
            "admission_failure",
            ctx,
            error,
            {
                "retryable": getattr(error, "retryable", True),
                "attempt": getattr(error, "attempt", 1),
                "bodyText": (getattr(error, "body_text", "") or "")[:2000],
            },
        )
