"""
FlowB — Notification Dispatcher
© 2026 FlowB Project
Licensed under the Apache License, Version 2.0

Fire-and-forget notifications. `notify()` schedules a background task and
returns immediately; delivery failures are logged and never reach the
caller. Telegram subjects are delivered through the Bot API, everything
else is only logged.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

import aiohttp

from trust_config import TrustConfig

logger = logging.getLogger("FlowB.Notify")

TELEGRAM_API_BASE = "https://api.telegram.org/bot"

TEMPLATES = {
    "crew_checkin": "📍 {who} checked in at {venue}",
    "sponsor_verified": "✅ Your {amount} USDC sponsorship was verified on-chain. Thank you!",
    "sponsor_rejected": "⚠️ We could not verify your sponsorship transaction.",
}


def render(kind: str, payload: Dict[str, Any]) -> str:
    template = TEMPLATES.get(kind)
    if not template:
        return f"{kind}: {payload}"
    try:
        return template.format(**payload)
    except (KeyError, IndexError):
        return template


class NotificationDispatcher:

    def __init__(self, config: TrustConfig):
        self.bot_token = config.telegram_bot_token
        self.timeout = aiohttp.ClientTimeout(total=config.http_timeout_seconds)
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, kind: str, subject: str, payload: Optional[Dict[str, Any]] = None) -> Optional[asyncio.Task]:
        """Schedule delivery; safe to call from any coroutine"""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, dropping {kind} for {subject}")
            return None

        task = loop.create_task(self._deliver(kind, subject, payload or {}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self):
        """Wait for in-flight notifications (shutdown, tests)"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(self, kind: str, subject: str, payload: Dict[str, Any]):
        text = render(kind, payload)
        try:
            if subject.startswith("telegram_") and self.bot_token:
                await self._send_telegram(subject[len("telegram_"):], text)
            else:
                logger.info(f"🔔 [{kind}] {subject}: {text}")
        except Exception as e:
            logger.error(f"❌ Notification {kind} to {subject} failed: {e}")

    async def _send_telegram(self, chat_id: str, text: str):
        url = f"{TELEGRAM_API_BASE}{self.bot_token}/sendMessage"
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(url, json={"chat_id": chat_id, "text": text}) as response:
                result = await response.json()
                if not result.get("ok"):
                    logger.warning(f"⚠️ Telegram API Error: {result.get('description', 'Unknown error')}")
