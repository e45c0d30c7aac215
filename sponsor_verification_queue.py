"""
FlowB — Sponsorship Verification Queue
© 2026 FlowB Project
Licensed under the Apache License, Version 2.0

Background worker that confirms pending sponsorships on-chain.

The HTTP request records the sponsorship as pending and hands its id to
this queue. The processor calls the confirm handler; transient outcomes
(receipt not yet available, RPC timeout) are re-queued with a linear
backoff until the attempt budget is spent, the last attempt is marked
final so the handler can reject the record.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Set

from logger import setup_logger
from verification_types import VerificationResult

logger = setup_logger("FlowB.SponsorQueue")

# handler(sponsorship_id, final_attempt) -> VerificationResult
ConfirmHandler = Callable[[str, bool], Awaitable[VerificationResult]]


class SponsorVerificationQueue:

    def __init__(self, handler: ConfirmHandler, max_attempts: int = 5, retry_delay_seconds: float = 30):
        self.handler = handler
        self.max_attempts = max(1, max_attempts)
        self.retry_delay_seconds = retry_delay_seconds
        self.queue: asyncio.Queue = asyncio.Queue()
        self._processor_task: Optional[asyncio.Task] = None
        self._retry_tasks: Set[asyncio.Task] = set()
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._processor_task is not None and not self._processor_task.done()

    async def enqueue(self, sponsorship_id: str, attempt: int = 1):
        await self.queue.put({
            "sponsorship_id": sponsorship_id,
            "attempt": attempt,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        logger.info(f"📋 Added to verification queue: {sponsorship_id} (attempt {attempt})")

    async def _requeue_later(self, item: dict, delay: float):
        await asyncio.sleep(delay)
        await self.enqueue(item["sponsorship_id"], item["attempt"] + 1)

    def _schedule_retry(self, item: dict):
        delay = self.retry_delay_seconds * item["attempt"]
        task = asyncio.create_task(self._requeue_later(item, delay))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)
        logger.info(f"♻️ Re-queued {item['sponsorship_id']} in {delay}s")

    async def process_item(self, item: dict):
        """Run one confirmation attempt and decide whether to retry"""
        sponsorship_id = item["sponsorship_id"]
        attempt = item["attempt"]
        final = attempt >= self.max_attempts

        logger.info(f"🔍 Verifying sponsorship {sponsorship_id} (attempt {attempt}/{self.max_attempts})")
        result = await self.handler(sponsorship_id, final)

        if result.retryable and not final:
            self._schedule_retry(item)
        elif result.retryable:
            logger.error(f"❌ Max attempts reached for {sponsorship_id}, giving up")

    async def process_queue(self):
        """Processor loop; runs until stop()"""
        logger.info("🔄 Sponsorship verification processor started")

        while self._is_running:
            try:
                item = await asyncio.wait_for(self.queue.get(), timeout=10.0)
            except asyncio.TimeoutError:
                continue

            try:
                await self.process_item(item)
            except Exception as e:
                if item["attempt"] < self.max_attempts:
                    logger.warning(f"⚠️ Error verifying {item['sponsorship_id']}: {e}")
                    self._schedule_retry(item)
                else:
                    logger.error(f"❌ Error verifying {item['sponsorship_id']} on last attempt, left pending: {e}")
            finally:
                self.queue.task_done()

        logger.info("🛑 Sponsorship verification processor stopped")

    def start(self):
        if self.is_running:
            logger.warning("⚠️ Verification processor already running")
            return
        self._is_running = True
        self._processor_task = asyncio.create_task(self.process_queue())

    async def stop(self):
        self._is_running = False
        for task in list(self._retry_tasks):
            task.cancel()

        if self._processor_task:
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
            self._processor_task = None
            logger.info("✅ Verification processor stopped")

    async def wait_idle(self):
        """Block until the queue is empty and no retry is scheduled"""
        while True:
            await self.queue.join()
            if not self._retry_tasks:
                return
            await asyncio.gather(*list(self._retry_tasks), return_exceptions=True)
