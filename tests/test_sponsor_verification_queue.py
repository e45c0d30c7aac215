"""Background sponsorship confirmation queue"""

import asyncio

from sponsor_verification_queue import SponsorVerificationQueue
from verification_types import VerificationResult


def run_queue(results, max_attempts=3, ids=("sp-1",)):
    calls = []
    script = list(results)

    async def handler(sponsorship_id, final):
        calls.append((sponsorship_id, final))
        outcome = script.pop(0) if script else VerificationResult.transient("not_confirmed")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def go():
        queue = SponsorVerificationQueue(handler, max_attempts=max_attempts, retry_delay_seconds=0)
        queue.start()
        for sponsorship_id in ids:
            await queue.enqueue(sponsorship_id)
        await queue.wait_idle()
        await queue.stop()
        return queue

    queue = asyncio.run(go())
    return calls, queue


class TestSponsorVerificationQueue:

    def test_verified_on_first_attempt(self):
        calls, _ = run_queue([VerificationResult.verified(amount=1)])
        assert calls == [("sp-1", False)]

    def test_transient_retried_until_verified(self):
        calls, _ = run_queue([
            VerificationResult.transient("not_confirmed"),
            VerificationResult.verified(amount=1),
        ])
        assert calls == [("sp-1", False), ("sp-1", False)]

    def test_last_attempt_is_marked_final(self):
        calls, _ = run_queue([], max_attempts=3)
        assert calls == [("sp-1", False), ("sp-1", False), ("sp-1", True)]

    def test_invalid_is_not_retried(self):
        calls, _ = run_queue([VerificationResult.invalid("tx_failed")])
        assert calls == [("sp-1", False)]

    def test_handler_error_is_retried(self):
        calls, _ = run_queue(
            [
                RuntimeError("database is locked"),
                VerificationResult.verified(amount=1),
                VerificationResult.verified(amount=1),
            ],
            ids=("sp-1", "sp-2"),
        )
        assert calls.count(("sp-1", False)) == 2
        assert ("sp-2", False) in calls

    def test_handler_error_on_last_attempt_stops_retrying(self):
        calls, _ = run_queue([RuntimeError("database is locked")] * 5, max_attempts=2)
        assert calls == [("sp-1", False), ("sp-1", True)]

    def test_stop(self):
        _, queue = run_queue([VerificationResult.verified(amount=1)])
        assert not queue.is_running
