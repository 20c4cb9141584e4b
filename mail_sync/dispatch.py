"""
Scheduled sync dispatch.
Periodically resets stuck runs and enqueues accounts due for polling or retry.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .config import SyncSettings
from .errors import RunTimeout
from .models import TriggerReason
from .storage import utcnow
from .triggers import TriggerQueue

logger = logging.getLogger(__name__)


class DispatchJob:
    """
    Scheduled producer for the trigger queue.
    """

    def __init__(
        self,
        storage,
        queue: TriggerQueue,
        settings: SyncSettings,
        clock: Callable[[], datetime] = utcnow
    ):
        self.storage = storage
        self.queue = queue
        self.settings = settings
        self._now = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def reset_stale_runs(self, now: datetime) -> List[str]:
        """Fail runs left in syncing longer than the run ceiling (e.g. the process died)."""
        cutoff = now - timedelta(seconds=self.settings.run_timeout_seconds)
        reset = []
        for account in self.storage.get_stale_syncing(cutoff):
            self.storage.finish_run_failure(
                account['id'],
                account.get('current_run_id'),
                RunTimeout.code,
                "Run abandoned past the time limit",
                next_retry_at=now,
                now=now
            )
            logger.warning(f"Reset stale sync for account {account['id']}")
            reset.append(account['id'])
        return reset

    def run_tick(self, now: Optional[datetime] = None) -> Dict[str, List[str]]:
        """
        One dispatch pass.

        Returns:
            Account IDs reset, enqueued for polling, and enqueued for retry
        """
        now = now or self._now()
        reset = self.reset_stale_runs(now)

        poll_cutoff = now - timedelta(minutes=self.settings.poll_interval_minutes)
        polled = [
            a['id'] for a in self.storage.get_due_for_poll(poll_cutoff)
            if self.queue.enqueue(a['id'], TriggerReason.SCHEDULED)
        ]
        retried = [
            a['id'] for a in self.storage.get_due_for_retry(now, self.settings.max_auto_retries)
            if self.queue.enqueue(a['id'], TriggerReason.SCHEDULED)
        ]

        if reset or polled or retried:
            logger.info(f"Dispatch tick: {len(reset)} reset, {len(polled)} polled, {len(retried)} retried")
        return {'reset': reset, 'polled': polled, 'retried': retried}

    async def start_periodic(self, interval_seconds: Optional[int] = None):
        """Start the in-process dispatch loop."""
        if self._running:
            logger.warning("Dispatch loop already running")
            return

        interval = interval_seconds or self.settings.dispatch_interval_seconds
        self._running = True
        self._task = asyncio.create_task(self._loop(interval))
        logger.info(f"Started sync dispatch (every {interval} seconds)")

    async def stop_periodic(self):
        """Stop the dispatch loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Stopped sync dispatch")

    async def _loop(self, interval_seconds: int):
        while self._running:
            try:
                self.run_tick()
            except Exception as e:
                logger.error(f"Error in dispatch loop: {e}")

            await asyncio.sleep(interval_seconds)


def summarize_tick(result: Dict[str, List[str]]) -> Dict[str, Any]:
    return {key: len(value) for key, value in result.items()}
