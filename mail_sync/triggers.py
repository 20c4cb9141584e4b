"""
Sync trigger queue.
Webhook and scheduled producers enqueue account IDs; a single consumer task
turns them into orchestrator runs.
"""

import asyncio
import logging
from typing import Dict, Optional, Union

from .errors import AccountNotFound, AlreadySyncing, SetupRequired, SyncError
from .models import TriggerReason

logger = logging.getLogger(__name__)


class TriggerQueue:
    """
    Debounced queue of sync requests.

    An account with a request already pending is not enqueued again, so a
    burst of notifications within the debounce window yields one run. A
    webhook that lands while a run is active is retried after retry_delay,
    since the active run may already have read past the change.
    """

    def __init__(self, orchestrator, retry_delay: float = 10.0):
        self.orchestrator = orchestrator
        self.retry_delay = retry_delay
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending: Dict[str, TriggerReason] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> Dict[str, TriggerReason]:
        return dict(self._pending)

    def enqueue(
        self,
        account_id: str,
        reason: Union[TriggerReason, str] = TriggerReason.SCHEDULED,
        delay: float = 0
    ) -> bool:
        """
        Request a sync for an account.

        Args:
            account_id: Account to sync
            reason: Trigger reason recorded on the run
            delay: Seconds to hold the request before it is consumed

        Returns:
            False if the request collapsed into one already pending
        """
        if account_id in self._pending:
            logger.debug(f"Sync request for {account_id} collapsed into pending one")
            return False

        self._pending[account_id] = TriggerReason(reason)
        if delay > 0:
            loop = asyncio.get_running_loop()
            self._timers[account_id] = loop.call_later(delay, self._release, account_id)
        else:
            self._queue.put_nowait(account_id)
        return True

    def _release(self, account_id: str) -> None:
        self._timers.pop(account_id, None)
        self._queue.put_nowait(account_id)

    async def _handle(self, account_id: str) -> None:
        reason = self._pending.pop(account_id, TriggerReason.SCHEDULED)
        try:
            run_id = await self.orchestrator.trigger_sync(account_id, reason)
            logger.info(f"Queued {reason.value} trigger started run {run_id} for {account_id}")
        except AlreadySyncing as e:
            if reason == TriggerReason.WEBHOOK:
                logger.info(f"Run active for {account_id}, retrying webhook trigger in {self.retry_delay}s")
                self.enqueue(account_id, reason, delay=self.retry_delay)
            else:
                logger.info(f"Skipped {reason.value} trigger for {account_id}: {e.code}")
        except (SetupRequired, AccountNotFound) as e:
            logger.info(f"Skipped {reason.value} trigger for {account_id}: {e.code}")
        except SyncError as e:
            logger.error(f"Trigger for {account_id} failed: {e}")

    async def _consume(self) -> None:
        while True:
            account_id = await self._queue.get()
            try:
                await self._handle(account_id)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every released request has been handled."""
        await self._queue.join()

    def start(self) -> None:
        """Start the consumer task."""
        if self._task is None:
            self._task = asyncio.create_task(self._consume())
            logger.info("Sync trigger queue started")

    async def stop(self) -> None:
        """Stop the consumer and drop requests still waiting out their delay."""
        for account_id, handle in self._timers.items():
            handle.cancel()
            self._pending.pop(account_id, None)
        self._timers.clear()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sync trigger queue stopped")
