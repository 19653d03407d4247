"""
Sync Scheduler - Decides when reconciliation passes run.

Change notifications are debounced into a single pass, failed passes are
retried after a fixed delay, and an optional interval re-syncs while idle.
The scheduler is one asyncio task consuming one queue and owning one timer
deadline, so only one pass runs at a time and the debounce and retry timers
can never both be armed.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from config import SyncConfig
from reconciler import ReconcileResult

logger = logging.getLogger(__name__)

SyncFunction = Callable[[], Awaitable[ReconcileResult]]

_STOP = object()


class SyncState(Enum):
    """States of the scheduler."""

    IDLE = "idle"
    PENDING = "pending"  # debounce timer armed
    RUNNING = "running"
    BACKOFF = "backoff"  # retry timer armed after a failed pass


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class SyncScheduler:
    """
    Runs reconciliation passes on behalf of change notifications.

    ``notify()`` never blocks and may be called from any thread. A
    notification that arrives while a pass is running is remembered and
    causes another pass after the debounce delay.
    """

    def __init__(self, sync: SyncFunction, config: Optional[SyncConfig] = None):
        self._sync = sync
        self.config = config or SyncConfig()
        self.debounce_delay = self.config.debounce_delay
        self.retry_delay = self.config.retry_delay
        self.resync_interval = self.config.resync_interval

        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._state = SyncState.IDLE
        self._deadline: Optional[float] = None
        self._follow_up = False

        self.running = False
        self.pass_count = 0
        self.last_result: Optional[ReconcileResult] = None

    @property
    def state(self) -> SyncState:
        return self._state

    def notify(self, reason: str = "") -> None:
        """Signal that the desired registrations changed."""
        loop = self._loop
        if loop is None or _running_loop() is loop:
            self._enqueue(reason)
        else:
            loop.call_soon_threadsafe(self._enqueue, reason)

    def _enqueue(self, reason: str) -> None:
        if self._state is SyncState.RUNNING:
            if not self._follow_up:
                logger.debug(f"Change during sync ({reason}), follow-up pass queued")
            self._follow_up = True
            return
        self._queue.put_nowait(reason)

    async def start(self) -> None:
        """Run the scheduling loop until ``stop()`` is called."""
        self._loop = asyncio.get_running_loop()
        self.running = True
        logger.info(
            f"Starting sync scheduler (debounce={self.debounce_delay}s, "
            f"retry={self.retry_delay}s, resync={self.resync_interval or 'off'})"
        )
        if self._state is SyncState.IDLE:
            self._deadline = self._idle_deadline()

        while self.running:
            timeout = None
            if self._deadline is not None:
                timeout = max(0.0, self._deadline - self._loop.time())
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                await self._run_pass()
                continue

            if item is _STOP:
                break
            self._on_change(item)

        logger.info("Sync scheduler stopped")

    async def stop(self) -> None:
        """Stop the loop after the current pass, if any, completes."""
        self.running = False
        loop = self._loop
        if loop is None or _running_loop() is loop:
            self._queue.put_nowait(_STOP)
        else:
            loop.call_soon_threadsafe(self._queue.put_nowait, _STOP)

    def _on_change(self, reason: str) -> None:
        if self._state is not SyncState.PENDING:
            logger.debug(f"Sync {self._state.value} -> pending ({reason})")
        self._state = SyncState.PENDING
        self._deadline = self._now() + self.debounce_delay

    async def _run_pass(self) -> None:
        previous = self._state
        self._state = SyncState.RUNNING
        self._deadline = None
        self._follow_up = False
        self.pass_count += 1
        logger.debug(f"Sync {previous.value} -> running (pass {self.pass_count})")

        try:
            result = await self._sync()
            success = result.success
            self.last_result = result
        except Exception as e:
            logger.error(f"Reconciliation pass failed: {e}", exc_info=True)
            success = False

        if not success:
            self._state = SyncState.BACKOFF
            self._deadline = self._now() + self.retry_delay
            logger.info(f"Reconciliation failed, retry in {self.retry_delay}s")
        elif self._follow_up:
            self._state = SyncState.PENDING
            self._deadline = self._now() + self.debounce_delay
        else:
            self._state = SyncState.IDLE
            self._deadline = self._idle_deadline()
            logger.debug("Registrations synced successfully")

    def _idle_deadline(self) -> Optional[float]:
        if self.resync_interval and self.resync_interval > 0:
            return self._now() + self.resync_interval
        return None

    def _now(self) -> float:
        return self._loop.time()
