"""
Work dispatcher - bounded in-process worker pool for deliveries and follow-up jobs.

Producers arm work by (kind, id): immediately, or after a delay via a loop
timer. A fixed number of worker tasks drain one bounded queue, so backpressure
and shutdown draining are explicit. Timers are a fast path only: every armed
unit also has a durable row (next_attempt_at / scheduled_at) that the recovery
sweeper re-arms after a restart or a dropped enqueue.

Keys already armed are not armed twice. recover() additionally refuses keys
that are currently running, so a sweep never overlaps an in-flight attempt.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

DELIVERY = "webhook_delivery"
FOLLOWUP_JOB = "followup_job"

Handler = Callable[[str], Awaitable[object]]
WorkKey = tuple[str, str]


class WorkDispatcher:
    """Bounded worker pool consuming a queue of (kind, target_id) keys."""

    def __init__(
        self,
        handlers: dict[str, Handler],
        concurrency: int = 8,
        max_queue: int = 1000,
    ):
        self._handlers = dict(handlers)
        self._concurrency = max(1, concurrency)
        self._queue: asyncio.Queue[WorkKey] = asyncio.Queue(maxsize=max_queue)
        self._armed: set[WorkKey] = set()
        self._running: set[WorkKey] = set()
        self._timers: dict[WorkKey, asyncio.TimerHandle] = {}
        self._workers: list[asyncio.Task] = []
        self._accepting = False

    @property
    def is_running(self) -> bool:
        return self._accepting

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    def is_armed(self, kind: str, target_id: str) -> bool:
        return (kind, str(target_id)) in self._armed

    def is_busy(self, kind: str, target_id: str) -> bool:
        key = (kind, str(target_id))
        return key in self._armed or key in self._running

    async def start(self) -> None:
        if self._accepting:
            return
        self._accepting = True
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"intakewire-worker-{n}")
            for n in range(self._concurrency)
        ]
        logger.info(
            "Work dispatcher started (concurrency=%d, max_queue=%d)",
            self._concurrency, self._queue.maxsize,
        )

    def arm(self, kind: str, target_id: str, delay_seconds: float = 0.0) -> bool:
        """
        Arm one unit of work. Returns False if it was already armed, the
        dispatcher is stopped, or the queue is full (the sweeper will retry).
        """
        if kind not in self._handlers:
            raise ValueError(f"No handler registered for work kind: {kind}")
        if not self._accepting:
            logger.warning("Dispatcher not accepting work - %s %s left for recovery", kind, str(target_id)[:8])
            return False

        key = (kind, str(target_id))
        if key in self._armed:
            return False
        self._armed.add(key)

        if delay_seconds <= 0:
            return self._enqueue(key)

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay_seconds, self._fire_timer, key)
        return True

    def recover(self, kind: str, target_id: str, delay_seconds: float = 0.0) -> bool:
        """Arm work found by the recovery sweep unless it is armed or running."""
        if self.is_busy(kind, target_id):
            return False
        return self.arm(kind, target_id, delay_seconds)

    def _fire_timer(self, key: WorkKey) -> None:
        self._timers.pop(key, None)
        self._enqueue(key)

    def _enqueue(self, key: WorkKey) -> bool:
        try:
            self._queue.put_nowait(key)
            return True
        except asyncio.QueueFull:
            self._armed.discard(key)
            logger.warning(
                "Dispatch queue full (%d) - %s %s left for recovery",
                self._queue.maxsize, key[0], key[1][:8],
            )
            return False

    async def _worker(self, worker_no: int) -> None:
        while True:
            key = await self._queue.get()
            kind, target_id = key
            self._armed.discard(key)
            self._running.add(key)
            try:
                await self._handlers[kind](target_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Work handler failed: kind=%s id=%s worker=%d error=%s",
                    kind, target_id[:8], worker_no, str(e),
                    exc_info=True,
                )
            finally:
                self._running.discard(key)
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until everything currently queued has been processed."""
        await self._queue.join()

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop accepting work, drop pending timers, drain the queue, stop workers."""
        if not self._accepting and not self._workers:
            return
        self._accepting = False

        for key, handle in list(self._timers.items()):
            handle.cancel()
            self._armed.discard(key)
        dropped_timers = len(self._timers)
        self._timers.clear()

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Dispatcher drain timed out with %d queued items", self._queue.qsize())

        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        logger.info(
            "Work dispatcher stopped (%d armed timers left to the recovery sweep)",
            dropped_timers,
        )


_dispatcher: Optional[WorkDispatcher] = None


def get_dispatcher() -> Optional[WorkDispatcher]:
    return _dispatcher


def set_dispatcher(dispatcher: Optional[WorkDispatcher]) -> None:
    global _dispatcher
    _dispatcher = dispatcher


def build_dispatcher() -> WorkDispatcher:
    """Create the dispatcher with the delivery and follow-up job handlers."""
    from intakewire.config import get_settings
    from intakewire.services.webhook_delivery import attempt_delivery
    from intakewire.services.followup_executor import execute_job

    settings = get_settings()
    return WorkDispatcher(
        handlers={
            DELIVERY: attempt_delivery,
            FOLLOWUP_JOB: execute_job,
        },
        concurrency=settings.dispatcher_concurrency,
        max_queue=settings.dispatcher_max_queue,
    )


def arm_work(kind: str, target_id: str, delay_seconds: float = 0.0) -> bool:
    """
    Arm work on the process dispatcher. Without a running dispatcher the
    durable row is left for the recovery sweeper.
    """
    dispatcher = _dispatcher
    if dispatcher is None or not dispatcher.is_running:
        logger.info("No dispatcher running - %s %s left for recovery", kind, str(target_id)[:8])
        return False
    return dispatcher.arm(kind, target_id, delay_seconds)
