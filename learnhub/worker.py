"""
Background worker draining the processing queue.

One job in flight at a time. The polling interval backs off on errors and
snaps back to the base interval after the next successful job.
"""

import asyncio
import signal
from dataclasses import asdict, dataclass

from .config import WorkerSettings, worker_settings
from .errors import is_terminal
from .logging_config import logger
from .queue import ProcessingQueue
from .rag.ingest import IngestionService

MIN_POLL_INTERVAL = 1.0


@dataclass
class WorkerStatus:
    is_running: bool
    poll_interval: float
    current_interval: float
    consecutive_errors: int
    jobs_processed: int
    jobs_failed: int
    last_error: str | None

    def to_dict(self) -> dict:
        return asdict(self)


class QueueWorker:
    """Polls the queue and runs claimed materials through ingestion."""

    def __init__(
        self,
        queue: ProcessingQueue,
        ingestion: IngestionService,
        settings: WorkerSettings | None = None,
    ):
        settings = settings or worker_settings
        self.queue = queue
        self.ingestion = ingestion
        self.poll_interval = settings.poll_interval
        self.backoff_multiplier = settings.backoff_multiplier
        self.max_backoff = settings.max_backoff
        self.shutdown_grace_period = settings.shutdown_grace_period

        self.current_interval = self.poll_interval
        self.consecutive_errors = 0
        self.jobs_processed = 0
        self.jobs_failed = 0
        self.last_error: str | None = None

        self._running = False
        self._task: asyncio.Task | None = None
        self._wake = asyncio.Event()
        self._stopped = asyncio.Event()
        self._cycle_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start polling. Must be called from a running event loop."""
        if self._running:
            logger.info("Queue worker is already running")
            return

        self._running = True
        self._stopped.clear()
        self._wake.clear()
        self._task = asyncio.create_task(self._run(), name="queue-worker")
        logger.info(f"🚀 Queue worker started (polling every {self.current_interval:.1f}s)")

    async def stop(self, grace_period: float | None = None) -> None:
        """
        Stop polling, let the in-flight job finish within the grace period,
        then cancel it. A cancelled job is picked up again once its claim
        lease expires.
        """
        if not self._running:
            logger.info("Queue worker is not running")
            return

        grace = self.shutdown_grace_period if grace_period is None else grace_period
        logger.info("Stopping queue worker...")
        self._running = False
        self._wake.set()

        task, self._task = self._task, None
        if task is not None:
            done, _ = await asyncio.wait({task}, timeout=grace)
            if not done:
                logger.warning(f"In-flight job did not finish within {grace:.1f}s, cancelling it")
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        self._stopped.set()
        logger.info("Queue worker stopped")

    def install_signal_handlers(self) -> None:
        """Stop gracefully on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.warning(f"Signal handlers are not supported here, {sig.name} will not stop the worker")
                return

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, shutting down gracefully...")
        asyncio.ensure_future(self.stop())

    async def run_forever(self) -> None:
        """Start, then block until the worker is stopped."""
        self.start()
        self.install_signal_handlers()
        await self._stopped.wait()

    async def trigger_processing(self) -> bool:
        """Run one cycle now. True if a queue entry was handled."""
        logger.info("Manually triggering queue processing...")
        return await self.run_cycle()

    def set_poll_interval(self, seconds: float) -> None:
        if seconds < MIN_POLL_INTERVAL:
            raise ValueError(f"Poll interval must be at least {MIN_POLL_INTERVAL:.0f}s")

        self.poll_interval = seconds
        self.current_interval = seconds
        logger.info(f"Updated poll interval to {seconds:.1f}s")
        if self._running:
            self._wake.set()

    def status(self) -> WorkerStatus:
        return WorkerStatus(
            is_running=self._running,
            poll_interval=self.poll_interval,
            current_interval=self.current_interval,
            consecutive_errors=self.consecutive_errors,
            jobs_processed=self.jobs_processed,
            jobs_failed=self.jobs_failed,
            last_error=self.last_error,
        )

    async def run_cycle(self) -> bool:
        """
        Claim and process at most one entry.

        Job failures are handed to the queue and never propagate.

        Returns:
            True if an entry was claimed, whatever its outcome.
        """
        async with self._cycle_lock:
            try:
                job = await self.queue.claim_next()
            except Exception as e:
                logger.error(f"Error in queue worker while claiming: {e}")
                self._on_error(e)
                return False

            if job is None:
                logger.debug("No pending jobs")
                return False

            material = job.material
            logger.info(f"⚙️ Processing job {job.entry_id} for '{material.title}' (attempt {job.attempts + 1})")

            ingested = False
            try:
                await self.queue.mark_processing(material.id)
                count = await self.ingestion.ingest(material)
                ingested = True
                await self.queue.complete(job.entry_id, count)
            except Exception as e:
                logger.error(f"Job {job.entry_id} failed: {e}")
                if ingested:
                    # chunks of a material that is not completed must not stay searchable
                    await self.ingestion.discard(material.id)
                self.jobs_failed += 1
                self._on_error(e)
                try:
                    await self.queue.fail(job.entry_id, e, terminal=is_terminal(e))
                except Exception as fail_error:
                    logger.error(f"Could not record failure of job {job.entry_id}: {fail_error}")
                return True

            self.jobs_processed += 1
            self._on_success()
            return True

    def _on_error(self, error: Exception) -> None:
        self.consecutive_errors += 1
        self.last_error = str(error) or type(error).__name__

        previous = self.current_interval
        self.current_interval = min(self.current_interval * self.backoff_multiplier, self.max_backoff)
        logger.warning(
            f"Error occurred ({self.consecutive_errors} consecutive errors). "
            f"Backing off from {previous:.1f}s to {self.current_interval:.1f}s"
        )

    def _on_success(self) -> None:
        if self.consecutive_errors > 0 or self.current_interval != self.poll_interval:
            logger.info("Queue processing successful, resetting backoff")
        self.consecutive_errors = 0
        self.current_interval = self.poll_interval

    async def _run(self) -> None:
        while self._running:
            await self.run_cycle()
            if not self._running:
                break

            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.current_interval)
            except asyncio.TimeoutError:
                pass
