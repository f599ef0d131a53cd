"""Long-running worker loop around the batch processor."""

import asyncio
import signal
import threading
import time
from typing import Optional

from .engine import JobEngine
from .logger import configure_logger
from .models import BatchResult
from .settings import Settings

logger = configure_logger(__name__)

MAX_ERROR_BACKOFF_MS = 30000


class Worker:
    """Processes jobs in cycles until stopped.

    Each cycle releases stale claims and runs the batch processor for at
    most cycle_runtime_ms. Every stats_every_cycles cycles the queue
    statistics are logged, and every dlq_cleanup_every_cycles cycles old
    dead-letter jobs are purged.
    """

    def __init__(self, engine: JobEngine, settings: Settings, worker_id: Optional[str] = None):
        self.engine = engine
        self.settings = settings
        self.worker_id = worker_id or settings.worker_id
        self.running = True
        self.cycles = 0
        self.totals = BatchResult()

    def install_signal_handlers(self) -> None:
        """Stop after the current cycle on SIGTERM/SIGINT (main thread only)."""
        if threading.current_thread() is not threading.main_thread():
            return
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

    def _handle_shutdown(self, signum, frame):
        logger.info(
            f"Worker {self.worker_id} received signal {signum}, finishing current cycle",
            extra={"worker_id": self.worker_id},
        )
        self.stop()

    def stop(self) -> None:
        self.running = False

    async def run(self, max_runtime_ms: Optional[int] = None) -> BatchResult:
        """Run cycles until stopped or max_runtime_ms elapses; return the totals."""
        logger.info(
            f"Worker {self.worker_id} started (batch_size={self.settings.batch_size})",
            extra={"worker_id": self.worker_id},
        )
        started = time.monotonic()

        while self.running:
            if max_runtime_ms is not None and (time.monotonic() - started) * 1000 >= max_runtime_ms:
                break

            try:
                result = await self.run_cycle()
            except Exception as e:
                logger.error(
                    f"Worker {self.worker_id} error in cycle {self.cycles + 1}: {e}",
                    extra={"worker_id": self.worker_id},
                    exc_info=True,
                )
                self.totals.errors += 1
                pause_ms = self._error_backoff_ms()
            else:
                if result.halted:
                    pause_ms = self._error_backoff_ms()
                elif result.processed == 0 and result.errors == 0:
                    pause_ms = self.settings.poll_interval_ms * 2
                else:
                    pause_ms = self.settings.poll_interval_ms
            self.cycles += 1

            await self._sleep(pause_ms)

        logger.info(
            f"Worker {self.worker_id} stopped after {self.cycles} cycle(s): "
            f"processed={self.totals.processed} errors={self.totals.errors} "
            f"dead_letter={self.totals.dead_letter}",
            extra={"worker_id": self.worker_id},
        )
        return self.totals

    async def run_cycle(self) -> BatchResult:
        await self.engine.release_stale_claims(self.settings.stale_claim_grace_ms)

        result = await self.engine.process_jobs(
            batch_size=self.settings.batch_size,
            worker_id=self.worker_id,
            max_runtime_ms=self.settings.cycle_runtime_ms,
        )
        self.totals.processed += result.processed
        self.totals.errors += result.errors
        self.totals.dead_letter += result.dead_letter
        self.totals.batches += result.batches

        logger.debug(
            f"Cycle {self.cycles + 1}: processed={result.processed} "
            f"errors={result.errors} dead_letter={result.dead_letter}",
            extra={"worker_id": self.worker_id},
        )

        if self.cycles % self.settings.stats_every_cycles == 0:
            stats = await asyncio.to_thread(self.engine.get_job_stats)
            logger.info(f"Job statistics: {stats.model_dump()}", extra={"worker_id": self.worker_id})

        if self.cycles > 0 and self.cycles % self.settings.dlq_cleanup_every_cycles == 0:
            cleanup = await asyncio.to_thread(
                self.engine.process_dead_letter_queue,
                False,
                self.settings.dlq_cleanup_batch_size,
            )
            logger.info(
                f"Dead letter cleanup: deleted {cleanup.deleted} job(s)",
                extra={"worker_id": self.worker_id},
            )

        return result

    def _error_backoff_ms(self) -> float:
        return min(
            self.settings.poll_interval_ms * (2 ** min(self.cycles, 5)),
            MAX_ERROR_BACKOFF_MS,
        )

    async def _sleep(self, pause_ms: float) -> None:
        """Sleep in short slices so a stop request is honoured quickly."""
        wake_at = time.monotonic() + pause_ms / 1000.0
        while self.running:
            remaining = wake_at - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(remaining, 0.25))
