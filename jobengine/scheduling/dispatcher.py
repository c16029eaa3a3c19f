import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from ..core.clock import SystemClock
from ..core.errors import InvalidTransition, JobNotFound, StoreUnavailable
from ..models.job import CLAIMABLE_STATES, JobState

logger = logging.getLogger(__name__)

ORPHAN_DETAIL = "worker lost before completion"


@dataclass
class TickSummary:
    materialized: int = 0
    claimed: int = 0
    skipped: int = 0
    purged: int = 0
    paused: bool = False


class Dispatcher:
    """Control loop that hands ready jobs to the worker pool.

    Each tick fires due recurring definitions, runs retention cleanup when
    it is due, then claims as many ready jobs as there are free slots.
    """

    def __init__(
        self,
        store,
        pool,
        recurring=None,
        poll_interval: float = 1.0,
        clock=None,
        succeeded_retention: Optional[float] = None,
        failed_retention: Optional[float] = None,
        cleanup_interval: float = 900.0,
        recover_orphans: bool = True,
    ):
        self.store = store
        self.pool = pool
        self.recurring = recurring
        self.poll_interval = poll_interval
        self.clock = clock or getattr(store, "clock", None) or SystemClock()
        self.succeeded_retention = succeeded_retention
        self.failed_retention = failed_retention
        self.cleanup_interval = cleanup_interval
        self.recover_orphans = recover_orphans

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_cleanup: Optional[datetime] = None
        self._paused = False

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> TickSummary:
        """One pass of the loop. Raises ``StoreUnavailable`` if the store is down."""
        summary = TickSummary()
        now = self.clock.now()

        if self.recurring is not None:
            summary.materialized = len(self.recurring.fire_due(now))

        summary.purged = self._maybe_cleanup(now)

        free = self.pool.free_slots()
        for job in self.store.ready_jobs(now, free):
            # Another tick on the same pool may have taken the slot since free_slots().
            if not self.pool.reserve():
                break
            try:
                claimed = self.store.transition(job.id, CLAIMABLE_STATES, JobState.PROCESSING, started_at=now)
            except (InvalidTransition, JobNotFound):
                self.pool.release()
                logger.debug(f"Job {job.id} was claimed or removed elsewhere, skipping")
                summary.skipped += 1
                continue
            except StoreUnavailable:
                self.pool.release()
                raise
            try:
                self.pool.submit(claimed, reserved=True)
            except RuntimeError as e:
                self._unclaim(job, e)
                break
            summary.claimed += 1

        return summary

    def _unclaim(self, job, reason):
        """Hand a claimed job that never reached a slot back to the queue."""
        logger.warning(f"Job {job.id} could not start ({reason}), returning it to {job.state.value}")
        try:
            self.store.transition(job.id, [JobState.PROCESSING], job.state, started_at=None)
        except (InvalidTransition, JobNotFound):
            pass

    def run_once(self) -> TickSummary:
        """Tick, but turn a store outage into the paused state instead of raising."""
        try:
            summary = self.tick()
        except StoreUnavailable as e:
            if not self._paused:
                logger.warning(f"Job store unavailable, dispatcher paused: {e}")
            self._paused = True
            return TickSummary(paused=True)
        if self._paused:
            logger.info("Job store reachable again, dispatcher resumed")
            self._paused = False
        return summary

    def _maybe_cleanup(self, now: datetime) -> int:
        if self.succeeded_retention is None and self.failed_retention is None:
            return 0
        if self._last_cleanup is not None and (now - self._last_cleanup).total_seconds() < self.cleanup_interval:
            return 0
        self._last_cleanup = now
        removed = self.store.purge_finished(
            succeeded_before=self._cutoff(now, self.succeeded_retention),
            failed_before=self._cutoff(now, self.failed_retention),
        )
        if removed:
            logger.debug(f"Cleaned up {removed} old jobs")
        return removed

    @staticmethod
    def _cutoff(now: datetime, retention: Optional[float]) -> Optional[datetime]:
        if retention is None:
            return None
        return now - timedelta(seconds=retention)

    def recover_orphaned(self) -> List[str]:
        """Push jobs stuck in Processing from a previous run back through retry.

        Only safe while no other dispatcher shares the store.
        """
        recovered = []
        for job in self.store.processing_jobs():
            try:
                self.pool.retry_policy.handle_failure(self.store, job, ORPHAN_DETAIL, self.clock.now())
            except (InvalidTransition, JobNotFound):
                continue
            recovered.append(job.id)
        if recovered:
            logger.warning(f"Recovered {len(recovered)} orphaned job(s) left in Processing")
        return recovered

    def run_forever(self):
        """Blocking loop; returns once :meth:`stop` is called."""
        logger.info(f"Dispatcher started (poll every {self.poll_interval:g}s)")
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Dispatcher tick failed")
            self._stop.wait(self.poll_interval)
        logger.info("Dispatcher stopped")

    def start(self):
        if self.running:
            return
        self._stop.clear()
        if self.recover_orphans:
            try:
                self.recover_orphaned()
            except StoreUnavailable as e:
                logger.warning(f"Skipping orphan recovery, job store unavailable: {e}")
        self._thread = threading.Thread(target=self.run_forever, name="jobengine-dispatcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
