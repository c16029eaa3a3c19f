import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from ..admin.service import JobAdmin
from ..core.clock import SystemClock
from ..core.config import EngineConfig
from ..models.job import Job, RecurringJobDefinition
from ..storage.database import Storage
from ..workers.worker import HandlerRegistry, WorkerPool, default_registry
from .dispatcher import Dispatcher, TickSummary
from .recurring import RecurringJobEngine
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class JobEngine:
    """Wires the store, worker pool, retry policy, recurring engine and
    dispatcher together from one ``EngineConfig``.

    Use ``start()``/``stop()`` (or ``with JobEngine(...)``) to run the
    dispatcher thread, or ``run_pending()`` to drive it by hand.
    """

    def __init__(self, config: Optional[EngineConfig] = None, *, store: Optional[Storage] = None,
                 registry: Optional[HandlerRegistry] = None, clock=None):
        self.config = config or EngineConfig()
        self.clock = clock or (store.clock if store is not None else SystemClock())
        self.store = store or Storage(database_url=self.config.resolved_database_url(), clock=self.clock)
        self.registry = registry if registry is not None else default_registry()
        self.retry_policy = RetryPolicy.from_config(self.config)
        self.pool = WorkerPool(
            self.store,
            self.registry,
            self.retry_policy,
            concurrency=self.config.concurrency,
            job_timeout=self.config.job_timeout,
            clock=self.clock,
        )
        self.recurring = RecurringJobEngine(self.store, clock=self.clock)
        self.dispatcher = Dispatcher(
            self.store,
            self.pool,
            self.recurring,
            poll_interval=self.config.poll_interval,
            clock=self.clock,
            succeeded_retention=self.config.succeeded_retention,
            failed_retention=self.config.failed_retention,
            cleanup_interval=self.config.cleanup_interval,
            recover_orphans=self.config.recover_orphans,
        )
        self.admin = JobAdmin(self.store, self.recurring, self.pool)

    def register_handler(self, job_type: str, handler):
        return self.registry.register(job_type, handler)

    def handler(self, job_type: str):
        return self.registry.handler(job_type)

    def enqueue(self, job_type: str, payload: Optional[Dict[str, Any]] = None) -> Job:
        return self.store.enqueue(job_type, payload)

    def schedule(self, job_type: str, payload: Optional[Dict[str, Any]] = None, *,
                 at: Optional[datetime] = None, delay: Union[timedelta, float, None] = None) -> Job:
        if (at is None) == (delay is None):
            raise ValueError("Pass exactly one of 'at' or 'delay'")
        if delay is not None:
            if not isinstance(delay, timedelta):
                delay = timedelta(seconds=delay)
            at = self.clock.now() + delay
        return self.store.schedule(job_type, payload, at)

    def add_recurring(self, recurring_id: str, cron_expression: str, job_type: str,
                      payload: Optional[Dict[str, Any]] = None) -> RecurringJobDefinition:
        return self.recurring.register(recurring_id, cron_expression, job_type, payload)

    def run_pending(self, timeout: Optional[float] = None) -> TickSummary:
        """One dispatcher tick, then wait for the claimed jobs to finish."""
        summary = self.dispatcher.run_once()
        self.pool.wait_idle(timeout)
        return summary

    def start(self):
        self.dispatcher.start()
        return self

    def stop(self, wait: bool = True):
        self.dispatcher.stop()
        self.pool.shutdown(wait=wait)

    def close(self):
        self.stop()
        self.store.close()

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
