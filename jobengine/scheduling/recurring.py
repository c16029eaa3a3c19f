import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.clock import SystemClock
from ..core.errors import InvalidCronExpression, JobNotFound
from ..models.job import Job, RecurringJobDefinition
from . import cron

logger = logging.getLogger(__name__)


class RecurringJobEngine:
    """Catalog of cron-scheduled templates that materialize jobs when due."""

    def __init__(self, store, clock=None):
        self.store = store
        self.clock = clock or getattr(store, "clock", None) or SystemClock()

    def register(self, recurring_id: str, cron_expression: str, job_type: str,
                 payload: Optional[Dict[str, Any]] = None) -> RecurringJobDefinition:
        """Add or replace a recurring definition.

        Raises ``InvalidCronExpression`` before anything is stored.
        """
        if not recurring_id or not recurring_id.strip():
            raise ValueError("Recurring job id cannot be empty")
        if not job_type or not job_type.strip():
            raise ValueError("Job type cannot be empty")

        expression = cron.validate(cron_expression)
        now = self.clock.now()
        definition = RecurringJobDefinition(
            id=recurring_id,
            cron_expression=expression,
            job_type=job_type,
            payload=dict(payload or {}),
            created_at=now,
            next_execution=cron.next_fire(expression, now),
        )
        stored = self.store.upsert_recurring(definition)
        logger.info(
            f"Recurring job {recurring_id} added/updated with cron {expression!r}, "
            f"next run {stored.next_execution.isoformat()}"
        )
        return stored

    def get(self, recurring_id: str) -> RecurringJobDefinition:
        return self.store.get_recurring(recurring_id)

    def list(self) -> List[RecurringJobDefinition]:
        return self.store.list_recurring()

    def fire_due(self, now: Optional[datetime] = None) -> List[Job]:
        """Materialize one job per definition whose next execution has passed.

        The next execution is computed from ``now``, so a definition that
        missed several slots while the engine was down fires once.
        """
        now = now or self.clock.now()
        fired = []
        for definition in self.store.due_recurring(now):
            try:
                next_execution = cron.next_fire(definition.cron_expression, now)
            except InvalidCronExpression as e:
                logger.error(f"Recurring job {definition.id} skipped: {e}")
                continue
            claimed = self.store.mark_recurring_fired(
                definition.id,
                expected_next=definition.next_execution,
                last_execution=now,
                next_execution=next_execution,
            )
            if not claimed:
                logger.debug(f"Recurring job {definition.id} already fired by another dispatcher")
                continue
            job = self.store.enqueue(definition.job_type, definition.payload, recurring_id=definition.id)
            logger.info(
                f"Recurring job {definition.id} fired as {job.id}, next run {next_execution.isoformat()}"
            )
            fired.append(job)
        return fired

    def trigger(self, recurring_id: str) -> Optional[Job]:
        """Materialize a job right away without touching the schedule."""
        try:
            definition = self.store.get_recurring(recurring_id)
        except JobNotFound:
            logger.info(f"Trigger ignored, recurring job {recurring_id} does not exist")
            return None
        job = self.store.enqueue(definition.job_type, definition.payload, recurring_id=definition.id)
        logger.info(f"Triggering recurring job {recurring_id} as {job.id}")
        return job

    def remove(self, recurring_id: str) -> bool:
        removed = self.store.delete_recurring(recurring_id)
        if removed:
            logger.info(f"Recurring job {recurring_id} removed")
        return removed
