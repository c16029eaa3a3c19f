import logging
from typing import List, Optional

from ..core.errors import InvalidTransition, JobNotFound
from ..models.job import JobState, JobStatistics, JobSummary, RecurringJobDefinition

logger = logging.getLogger(__name__)


class JobAdmin:
    """Management operations over the store.

    Requeue and delete report rejection as ``False`` rather than raising;
    trigger and remove are no-ops for unknown recurring ids.
    """

    def __init__(self, store, recurring, pool=None):
        self.store = store
        self.recurring = recurring
        self.pool = pool

    def get_statistics(self) -> JobStatistics:
        return self.store.statistics()

    def list_jobs(self, state=None, limit: Optional[int] = 50) -> List[JobSummary]:
        state = JobState.parse(state) if state else None
        return [JobSummary.from_job(job) for job in self.store.list_jobs(state=state, limit=limit)]

    def get_job(self, job_id: str) -> JobSummary:
        """Raises ``JobNotFound`` for unknown ids."""
        return JobSummary.from_job(self.store.get_job(job_id))

    def list_recurring(self) -> List[RecurringJobDefinition]:
        return self.recurring.list()

    def requeue(self, job_id: str) -> bool:
        """Send a Failed job back to Enqueued with a fresh retry budget."""
        try:
            self.store.transition(
                job_id,
                [JobState.FAILED],
                JobState.ENQUEUED,
                retry_count=0,
                exception=None,
                output=None,
                started_at=None,
                completed_at=None,
                scheduled_for=None,
            )
        except JobNotFound:
            logger.info(f"Requeue rejected, job {job_id} not found")
            return False
        except InvalidTransition as e:
            logger.info(f"Requeue rejected, job {job_id} is {e.current.value}, not Failed")
            return False
        logger.info(f"Job {job_id} requeued")
        return True

    def delete_job(self, job_id: str) -> bool:
        deleted = self.store.delete_job(job_id)
        if not deleted:
            logger.info(f"Delete ignored, job {job_id} not found")
            return False
        if self.pool is not None:
            self.pool.cancel(job_id)
        logger.info(f"Job {job_id} deleted")
        return True

    def trigger_recurring(self, recurring_id: str) -> Optional[str]:
        job = self.recurring.trigger(recurring_id)
        return job.id if job is not None else None

    def remove_recurring(self, recurring_id: str):
        if not self.recurring.remove(recurring_id):
            logger.info(f"Remove ignored, recurring job {recurring_id} not found")
