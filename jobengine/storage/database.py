import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, and_, create_engine, func, or_
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from ..core.clock import SystemClock, ensure_utc
from ..core.errors import InvalidTransition, JobNotFound, StoreUnavailable
from ..models.job import Job, JobState, JobStatistics, RecurringJobDefinition

logger = logging.getLogger(__name__)

Base = declarative_base()

# Columns a transition is allowed to touch besides ``state``.
TRANSITION_FIELDS = frozenset({
    "started_at",
    "completed_at",
    "scheduled_for",
    "retry_count",
    "exception",
    "output",
})


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class JobModel(Base):
    __tablename__ = "jobs"

    id = Column(String(32), primary_key=True)
    job_type = Column(String(255), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    state = Column(
        SQLEnum(JobState, name="job_state", values_callable=lambda states: [s.value for s in states]),
        nullable=False,
        default=JobState.ENQUEUED,
        index=True,
    )
    created_at = Column(UTCDateTime, nullable=False, index=True)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    scheduled_for = Column(UTCDateTime, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    exception = Column(Text, nullable=True)
    output = Column(Text, nullable=True)
    recurring_id = Column(String(255), nullable=True, index=True)


class RecurringJobModel(Base):
    __tablename__ = "recurring_jobs"

    id = Column(String(255), primary_key=True)
    cron_expression = Column(String(255), nullable=False)
    job_type = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False)
    last_execution = Column(UTCDateTime, nullable=True)
    next_execution = Column(UTCDateTime, nullable=False, index=True)


def _engine_for(database_url: str):
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        # The dispatcher and the worker slots share the store across threads.
        connect_args = {"check_same_thread": False, "timeout": 30}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **kwargs)


class Storage:
    """Durable record of every job and recurring definition.

    All job state changes go through :meth:`transition`, a conditional
    update that only applies when the row is still in an expected state.
    """

    def __init__(self, db_path: str = None, *, database_url: str = None, clock=None):
        if not database_url:
            if not db_path:
                db_path = os.path.join(os.path.expanduser("~"), ".jobengine", "jobs.db")
                os.makedirs(os.path.dirname(db_path), exist_ok=True)
            database_url = f"sqlite:///{db_path}"

        self.database_url = database_url
        self.clock = clock or SystemClock()
        self._lock = threading.RLock()
        try:
            self.engine = _engine_for(database_url)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Cannot open job store at {database_url}: {e}") from e
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def __del__(self):
        if hasattr(self, 'engine'):
            self.engine.dispose()

    def close(self):
        self.engine.dispose()

    @contextmanager
    def _session(self):
        session = self.Session()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreUnavailable(f"Job store error: {e}") from e
        finally:
            session.close()

    # Jobs

    def _insert(self, job: Job) -> Job:
        with self._lock, self._session() as session:
            session.add(JobModel(**job.model_dump()))
            session.commit()
        return job

    def enqueue(self, job_type: str, payload: Optional[Dict[str, Any]] = None,
                recurring_id: Optional[str] = None) -> Job:
        job = Job(
            job_type=job_type,
            payload=dict(payload or {}),
            state=JobState.ENQUEUED,
            created_at=self.clock.now(),
            recurring_id=recurring_id,
        )
        self._insert(job)
        logger.info(f"Job {job.id} enqueued ({job_type})")
        return job

    def schedule(self, job_type: str, payload: Optional[Dict[str, Any]], at: datetime) -> Job:
        job = Job(
            job_type=job_type,
            payload=dict(payload or {}),
            state=JobState.SCHEDULED,
            created_at=self.clock.now(),
            scheduled_for=ensure_utc(at),
        )
        self._insert(job)
        logger.info(f"Job {job.id} scheduled for {job.scheduled_for.isoformat()} ({job_type})")
        return job

    def transition(self, job_id: str, from_states: Iterable, to_state, **fields) -> Job:
        """Move a job to ``to_state`` only if it is currently in ``from_states``.

        Raises ``JobNotFound`` when the job does not exist and
        ``InvalidTransition`` when it exists in some other state.
        """
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot set {', '.join(sorted(unknown))} through a transition")

        expected = [JobState.parse(s) for s in from_states]
        target = JobState.parse(to_state)
        values = dict(fields, state=target)

        with self._lock, self._session() as session:
            updated = (
                session.query(JobModel)
                .filter(JobModel.id == job_id, JobModel.state.in_(expected))
                .update(values, synchronize_session=False)
            )
            session.commit()
            row = session.get(JobModel, job_id)
            if row is None:
                raise JobNotFound(job_id)
            if updated != 1:
                raise InvalidTransition(job_id, row.state, target, expected)
            return Job.model_validate(row)

    def get_job(self, job_id: str) -> Job:
        with self._session() as session:
            row = session.get(JobModel, job_id)
            if row is None:
                raise JobNotFound(job_id)
            return Job.model_validate(row)

    def list_jobs(self, state=None, limit: Optional[int] = 50) -> List[Job]:
        """Newest first. ``limit=None`` lists everything."""
        if limit is not None and limit < 0:
            raise ValueError(f"limit must not be negative, got {limit}")
        with self._session() as session:
            query = session.query(JobModel)
            if state:
                query = query.filter(JobModel.state == JobState.parse(state))
            query = query.order_by(JobModel.created_at.desc(), JobModel.id.desc())
            if limit is not None:
                query = query.limit(limit)
            return [Job.model_validate(row) for row in query.all()]

    def ready_jobs(self, now: datetime, limit: int) -> List[Job]:
        """Jobs the dispatcher may claim, oldest first, ties broken by id."""
        if limit <= 0:
            return []
        with self._session() as session:
            query = (
                session.query(JobModel)
                .filter(or_(
                    JobModel.state == JobState.ENQUEUED,
                    and_(JobModel.state == JobState.SCHEDULED, JobModel.scheduled_for <= now),
                ))
                .order_by(JobModel.created_at.asc(), JobModel.id.asc())
                .limit(limit)
            )
            return [Job.model_validate(row) for row in query.all()]

    def processing_jobs(self) -> List[Job]:
        with self._session() as session:
            rows = (
                session.query(JobModel)
                .filter(JobModel.state == JobState.PROCESSING)
                .order_by(JobModel.created_at.asc(), JobModel.id.asc())
                .all()
            )
            return [Job.model_validate(row) for row in rows]

    def delete_job(self, job_id: str) -> bool:
        with self._lock, self._session() as session:
            deleted = (
                session.query(JobModel)
                .filter(JobModel.id == job_id)
                .delete(synchronize_session=False)
            )
            session.commit()
        return deleted == 1

    def purge_finished(self, succeeded_before: Optional[datetime] = None,
                       failed_before: Optional[datetime] = None) -> int:
        """Delete terminal jobs that completed before the given cutoffs."""
        removed = 0
        with self._lock, self._session() as session:
            for state, cutoff in ((JobState.SUCCEEDED, succeeded_before), (JobState.FAILED, failed_before)):
                if cutoff is None:
                    continue
                removed += (
                    session.query(JobModel)
                    .filter(JobModel.state == state, JobModel.completed_at < cutoff)
                    .delete(synchronize_session=False)
                )
            session.commit()
        return removed

    def statistics(self) -> JobStatistics:
        stats = JobStatistics()
        with self._session() as session:
            for state, count in session.query(JobModel.state, func.count(JobModel.id)).group_by(JobModel.state):
                stats.counts[JobState.parse(state).value] = int(count)
            stats.recurring = int(session.query(func.count(RecurringJobModel.id)).scalar() or 0)
            stats.oldest_job_at = ensure_utc(session.query(func.min(JobModel.created_at)).scalar())
            stats.last_completed_at = ensure_utc(session.query(func.max(JobModel.completed_at)).scalar())
        return stats

    # Recurring definitions

    def upsert_recurring(self, definition: RecurringJobDefinition) -> RecurringJobDefinition:
        """Add a definition or update an existing one in place.

        An update keeps the original ``created_at`` and ``last_execution``.
        """
        with self._lock, self._session() as session:
            row = session.get(RecurringJobModel, definition.id)
            if row is None:
                row = RecurringJobModel(id=definition.id, created_at=definition.created_at)
                session.add(row)
            row.cron_expression = definition.cron_expression
            row.job_type = definition.job_type
            row.payload = dict(definition.payload)
            row.next_execution = definition.next_execution
            session.commit()
            return RecurringJobDefinition.model_validate(row)

    def get_recurring(self, recurring_id: str) -> RecurringJobDefinition:
        with self._session() as session:
            row = session.get(RecurringJobModel, recurring_id)
            if row is None:
                raise JobNotFound(recurring_id, kind="Recurring job")
            return RecurringJobDefinition.model_validate(row)

    def list_recurring(self) -> List[RecurringJobDefinition]:
        with self._session() as session:
            rows = session.query(RecurringJobModel).order_by(RecurringJobModel.id.asc()).all()
            return [RecurringJobDefinition.model_validate(row) for row in rows]

    def due_recurring(self, now: datetime) -> List[RecurringJobDefinition]:
        with self._session() as session:
            rows = (
                session.query(RecurringJobModel)
                .filter(RecurringJobModel.next_execution <= now)
                .order_by(RecurringJobModel.next_execution.asc(), RecurringJobModel.id.asc())
                .all()
            )
            return [RecurringJobDefinition.model_validate(row) for row in rows]

    def mark_recurring_fired(self, recurring_id: str, expected_next: datetime,
                             last_execution: datetime, next_execution: datetime) -> bool:
        """Advance a definition's schedule if nobody else already did."""
        with self._lock, self._session() as session:
            updated = (
                session.query(RecurringJobModel)
                .filter(
                    RecurringJobModel.id == recurring_id,
                    RecurringJobModel.next_execution == expected_next,
                )
                .update(
                    {"last_execution": last_execution, "next_execution": next_execution},
                    synchronize_session=False,
                )
            )
            session.commit()
        return updated == 1

    def delete_recurring(self, recurring_id: str) -> bool:
        with self._lock, self._session() as session:
            deleted = (
                session.query(RecurringJobModel)
                .filter(RecurringJobModel.id == recurring_id)
                .delete(synchronize_session=False)
            )
            session.commit()
        return deleted == 1
