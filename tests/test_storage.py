import threading
from datetime import timedelta

import pytest

from jobengine.core.errors import InvalidTransition, JobNotFound, StoreUnavailable
from jobengine.models.job import CLAIMABLE_STATES, JobState, RecurringJobDefinition
from jobengine.storage.database import Storage


def test_storage_enqueue_job(storage, clock):
    job = storage.enqueue("noop", {"x": 1})
    retrieved = storage.get_job(job.id)
    assert retrieved.job_type == "noop"
    assert retrieved.payload == {"x": 1}
    assert retrieved.state == JobState.ENQUEUED
    assert retrieved.created_at == clock.now()
    assert retrieved.retry_count == 0
    assert retrieved.started_at is None


def test_storage_schedule_job(storage, clock):
    at = clock.now() + timedelta(minutes=5)
    job = storage.schedule("noop", None, at)
    retrieved = storage.get_job(job.id)
    assert retrieved.state == JobState.SCHEDULED
    assert retrieved.scheduled_for == at


def test_get_unknown_job(storage):
    with pytest.raises(JobNotFound):
        storage.get_job("missing")


def test_transition_updates_state_and_fields(storage, clock):
    job = storage.enqueue("noop")
    claimed = storage.transition(job.id, CLAIMABLE_STATES, JobState.PROCESSING, started_at=clock.now())
    assert claimed.state == JobState.PROCESSING
    assert claimed.started_at == clock.now()
    assert storage.get_job(job.id).state == JobState.PROCESSING


def test_transition_from_wrong_state_is_rejected(storage, clock):
    job = storage.enqueue("noop")
    with pytest.raises(InvalidTransition) as info:
        storage.transition(job.id, [JobState.PROCESSING], JobState.SUCCEEDED, completed_at=clock.now())
    assert info.value.current == JobState.ENQUEUED
    after = storage.get_job(job.id)
    assert after.state == JobState.ENQUEUED
    assert after.completed_at is None


def test_transition_unknown_job(storage):
    with pytest.raises(JobNotFound):
        storage.transition("missing", [JobState.ENQUEUED], JobState.PROCESSING)


def test_transition_rejects_unknown_fields(storage):
    job = storage.enqueue("noop")
    with pytest.raises(ValueError):
        storage.transition(job.id, [JobState.ENQUEUED], JobState.PROCESSING, job_type="other")


def test_list_jobs_newest_first(storage, clock):
    first = storage.enqueue("a")
    clock.advance(1)
    second = storage.enqueue("b")
    clock.advance(1)
    third = storage.enqueue("c")

    assert [j.id for j in storage.list_jobs()] == [third.id, second.id, first.id]
    assert [j.id for j in storage.list_jobs(limit=2)] == [third.id, second.id]


def test_list_jobs_limit_bounds(storage):
    for _ in range(3):
        storage.enqueue("noop")
    assert storage.list_jobs(limit=0) == []
    assert len(storage.list_jobs(limit=None)) == 3
    with pytest.raises(ValueError):
        storage.list_jobs(limit=-1)


def test_list_jobs_state_filter(storage, clock):
    job = storage.enqueue("a")
    storage.enqueue("b")
    storage.transition(job.id, CLAIMABLE_STATES, JobState.PROCESSING, started_at=clock.now())

    processing = storage.list_jobs(state=JobState.PROCESSING)
    assert [j.id for j in processing] == [job.id]
    assert len(storage.list_jobs(state="enqueued")) == 1


def test_ready_jobs_fifo_with_id_tie_break(storage, clock):
    same_time = [storage.enqueue("a") for _ in range(3)]
    clock.advance(5)
    newer = storage.enqueue("b")

    ready = storage.ready_jobs(clock.now(), limit=10)
    assert [j.id for j in ready] == sorted(j.id for j in same_time) + [newer.id]
    assert [j.id for j in storage.ready_jobs(clock.now(), limit=2)] == sorted(j.id for j in same_time)[:2]
    assert storage.ready_jobs(clock.now(), limit=0) == []


def test_ready_jobs_only_includes_due_scheduled(storage, clock):
    due = storage.schedule("a", None, clock.now() - timedelta(seconds=1))
    storage.schedule("b", None, clock.now() + timedelta(minutes=1))

    assert [j.id for j in storage.ready_jobs(clock.now(), limit=10)] == [due.id]


def test_delete_job(storage):
    job = storage.enqueue("noop")
    assert storage.delete_job(job.id) is True
    assert storage.delete_job(job.id) is False
    with pytest.raises(JobNotFound):
        storage.get_job(job.id)


def test_statistics(storage, clock):
    empty = storage.statistics()
    assert empty.total == 0
    assert empty.oldest_job_at is None

    first = storage.enqueue("a")
    clock.advance(10)
    second = storage.enqueue("b")
    storage.schedule("c", None, clock.now() + timedelta(hours=1))
    storage.transition(second.id, CLAIMABLE_STATES, JobState.PROCESSING, started_at=clock.now())
    clock.advance(1)
    storage.transition(second.id, [JobState.PROCESSING], JobState.SUCCEEDED, completed_at=clock.now())

    stats = storage.statistics()
    assert stats.count(JobState.ENQUEUED) == 1
    assert stats.count(JobState.SCHEDULED) == 1
    assert stats.count(JobState.SUCCEEDED) == 1
    assert stats.count(JobState.FAILED) == 0
    assert stats.oldest_job_at == first.created_at
    assert stats.last_completed_at == clock.now()


def test_purge_finished(storage, clock):
    old_ok = storage.enqueue("a")
    old_failed = storage.enqueue("b")
    for job in (old_ok, old_failed):
        storage.transition(job.id, CLAIMABLE_STATES, JobState.PROCESSING, started_at=clock.now())
    storage.transition(old_ok.id, [JobState.PROCESSING], JobState.SUCCEEDED, completed_at=clock.now())
    storage.transition(old_failed.id, [JobState.PROCESSING], JobState.FAILED, completed_at=clock.now())
    clock.advance(hours=2)
    pending = storage.enqueue("c")

    removed = storage.purge_finished(succeeded_before=clock.now() - timedelta(hours=1))
    assert removed == 1
    assert {j.id for j in storage.list_jobs()} == {old_failed.id, pending.id}


def test_concurrent_claims_have_one_winner(storage, clock):
    job = storage.enqueue("noop")
    contenders = 16
    barrier = threading.Barrier(contenders)
    winners, losers = [], []

    def claim():
        barrier.wait()
        try:
            storage.transition(job.id, CLAIMABLE_STATES, JobState.PROCESSING, started_at=clock.now())
            winners.append(1)
        except InvalidTransition:
            losers.append(1)

    threads = [threading.Thread(target=claim) for _ in range(contenders)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    assert len(losers) == contenders - 1
    assert storage.get_job(job.id).state == JobState.PROCESSING


def test_recurring_upsert_keeps_created_at(storage, clock):
    created = clock.now()
    storage.upsert_recurring(RecurringJobDefinition(
        id="nightly", cron_expression="0 0 * * *", job_type="a",
        created_at=created, next_execution=created + timedelta(hours=12),
    ))
    clock.advance(hours=1)
    updated = storage.upsert_recurring(RecurringJobDefinition(
        id="nightly", cron_expression="0 1 * * *", job_type="b",
        created_at=clock.now(), next_execution=created + timedelta(hours=13),
    ))

    assert updated.created_at == created
    assert updated.cron_expression == "0 1 * * *"
    assert updated.job_type == "b"
    assert [d.id for d in storage.list_recurring()] == ["nightly"]


def test_mark_recurring_fired_is_compare_and_swap(storage, clock):
    nxt = clock.now() + timedelta(seconds=30)
    storage.upsert_recurring(RecurringJobDefinition(
        id="r", cron_expression="* * * * *", job_type="a", created_at=clock.now(), next_execution=nxt,
    ))
    later = nxt + timedelta(minutes=1)

    assert storage.mark_recurring_fired("r", nxt, clock.now(), later) is True
    assert storage.mark_recurring_fired("r", nxt, clock.now(), later) is False
    assert storage.get_recurring("r").next_execution == later


def test_delete_recurring(storage, clock):
    storage.upsert_recurring(RecurringJobDefinition(
        id="r", cron_expression="* * * * *", job_type="a",
        created_at=clock.now(), next_execution=clock.now() + timedelta(minutes=1),
    ))
    assert storage.delete_recurring("r") is True
    assert storage.delete_recurring("r") is False
    with pytest.raises(JobNotFound):
        storage.get_recurring("r")


def test_unreachable_store_raises_store_unavailable(tmp_path):
    missing = tmp_path / "no" / "such" / "dir" / "jobs.db"
    with pytest.raises(StoreUnavailable):
        Storage(database_url=f"sqlite:///{missing}")
