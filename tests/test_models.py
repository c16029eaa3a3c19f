from datetime import datetime, timedelta, timezone

import pytest

from jobengine.models.job import Job, JobState, JobStatistics, JobSummary, new_job_id

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_job_creation():
    job = Job(job_type="noop", created_at=NOW)
    assert job.state == JobState.ENQUEUED
    assert job.retry_count == 0
    assert job.payload == {}
    assert job.duration is None
    assert not job.is_terminal
    assert len(job.id) == 32


def test_job_ids_are_unique():
    assert len({new_job_id() for _ in range(1000)}) == 1000


def test_duration_needs_both_timestamps():
    job = Job(job_type="noop", created_at=NOW, started_at=NOW)
    assert job.duration is None
    job = Job(job_type="noop", created_at=NOW, started_at=NOW, completed_at=NOW + timedelta(seconds=3))
    assert job.duration == timedelta(seconds=3)


@pytest.mark.parametrize("value", ["Failed", "failed", "FAILED", JobState.FAILED])
def test_state_parse(value):
    assert JobState.parse(value) is JobState.FAILED


def test_state_parse_rejects_unknown():
    with pytest.raises(ValueError):
        JobState.parse("dead")


def test_summary_reports_symbolic_state_and_duration():
    job = Job(
        job_type="report",
        created_at=NOW,
        state=JobState.FAILED,
        started_at=NOW,
        completed_at=NOW + timedelta(milliseconds=1500),
        exception="boom",
        retry_count=2,
    )
    summary = JobSummary.from_job(job)
    assert summary.state == "Failed"
    assert summary.duration_seconds == 1.5
    assert summary.error == "boom"
    assert summary.retry_count == 2


def test_statistics_default_has_every_state():
    stats = JobStatistics()
    assert set(stats.counts) == {s.value for s in JobState}
    assert stats.total == 0
    assert stats.count("succeeded") == 0
