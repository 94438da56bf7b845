"""Tests for the job lifecycle state machine."""

from datetime import datetime

import pytest

from scrapeboard.foundation.errors import JobStateError
from scrapeboard.models.job import (
    ALLOWED_TRANSITIONS, TERMINAL_STATES, Job, JobPriority, JobState, JobTrigger
)

NOW = datetime(2025, 1, 6, 12, 0, 0)


class TestJob:
    """Test job defaults and transitions."""

    def test_new_job_defaults(self):
        job = Job(plugin_id="p1")

        assert job.id.startswith("job_")
        assert job.state == JobState.QUEUED
        assert job.priority == JobPriority.NORMAL
        assert job.trigger == JobTrigger.SCHEDULE
        assert job.attempt == 1
        assert job.revision == 0
        assert not job.is_terminal

    def test_job_ids_are_unique(self):
        assert len({Job(plugin_id="p1").id for _ in range(50)}) == 50

    def test_happy_path(self):
        job = Job(plugin_id="p1")

        job.transition(JobState.CLAIMED, NOW)
        job.transition(JobState.RUNNING, NOW)
        job.transition(JobState.SUCCEEDED, NOW)

        assert job.state == JobState.SUCCEEDED
        assert job.started_at == NOW
        assert job.finished_at == NOW
        assert job.revision == 3
        assert job.is_terminal

    @pytest.mark.parametrize("source,target", [
        (JobState.QUEUED, JobState.RUNNING),
        (JobState.QUEUED, JobState.SUCCEEDED),
        (JobState.CLAIMED, JobState.SUCCEEDED),
        (JobState.SUCCEEDED, JobState.QUEUED),
        (JobState.CANCELLED, JobState.QUEUED),
        (JobState.FAILED, JobState.CANCELLED),
    ])
    def test_illegal_transitions_raise(self, source, target):
        job = Job(plugin_id="p1", state=source)

        with pytest.raises(JobStateError) as exc_info:
            job.transition(target, NOW)

        assert exc_info.value.details == {"current_state": source.value, "target_state": target.value}
        assert job.state == source
        assert job.revision == 0

    def test_terminal_states_have_no_exits(self):
        for state in (JobState.SUCCEEDED, JobState.CANCELLED):
            assert ALLOWED_TRANSITIONS[state] == frozenset()
        assert TERMINAL_STATES == {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED}

    def test_every_live_state_can_be_cancelled(self):
        for state in (JobState.QUEUED, JobState.CLAIMED, JobState.RUNNING):
            assert Job(plugin_id="p1", state=state).can_transition(JobState.CANCELLED)

    def test_retry_resets_run_fields(self):
        job = Job(plugin_id="p1")
        job.transition(JobState.CLAIMED, NOW)
        job.worker_id = "worker-1"
        job.transition(JobState.RUNNING, NOW)
        job.items_processed = 4
        job.items_total = 10
        job.error = {"code": "FETCH_ERROR"}
        job.transition(JobState.FAILED, NOW)

        job.transition(JobState.QUEUED, NOW)

        assert job.state == JobState.QUEUED
        assert job.worker_id is None
        assert job.started_at is None
        assert job.finished_at is None
        assert job.items_processed == 0
        assert job.items_total is None
        # The last error stays visible until the job succeeds
        assert job.error == {"code": "FETCH_ERROR"}

    def test_success_clears_error(self):
        job = Job(plugin_id="p1", state=JobState.RUNNING, error={"code": "X"})

        job.transition(JobState.SUCCEEDED, NOW)

        assert job.error is None

    def test_copy_is_detached(self):
        job = Job(plugin_id="p1")
        clone = job.copy()

        clone.transition(JobState.CLAIMED, NOW)

        assert job.state == JobState.QUEUED
        assert clone.id == job.id

    def test_to_dict(self):
        job = Job(plugin_id="p1", priority=JobPriority.HIGH, trigger=JobTrigger.MANUAL, created_at=NOW)

        data = job.to_dict()

        assert data["priority"] == "high"
        assert data["trigger"] == "manual"
        assert data["state"] == "queued"
        assert data["created_at"] == "2025-01-06T12:00:00"
        assert data["started_at"] is None
