"""Tests for the analysis job registry and its state machine."""

import threading

import pytest

from models.analysis import AnalysisResults, JobMetrics, JobStatus, JobSummary, QueryResult
from services.job_registry import JobRegistry, is_allowed_transition
from utils.errors import (
    CAUSE_NOT_FOUND,
    CAUSE_SUPERSEDED,
    InvalidTransitionError,
    NotFoundError,
    ResultsUnavailableError,
    ValidationError,
)
from utils.time_machine_config import TimeMachineConfig

REPO = "https://github.com/octocat/hello-world"


@pytest.fixture
def config():
    return TimeMachineConfig(default_max_commits=500, max_commits_limit=2000)


@pytest.fixture
def registry():
    return JobRegistry()


def _to_aggregating(registry, job_id):
    registry.transition(job_id, JobStatus.QUEUED, JobStatus.CLONING)
    registry.transition(job_id, JobStatus.CLONING, JobStatus.EXTRACTING)
    registry.transition(job_id, JobStatus.EXTRACTING, JobStatus.AGGREGATING)


def _complete(registry, job_id, total=3):
    _to_aggregating(registry, job_id)
    return registry.complete_job(
        job_id,
        AnalysisResults(job_id=job_id),
        JobMetrics(total_commits=total),
        JobSummary(top_contributors=["Alice"]),
    )


# ============================================================================
# CREATION / VALIDATION
# ============================================================================


def test_create_job_applies_defaults(registry, config):
    job = registry.create_job(REPO, config=config)

    assert job.status == JobStatus.QUEUED
    assert job.max_commits == 500
    assert job.time_range == "all"
    assert job.branch is None
    assert job.started_at is not None
    assert registry.get_job(job.id) == job


@pytest.mark.parametrize(
    "kwargs,message",
    [
        ({"repo_url": None}, "Repository URL is required"),
        ({"repo_url": "https://example.org/a/b"}, "Unsupported repository host"),
        ({"repo_url": REPO, "max_commits": 0}, "max_commits must be between 1 and 2000"),
        ({"repo_url": REPO, "max_commits": 2001}, "max_commits must be between 1 and 2000"),
        ({"repo_url": REPO, "time_range": "yesterday"}, "Invalid time_range"),
    ],
)
def test_create_job_validation(registry, config, kwargs, message):
    with pytest.raises(ValidationError, match=message):
        registry.create_job(config=config, **kwargs)
    assert registry.list_jobs() == []


def test_get_job_unknown(registry):
    with pytest.raises(NotFoundError):
        registry.get_job("missing")


def test_returned_jobs_are_copies(registry, config):
    job = registry.create_job(REPO, config=config)
    copy = registry.get_job(job.id)
    copy.attempted_strategies.append("tampered")
    assert registry.get_job(job.id).attempted_strategies == []


def test_list_jobs_newest_first(registry, config):
    first = registry.create_job(REPO, config=config)
    second = registry.create_job("https://gitlab.com/group/other", config=config)
    assert [job.id for job in registry.list_jobs()] == [second.id, first.id]


# ============================================================================
# STATE MACHINE
# ============================================================================


def test_allowed_transitions():
    assert is_allowed_transition(JobStatus.QUEUED, JobStatus.CLONING)
    assert is_allowed_transition(JobStatus.AGGREGATING, JobStatus.COMPLETED)
    assert is_allowed_transition(JobStatus.EXTRACTING, JobStatus.FAILED)
    assert not is_allowed_transition(JobStatus.QUEUED, JobStatus.EXTRACTING)
    assert not is_allowed_transition(JobStatus.EXTRACTING, JobStatus.CLONING)
    assert not is_allowed_transition(JobStatus.COMPLETED, JobStatus.FAILED)
    assert not is_allowed_transition(JobStatus.FAILED, JobStatus.QUEUED)


def test_transition_walks_pipeline(registry, config):
    job = registry.create_job(REPO, config=config)

    cloning = registry.transition(job.id, JobStatus.QUEUED, JobStatus.CLONING)
    assert cloning.status == JobStatus.CLONING
    extracting = registry.transition(
        job.id, JobStatus.CLONING, JobStatus.EXTRACTING, effective_branch="master"
    )
    assert extracting.effective_branch == "master"
    assert extracting.completed_at is None


def test_transition_rejects_skipping_a_stage(registry, config):
    job = registry.create_job(REPO, config=config)
    with pytest.raises(InvalidTransitionError, match="cannot move from queued to extracting"):
        registry.transition(job.id, JobStatus.QUEUED, JobStatus.EXTRACTING)


def test_transition_is_compare_and_swap(registry, config):
    job = registry.create_job(REPO, config=config)
    registry.transition(job.id, JobStatus.QUEUED, JobStatus.CLONING)

    with pytest.raises(InvalidTransitionError, match="is cloning, expected queued"):
        registry.transition(job.id, JobStatus.QUEUED, JobStatus.CLONING)


def test_terminal_state_is_final(registry, config):
    job = registry.create_job(REPO, config=config)
    registry.transition(job.id, JobStatus.QUEUED, JobStatus.FAILED)

    failed = registry.get_job(job.id)
    assert failed.completed_at is not None
    with pytest.raises(InvalidTransitionError):
        registry.transition(job.id, JobStatus.FAILED, JobStatus.QUEUED)
    with pytest.raises(InvalidTransitionError):
        registry.update_job(job.id, skipped_commits=4)
    assert registry.fail_job(job.id, "again", CAUSE_NOT_FOUND) is False


def test_update_job_cannot_change_status(registry, config):
    job = registry.create_job(REPO, config=config)
    with pytest.raises(ValueError):
        registry.update_job(job.id, status=JobStatus.COMPLETED)
    assert registry.update_job(job.id, skipped_commits=2).skipped_commits == 2


def test_fail_job_records_cause(registry, config):
    job = registry.create_job(REPO, config=config)
    registry.transition(job.id, JobStatus.QUEUED, JobStatus.CLONING)

    assert registry.fail_job(job.id, "gone", CAUSE_NOT_FOUND, attempted_strategies=["branch 'main'"])

    failed = registry.get_job(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error == "gone"
    assert failed.error_cause == CAUSE_NOT_FOUND
    assert failed.attempted_strategies == ["branch 'main'"]


def test_complete_job_requires_aggregating(registry, config):
    job = registry.create_job(REPO, config=config)
    with pytest.raises(InvalidTransitionError):
        registry.complete_job(job.id, AnalysisResults(job_id=job.id), JobMetrics(), JobSummary())


# ============================================================================
# RESULTS / SUPERSESSION
# ============================================================================


def test_complete_job_stores_results(registry, config):
    job = registry.create_job(REPO, config=config)
    assert _complete(registry, job.id) is True

    stored, results = registry.get_results(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.metrics.total_commits == 3
    assert stored.summary.top_contributors == ["Alice"]
    assert results.job_id == job.id


def test_results_unavailable_while_running(registry, config):
    job = registry.create_job(REPO, config=config)
    registry.transition(job.id, JobStatus.QUEUED, JobStatus.CLONING)

    with pytest.raises(ResultsUnavailableError, match="still cloning") as excinfo:
        registry.get_results(job.id)
    assert excinfo.value.status == "cloning"


def test_results_unavailable_after_failure(registry, config):
    job = registry.create_job(REPO, config=config)
    registry.fail_job(job.id, "network down", "network")
    with pytest.raises(ResultsUnavailableError, match="failed: network down"):
        registry.get_results(job.id)


def test_resubmission_purges_previous_results(registry, config):
    first = registry.create_job(REPO, config=config)
    _complete(registry, first.id)

    second = registry.create_job(REPO + ".git", config=config)

    with pytest.raises(ResultsUnavailableError, match=f"replaced by analysis {second.id}"):
        registry.get_results(first.id)
    old = registry.get_job(first.id)
    assert old.status == JobStatus.COMPLETED
    assert old.superseded_by == second.id
    assert registry.is_latest(second.id)
    assert not registry.is_latest(first.id)


def test_superseded_worker_cannot_publish_results(registry, config):
    stale = registry.create_job(REPO, config=config)
    _to_aggregating(registry, stale.id)
    fresh = registry.create_job(REPO, config=config)

    published = registry.complete_job(stale.id, AnalysisResults(job_id=stale.id), JobMetrics(), JobSummary())

    assert published is False
    stale_job = registry.get_job(stale.id)
    assert stale_job.status == JobStatus.FAILED
    assert stale_job.error_cause == CAUSE_SUPERSEDED
    with pytest.raises(ResultsUnavailableError):
        registry.get_results(stale.id)

    assert _complete(registry, fresh.id) is True
    registry.get_results(fresh.id)


def test_record_query(registry, config):
    job = registry.create_job(REPO, config=config)
    _complete(registry, job.id)
    query = QueryResult(id="q1", analysis_id=job.id, question="Who?", answer="Alice")

    assert registry.record_query(job.id, query) is True
    assert [q.id for q in registry.get_results(job.id)[1].queries] == ["q1"]

    registry.create_job(REPO, config=config)
    assert registry.record_query(job.id, query) is False


def test_concurrent_jobs_do_not_interfere(registry, config):
    errors = []

    def run(index):
        try:
            job = registry.create_job(f"https://github.com/octocat/repo-{index}", config=config)
            _complete(registry, job.id, total=index)
            stored, _ = registry.get_results(job.id)
            assert stored.metrics.total_commits == index
        except Exception as exc:  # collected and asserted below
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(i,)) for i in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(registry.list_jobs()) == 20
    assert all(job.status == JobStatus.COMPLETED for job in registry.list_jobs())
