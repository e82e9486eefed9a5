"""In-memory, lock-guarded registry of analysis jobs and their results.

This is a process-lifetime store. Every write goes through one RLock so a
concurrent reader never observes a half-applied update, and readers always
receive copies of job records. Status writes are compare-and-swap: the
caller names the status it expects to replace.
"""

import logging
import threading
import uuid
from datetime import datetime, timezone

from models.analysis import (
    PIPELINE_ORDER,
    TIME_RANGES,
    AnalysisJob,
    AnalysisResults,
    JobMetrics,
    JobStatus,
    JobSummary,
    QueryResult,
)
from utils.errors import (
    CAUSE_SUPERSEDED,
    InvalidTransitionError,
    NotFoundError,
    ResultsUnavailableError,
    ValidationError,
)
from utils.git_parser import normalize_repo_url, redact_repo_url, validate_repo_url
from utils.time_machine_config import TimeMachineConfig, load_config

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_allowed_transition(current: JobStatus, new: JobStatus) -> bool:
    """Forward by exactly one stage, or to FAILED from any non-terminal stage."""
    if current.is_terminal:
        return False
    if new == JobStatus.FAILED:
        return True
    return PIPELINE_ORDER.index(new) == PIPELINE_ORDER.index(current) + 1


def validate_job_request(
    repo_url: str | None,
    branch: str | None,
    max_commits: int | None,
    time_range: str | None,
    config: TimeMachineConfig,
) -> tuple[str, str | None, int, str]:
    """
    Validate and normalize the inputs of a new analysis.

    Returns:
        tuple: (repo_url, branch, max_commits, time_range) with defaults applied.

    Raises:
        ValidationError: On a missing/unsupported URL, bad commit bound, or unknown time range.
    """
    url = validate_repo_url(repo_url, config)

    if max_commits is None:
        max_commits = config.default_max_commits
    if max_commits < 1 or max_commits > config.max_commits_limit:
        raise ValidationError(f"max_commits must be between 1 and {config.max_commits_limit}, got {max_commits}")

    time_range = time_range or "all"
    if time_range not in TIME_RANGES:
        raise ValidationError(f"Invalid time_range: {time_range}. Must be one of: {', '.join(TIME_RANGES)}.")

    branch = branch.strip() if branch and branch.strip() else None
    return url, branch, max_commits, time_range


class JobRegistry:
    """Shared store tying jobs, their state machine, and cached results together."""

    def __init__(self):
        self._lock = threading.RLock()
        self._jobs: dict[str, AnalysisJob] = {}
        self._results: dict[str, AnalysisResults] = {}
        self._latest_by_repo: dict[str, str] = {}

    def _require(self, job_id: str) -> AnalysisJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Analysis not found: {job_id}")
        return job

    def create_job(
        self,
        repo_url: str | None,
        branch: str | None = None,
        max_commits: int | None = None,
        time_range: str | None = None,
        config: TimeMachineConfig | None = None,
    ) -> AnalysisJob:
        """
        Validate the request and register a queued job.

        A prior job for the same repository loses its cached results (its
        status record stays queryable) and is marked superseded.
        """
        config = config or load_config()
        url, branch, max_commits, time_range = validate_job_request(
            repo_url, branch, max_commits, time_range, config
        )
        job = AnalysisJob(
            id=str(uuid.uuid4()),
            repo_url=url,
            branch=branch,
            max_commits=max_commits,
            time_range=time_range,
            started_at=_now(),
        )
        key = normalize_repo_url(url)

        with self._lock:
            previous_id = self._latest_by_repo.get(key)
            if previous_id is not None:
                self._results.pop(previous_id, None)
                previous = self._jobs[previous_id]
                self._jobs[previous_id] = previous.model_copy(update={"superseded_by": job.id})
                logger.info("Analysis %s supersedes %s for %s; cached results purged", job.id, previous_id, key)
            self._jobs[job.id] = job
            self._latest_by_repo[key] = job.id

        logger.info("Created analysis job %s for %s", job.id, redact_repo_url(url))
        return job.model_copy(deep=True)

    def get_job(self, job_id: str) -> AnalysisJob:
        with self._lock:
            return self._require(job_id).model_copy(deep=True)

    def list_jobs(self) -> list[AnalysisJob]:
        """All jobs, most recently started first."""
        with self._lock:
            # Reverse insertion order so equal timestamps still list newest first
            jobs = [job.model_copy(deep=True) for job in reversed(self._jobs.values())]
        return sorted(jobs, key=lambda j: j.started_at, reverse=True)

    def is_latest(self, job_id: str) -> bool:
        """True while no newer job exists for the same repository."""
        with self._lock:
            job = self._require(job_id)
            return self._latest_by_repo.get(normalize_repo_url(job.repo_url)) == job_id

    def transition(self, job_id: str, expected: JobStatus, new: JobStatus, **fields) -> AnalysisJob:
        """
        Compare-and-swap the job status.

        Raises:
            InvalidTransitionError: If the current status is not `expected` or
                the move skips a stage / leaves a terminal state.
        """
        with self._lock:
            job = self._require(job_id)
            if job.status != expected:
                raise InvalidTransitionError(
                    f"Job {job_id} is {job.status.value}, expected {expected.value}"
                )
            if not is_allowed_transition(expected, new):
                raise InvalidTransitionError(
                    f"Job {job_id} cannot move from {expected.value} to {new.value}"
                )
            update = dict(fields, status=new)
            if new.is_terminal:
                update["completed_at"] = _now()
            updated = job.model_copy(update=update)
            self._jobs[job_id] = updated

        logger.info("Job %s: %s -> %s", job_id, expected.value, new.value)
        return updated.model_copy(deep=True)

    def update_job(self, job_id: str, **fields) -> AnalysisJob:
        """Guarded write of non-status fields (effective branch, skipped count, ...)."""
        if "status" in fields:
            raise ValueError("Use transition() to change job status")
        with self._lock:
            job = self._require(job_id)
            if job.status.is_terminal:
                raise InvalidTransitionError(f"Job {job_id} is {job.status.value} and can no longer change")
            updated = job.model_copy(update=fields)
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    def complete_job(
        self,
        job_id: str,
        results: AnalysisResults,
        metrics: JobMetrics,
        summary: JobSummary,
    ) -> bool:
        """
        Commit results and mark the job completed.

        The check that the job is still the latest for its repository happens
        under the same lock as the write, so a superseded worker can never
        resurrect purged results.

        Returns:
            bool: False if the job was superseded (results discarded, job failed).
        """
        with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.AGGREGATING:
                raise InvalidTransitionError(
                    f"Job {job_id} is {job.status.value}, expected {JobStatus.AGGREGATING.value}"
                )

            key = normalize_repo_url(job.repo_url)
            if self._latest_by_repo.get(key) != job_id:
                newer = self._latest_by_repo.get(key)
                self._jobs[job_id] = job.model_copy(
                    update={
                        "status": JobStatus.FAILED,
                        "completed_at": _now(),
                        "error": f"Superseded by newer analysis {newer}; results discarded",
                        "error_cause": CAUSE_SUPERSEDED,
                    }
                )
                logger.info("Discarded results of superseded job %s (newer: %s)", job_id, newer)
                return False

            self._results[job_id] = results
            self._jobs[job_id] = job.model_copy(
                update={
                    "status": JobStatus.COMPLETED,
                    "completed_at": _now(),
                    "metrics": metrics,
                    "summary": summary,
                }
            )

        logger.info("Job %s completed with %d commits", job_id, metrics.total_commits)
        return True

    def fail_job(self, job_id: str, error: str, cause: str, **fields) -> bool:
        """Mark a job failed. Returns False (no-op) if it already reached a terminal state."""
        with self._lock:
            job = self._require(job_id)
            if job.status.is_terminal:
                logger.warning("Ignoring failure for terminal job %s: %s", job_id, error)
                return False
            self._jobs[job_id] = job.model_copy(
                update=dict(
                    fields,
                    status=JobStatus.FAILED,
                    completed_at=_now(),
                    error=error,
                    error_cause=cause,
                )
            )

        logger.error("Job %s failed (%s): %s", job_id, cause, error)
        return True

    def get_results(self, job_id: str) -> tuple[AnalysisJob, AnalysisResults]:
        """
        Fetch a job together with its cached results.

        The returned results object is shared and must be treated as read-only.

        Raises:
            NotFoundError: Unknown job id.
            ResultsUnavailableError: Job still running, failed, or superseded.
        """
        with self._lock:
            job = self._require(job_id)
            results = self._results.get(job_id)
            if results is None:
                if job.superseded_by is not None:
                    message = f"Results of analysis {job_id} were replaced by analysis {job.superseded_by}"
                elif job.status == JobStatus.FAILED:
                    message = f"Analysis {job_id} failed: {job.error}"
                else:
                    message = f"Analysis {job_id} is still {job.status.value}"
                raise ResultsUnavailableError(message, status=job.status.value)
            return job.model_copy(deep=True), results

    def record_query(self, job_id: str, query: QueryResult) -> bool:
        """Append a query to the job's results; skipped if the results were purged meanwhile."""
        with self._lock:
            results = self._results.get(job_id)
            if results is None:
                return False
            self._results[job_id] = results.model_copy(update={"queries": [*results.queries, query]})
            return True


# Process-wide registry used by the API routes
_REGISTRY = JobRegistry()


def get_registry() -> JobRegistry:
    return _REGISTRY
