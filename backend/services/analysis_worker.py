"""Background execution of analysis jobs.

A job runs on a worker thread, decoupled from the request that created it:
acquisition -> extraction -> aggregation -> feature/decision extraction.
Every state change goes through the JobRegistry. Acquisition and the
history walk share one deadline; insight generator calls have their own
timeout and always fall back locally.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path

from models.analysis import AnalysisJob, AnalysisResults, CommitRecord, JobMetrics, JobStatus, JobSummary
from services.aggregation import (
    build_complexity_trend,
    build_contributor_stats,
    build_file_ownership,
    build_metrics,
    build_summary,
    local_insights,
    stats_for_insights,
)
from services.feature_extractor import extract_decisions, extract_features
from services.insight_generator import InsightGenerator, build_insight_generator, call_with_timeout
from services.job_registry import JobRegistry
from utils.errors import (
    CAUSE_EMPTY,
    CAUSE_INTERNAL,
    CAUSE_TIMEOUT,
    AcquisitionError,
    AnalysisTimeoutError,
    CollaboratorError,
)
from utils.git_parser import (
    ExtractionResult,
    check_accessible,
    clone_with_fallback,
    extract_commits,
    redact_repo_url,
    remove_work_dir,
    since_for_time_range,
)
from utils.time_machine_config import TimeMachineConfig, load_config

logger = logging.getLogger(__name__)


def _acquire_and_extract(
    job: AnalysisJob,
    registry: JobRegistry,
    config: TimeMachineConfig,
    deadline: float,
) -> ExtractionResult:
    """Clone and walk the history; the working directory is removed afterwards either way."""
    work_dir = Path(config.workspace_dir) / job.id
    try:
        try:
            check_accessible(job.repo_url, config.git_timeout_seconds, deadline)
        except AcquisitionError as exc:
            if exc.cause != CAUSE_EMPTY:
                raise
            logger.info("Repository %s has no commits; completing with empty results", redact_repo_url(job.repo_url))
            registry.transition(job.id, JobStatus.CLONING, JobStatus.EXTRACTING)
            return ExtractionResult()

        clone = clone_with_fallback(
            job.repo_url,
            job.branch,
            config.workspace_dir,
            job.id,
            config.git_timeout_seconds,
            deadline,
        )
        registry.transition(
            job.id,
            JobStatus.CLONING,
            JobStatus.EXTRACTING,
            effective_branch=clone.effective_branch,
            attempted_strategies=clone.attempts,
        )

        since = since_for_time_range(job.time_range)
        extraction = extract_commits(clone.path, job.max_commits, since, deadline)
        if extraction.skipped:
            logger.warning("Job %s skipped %d commits during extraction", job.id, extraction.skipped)
        return extraction
    finally:
        remove_work_dir(work_dir)


def _insights(
    trend,
    contributors,
    metrics: JobMetrics,
    generator: InsightGenerator,
    timeout: float,
) -> list[str]:
    if not trend:
        return local_insights(trend, contributors)
    try:
        insights = call_with_timeout(
            generator.generate_insights, timeout, stats_for_insights(trend, contributors, metrics)
        )
    except CollaboratorError as exc:
        logger.warning("Insight generation fallback: %s", exc)
        return local_insights(trend, contributors)
    return insights or local_insights(trend, contributors)


def build_results(
    job_id: str,
    commits: list[CommitRecord],
    config: TimeMachineConfig,
    generator: InsightGenerator,
) -> tuple[AnalysisResults, JobMetrics, JobSummary]:
    """Run every aggregation over the extracted commits."""
    contributors = build_contributor_stats(commits)
    ownership = build_file_ownership(commits)
    trend = build_complexity_trend(commits, config.complexity)
    metrics = build_metrics(commits)
    features = extract_features(
        commits,
        generator,
        window_days=config.cluster_window_days,
        timeout=config.insight_timeout_seconds,
    )
    decisions = extract_decisions(commits)
    insights = _insights(trend, contributors, metrics, generator, config.insight_timeout_seconds)

    results = AnalysisResults(
        job_id=job_id,
        commits=commits,
        contributors=contributors,
        file_ownership=ownership,
        complexity_trend=trend,
        insights=insights,
        features=features,
        decisions=decisions,
    )
    return results, metrics, build_summary(contributors, ownership, features)


def run_analysis_job(
    job_id: str,
    registry: JobRegistry,
    config: TimeMachineConfig,
    generator: InsightGenerator,
) -> None:
    """
    Execute one analysis job to a terminal state.

    Failures are recorded on the job rather than raised; the worker thread
    never propagates an exception.
    """
    job = registry.get_job(job_id)
    deadline = time.monotonic() + config.git_timeout_seconds

    try:
        registry.transition(job_id, JobStatus.QUEUED, JobStatus.CLONING)
        extraction = _acquire_and_extract(job, registry, config, deadline)
        registry.transition(
            job_id,
            JobStatus.EXTRACTING,
            JobStatus.AGGREGATING,
            skipped_commits=extraction.skipped,
        )
        results, metrics, summary = build_results(job_id, extraction.commits, config, generator)
        registry.complete_job(job_id, results, metrics, summary)
    except AcquisitionError as exc:
        registry.fail_job(job_id, str(exc), exc.cause, attempted_strategies=exc.attempts)
    except AnalysisTimeoutError as exc:
        registry.fail_job(job_id, str(exc), CAUSE_TIMEOUT)
    except Exception as exc:
        logger.exception("Analysis job %s crashed", job_id)
        registry.fail_job(job_id, f"Unexpected error during analysis: {exc}", CAUSE_INTERNAL)


class AnalysisRunner:
    """Owns the worker pool that executes analysis jobs in the background.

    Config and generator are resolved when a job is submitted unless fixed
    at construction time.
    """

    def __init__(
        self,
        registry: JobRegistry,
        config: TimeMachineConfig | None = None,
        generator: InsightGenerator | None = None,
        max_workers: int | None = None,
    ):
        self.registry = registry
        self._config = config
        self._generator = generator
        workers = max_workers or (config.max_workers if config else load_config().max_workers)
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="analysis")
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()

    def submit(self, job_id: str) -> Future:
        config = self._config or load_config()
        generator = self._generator or build_insight_generator(config)
        future = self._executor.submit(run_analysis_job, job_id, self.registry, config, generator)
        with self._lock:
            self._futures[job_id] = future
        future.add_done_callback(lambda _: self._forget(job_id))
        return future

    def _forget(self, job_id: str) -> None:
        with self._lock:
            self._futures.pop(job_id, None)

    def wait(self, job_id: str, timeout: float | None = None) -> AnalysisJob:
        """Block until a submitted job finishes (tests and CLI use only)."""
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.registry.get_job(job_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
