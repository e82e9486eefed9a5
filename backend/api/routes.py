"""API route definitions for the codebase time machine."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from models.analysis import (
    AnalysisJob,
    AnalysisListResponse,
    AnalysisResults,
    CommitsResponse,
    ContributorView,
    CreateAnalysisResponse,
    EvolutionResponse,
    FeaturesResponse,
    OwnershipResponse,
    QueryResult,
)
from services.aggregation import DEFAULT_COMMIT_LIMIT, filter_commits, ownership_view, summarize_commits
from services.analysis_worker import AnalysisRunner
from services.insight_generator import build_insight_generator
from services.job_registry import get_registry
from services.query_engine import answer_query
from utils.errors import NotFoundError, ResultsUnavailableError, ValidationError
from utils.time_machine_config import load_config

router = APIRouter(prefix="/api/codebase-time-machine")

# Thread pool for query answering (blocking insight generator calls)
executor = ThreadPoolExecutor(max_workers=2)

_runner: AnalysisRunner | None = None


def get_runner() -> AnalysisRunner:
    """Process-wide runner executing analysis jobs in the background."""
    global _runner
    if _runner is None:
        _runner = AnalysisRunner(get_registry())
    return _runner


def _load_results(job_id: str) -> tuple[AnalysisJob, AnalysisResults]:
    try:
        return get_registry().get_results(job_id)
    except ResultsUnavailableError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/health")
async def health_check() -> dict:
    """
    Lightweight endpoint for uptime checks.

    Returns:
        dict: Health status payload.
    """
    return {"status": "healthy"}


# ============================================================================
# ANALYSIS JOB ENDPOINTS
# ============================================================================


class AnalyzeRepoRequest(BaseModel):
    """Request model for the analyze-repo endpoint."""

    repo_url: str | None = None
    branch: str | None = "main"
    max_commits: int | None = None
    time_range: str | None = "all"


@router.post("/analyze-repo", response_model=CreateAnalysisResponse)
async def analyze_repo(payload: AnalyzeRepoRequest) -> CreateAnalysisResponse:
    """
    Register a repository analysis and start it in the background.

    The response returns immediately with the queued job; poll
    GET /analysis/{job_id} for progress.

    Request body:
        {
            "repo_url": "https://github.com/user/repo",
            "branch": "main",          // optional, falls back to common defaults
            "max_commits": 1000,       // optional
            "time_range": "last-year"  // optional: last-month | last-6-months | last-year | all
        }

    Raises:
        HTTPException: 400 if the URL is missing/unsupported or parameters are invalid.
    """
    try:
        job = get_registry().create_job(
            payload.repo_url,
            branch=payload.branch,
            max_commits=payload.max_commits,
            time_range=payload.time_range,
            config=load_config(),
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    get_runner().submit(job.id)
    return CreateAnalysisResponse(job_id=job.id, status=job.status, analysis=job)


@router.get("/analyses", response_model=AnalysisListResponse)
async def list_analyses() -> AnalysisListResponse:
    """Retrieve every analysis job known to this process, newest first."""
    return AnalysisListResponse(analyses=get_registry().list_jobs())


@router.get("/analysis/{job_id}", response_model=AnalysisJob)
async def get_analysis(job_id: str) -> AnalysisJob:
    """
    Retrieve status, metrics, and summary of one analysis.

    Raises:
        HTTPException: 404 if the job is unknown.
    """
    try:
        return get_registry().get_job(job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ============================================================================
# RESULT ENDPOINTS
# ============================================================================


@router.get("/evolution/{job_id}", response_model=EvolutionResponse)
async def get_evolution(job_id: str) -> EvolutionResponse:
    """Monthly complexity trend plus evolution insights."""
    job, results = _load_results(job_id)
    return EvolutionResponse(
        analysis_id=job.id,
        time_range=job.time_range,
        data=results.complexity_trend,
        insights=results.insights,
    )


@router.get("/ownership/{job_id}", response_model=OwnershipResponse)
async def get_ownership(job_id: str) -> OwnershipResponse:
    """Contributor statistics and per-file ownership percentages."""
    job, results = _load_results(job_id)
    return OwnershipResponse(
        analysis_id=job.id,
        contributors=[
            ContributorView(
                name=stat.name,
                email=stat.email,
                commits=stat.commits,
                lines_added=stat.lines_added,
                lines_removed=stat.lines_removed,
                files_owned=stat.files_owned,
                primary_areas=stat.primary_areas,
            )
            for stat in results.contributors
        ],
        file_ownership=[ownership_view(entry) for entry in results.file_ownership],
    )


@router.get("/features/{job_id}", response_model=FeaturesResponse)
async def get_features(job_id: str) -> FeaturesResponse:
    """Business features and architectural decisions extracted from the history."""
    job, results = _load_results(job_id)
    return FeaturesResponse(analysis_id=job.id, features=results.features, decisions=results.decisions)


@router.get("/commits/{job_id}", response_model=CommitsResponse)
async def get_commits(
    job_id: str,
    author: str | None = None,
    date: str | None = None,
    file: str | None = None,
    limit: int = Query(DEFAULT_COMMIT_LIMIT, ge=1, le=1000),
) -> CommitsResponse:
    """
    Commit listing with optional filters.

    The summary describes every commit matching the filters; `limit` only
    caps the returned list.
    """
    job, results = _load_results(job_id)
    matched = filter_commits(results.commits, author=author, date=date, file=file)
    return CommitsResponse(
        analysis_id=job.id,
        commits=matched[:limit],
        summary=summarize_commits(matched),
    )


class QueryRequest(BaseModel):
    """Request model for the query endpoint."""

    analysis_id: str
    question: str


@router.post("/query", response_model=QueryResult)
async def query_analysis(payload: QueryRequest) -> QueryResult:
    """
    Answer a free-text question about the analyzed history.

    Falls back to a keyword-derived answer when the insight generator is
    unavailable, so a completed analysis always gets an answer.

    Raises:
        HTTPException: 400 for an empty question, 404 unknown analysis,
            409 analysis not completed or superseded.
    """
    question = payload.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="Question is required")

    job, results = _load_results(payload.analysis_id)
    config = load_config()
    generator = build_insight_generator(config)

    loop = asyncio.get_event_loop()
    result = await loop.run_in_executor(
        executor,
        lambda: answer_query(job, results, question, generator, timeout=config.insight_timeout_seconds),
    )
    get_registry().record_query(job.id, result)
    return result
