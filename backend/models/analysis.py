"""Data models for repository history analysis.

AnalysisJob tracks one analysis through queued -> cloning -> extracting ->
aggregating -> completed (or failed from any stage). CommitRecord is the
immutable unit every aggregate is folded from. Response models returned by
the API live at the bottom of the module.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Lifecycle states of an AnalysisJob."""

    QUEUED = "queued"
    CLONING = "cloning"
    EXTRACTING = "extracting"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Forward-only pipeline order; FAILED is reachable from any non-terminal stage.
PIPELINE_ORDER = [
    JobStatus.QUEUED,
    JobStatus.CLONING,
    JobStatus.EXTRACTING,
    JobStatus.AGGREGATING,
    JobStatus.COMPLETED,
]

TIME_RANGES = ("last-month", "last-6-months", "last-year", "all")


class CommitRecord(BaseModel):
    """One extracted commit. Identity is the hash."""

    model_config = ConfigDict(frozen=True)

    hash: str
    author: str
    author_email: str = ""
    date: datetime  # author date, keeps the author's UTC offset
    message: str  # subject line
    body: str = ""
    files: tuple[str, ...] = ()
    lines_added: int = 0
    lines_removed: int = 0

    @property
    def lines_changed(self) -> int:
        return self.lines_added + self.lines_removed

    @property
    def short_hash(self) -> str:
        return self.hash[:8]


class CommitTimeRange(BaseModel):
    first_commit: str | None = None
    last_commit: str | None = None


class JobMetrics(BaseModel):
    """Snapshot of headline numbers, filled when the job completes."""

    total_commits: int = 0
    total_files: int = 0
    contributors: int = 0
    time_range: CommitTimeRange = Field(default_factory=CommitTimeRange)


class JobSummary(BaseModel):
    most_active_files: list[str] = Field(default_factory=list)
    top_contributors: list[str] = Field(default_factory=list)
    major_features: list[str] = Field(default_factory=list)


class AnalysisJob(BaseModel):
    """Represents one repository analysis request through its lifecycle."""

    id: str
    repo_url: str
    branch: str | None = None  # requested branch
    effective_branch: str | None = None  # branch that was actually cloned
    max_commits: int
    time_range: str = "all"
    status: JobStatus = JobStatus.QUEUED
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None
    error_cause: str | None = None  # see utils.errors CAUSE_* constants
    attempted_strategies: list[str] = Field(default_factory=list)
    skipped_commits: int = 0
    superseded_by: str | None = None
    metrics: JobMetrics = Field(default_factory=JobMetrics)
    summary: JobSummary = Field(default_factory=JobSummary)


class ContributorStat(BaseModel):
    name: str
    email: str = ""
    commits: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    files: set[str] = Field(default_factory=set, exclude=True)
    primary_areas: list[str] = Field(default_factory=list)

    @property
    def files_owned(self) -> int:
        return len(self.files)


class FileOwnershipEntry(BaseModel):
    file: str
    authors: dict[str, int] = Field(default_factory=dict)  # author -> commits touching file
    last_modified: str | None = None

    @property
    def total_commits(self) -> int:
        return sum(self.authors.values())


class ComplexityPoint(BaseModel):
    date: str  # YYYY-MM
    commit_count: int
    files_changed: int
    complexity: float  # 0..1
    contributors: int


class FeatureTimeRange(BaseModel):
    start: str | None = None
    end: str | None = None


class Feature(BaseModel):
    name: str
    description: str
    commits: list[str] = Field(default_factory=list)
    time_range: FeatureTimeRange = Field(default_factory=FeatureTimeRange)
    contributors: list[str] = Field(default_factory=list)
    business_value: str = ""
    complexity: str = "low"  # "low" | "medium" | "high"


class Decision(BaseModel):
    date: str
    decision: str
    rationale: str
    impact: str = "low"  # "low" | "medium" | "high"
    related_commits: list[str] = Field(default_factory=list)


class RelatedCommit(BaseModel):
    hash: str
    author: str
    date: str
    message: str
    files: list[str] = Field(default_factory=list)
    score: int  # keyword-weighted relevance score (sort key)
    relevance: float  # bounded 0..1 confidence for display


class TimelineEvent(BaseModel):
    date: str
    event: str
    commit: str


class QueryResult(BaseModel):
    id: str
    analysis_id: str
    question: str
    answer: str
    answer_source: str = "fallback"  # "insight_generator" | "fallback"
    related_commits: list[RelatedCommit] = Field(default_factory=list)
    timeline: list[TimelineEvent] = Field(default_factory=list)


class AnalysisResults(BaseModel):
    """Cached results of a completed job; purged when the repo is resubmitted."""

    job_id: str
    commits: list[CommitRecord] = Field(default_factory=list)
    contributors: list[ContributorStat] = Field(default_factory=list)
    file_ownership: list[FileOwnershipEntry] = Field(default_factory=list)
    complexity_trend: list[ComplexityPoint] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)
    features: list[Feature] = Field(default_factory=list)
    decisions: list[Decision] = Field(default_factory=list)
    queries: list[QueryResult] = Field(default_factory=list)


# ============================================================================
# API RESPONSE MODELS
# ============================================================================


class CreateAnalysisResponse(BaseModel):
    message: str = "Repository analysis started"
    job_id: str
    status: JobStatus
    analysis: AnalysisJob


class AnalysisListResponse(BaseModel):
    analyses: list[AnalysisJob]


class EvolutionResponse(BaseModel):
    analysis_id: str
    time_range: str
    data: list[ComplexityPoint]
    insights: list[str]


class ContributorView(BaseModel):
    name: str
    email: str
    commits: int
    lines_added: int
    lines_removed: int
    files_owned: int
    primary_areas: list[str]


class FileOwnershipView(BaseModel):
    file: str
    primary_owner: str
    ownership_percentage: float
    last_modified: str | None = None
    contributors: dict[str, float]  # author -> percentage of the file's commits


class OwnershipResponse(BaseModel):
    analysis_id: str
    contributors: list[ContributorView]
    file_ownership: list[FileOwnershipView]


class FeaturesResponse(BaseModel):
    analysis_id: str
    features: list[Feature]
    decisions: list[Decision]


class CommitSummary(BaseModel):
    total_commits: int = 0
    total_authors: int = 0
    average_commit_size: int = 0
    most_active_weekday: str | None = None


class CommitsResponse(BaseModel):
    analysis_id: str
    commits: list[CommitRecord]
    summary: CommitSummary
