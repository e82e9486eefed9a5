"""Free-text question answering over an analyzed commit corpus.

Commits are ranked by a keyword-weighted relevance score, the best matches
are handed to the insight generator, and a templated answer built from the
keyword matches is used whenever the generator cannot answer.
"""

import logging
import re
import uuid

from models.analysis import (
    AnalysisJob,
    AnalysisResults,
    CommitRecord,
    QueryResult,
    RelatedCommit,
    TimelineEvent,
)
from services.insight_generator import InsightGenerator, call_with_timeout
from utils.errors import CollaboratorError

logger = logging.getLogger(__name__)

MESSAGE_WEIGHT = 3
BODY_WEIGHT = 2
FILE_WEIGHT = 1
MIN_KEYWORD_LENGTH = 4
DEFAULT_TOP_N = 5

_TOKEN = re.compile(r"[a-z0-9]+")


def question_keywords(question: str) -> list[str]:
    """Distinct lower-cased tokens longer than three characters, in question order."""
    seen: list[str] = []
    for token in _TOKEN.findall(question.lower()):
        if len(token) >= MIN_KEYWORD_LENGTH and token not in seen:
            seen.append(token)
    return seen


def score_commit(commit: CommitRecord, keywords: list[str]) -> int:
    """+3 per keyword in the message, +2 in the body, +1 in any changed file path."""
    message = commit.message.lower()
    body = commit.body.lower()
    paths = [path.lower() for path in commit.files]

    score = 0
    for keyword in keywords:
        if keyword in message:
            score += MESSAGE_WEIGHT
        if keyword in body:
            score += BODY_WEIGHT
        if any(keyword in path for path in paths):
            score += FILE_WEIGHT
    return score


def confidence(commit: CommitRecord, keywords: list[str]) -> float:
    """Display confidence in [0, 1]: 0.2 per keyword found in the message."""
    message = commit.message.lower()
    matched = sum(1 for keyword in keywords if keyword in message)
    return min(1.0, 0.2 * matched)


def rank_commits(commits: list[CommitRecord], question: str) -> list[tuple[CommitRecord, int]]:
    """Score every commit, drop zero scores, and sort by score (desc, stable)."""
    keywords = question_keywords(question)
    scored = [(commit, score_commit(commit, keywords)) for commit in commits]
    ranked = [(commit, score) for commit, score in scored if score > 0]
    ranked.sort(key=lambda item: item[1], reverse=True)
    return ranked


def build_timeline(commits: list[CommitRecord]) -> list[TimelineEvent]:
    """Ascending-by-date events, one per commit."""
    return [
        TimelineEvent(date=commit.date.date().isoformat(), event=commit.message, commit=commit.hash)
        for commit in sorted(commits, key=lambda c: c.date)
    ]


def fallback_answer(question: str, results: AnalysisResults, ranked: list[tuple[CommitRecord, int]]) -> str:
    """Deterministic templated answer built purely from keyword matches."""
    if not results.commits:
        return (
            "No commit history is available for this analysis, "
            "so there is nothing to answer from yet."
        )

    keywords = question_keywords(question)
    if not ranked:
        if not keywords:
            return "The question has no searchable keywords (words longer than three characters)."
        return (
            f"No commits matched the keywords {', '.join(keywords)} "
            f"across {len(results.commits)} analyzed commits."
        )

    top, _ = ranked[0]
    matched = [commit for commit, _ in ranked]
    first = min(matched, key=lambda c: c.date)
    last = max(matched, key=lambda c: c.date)
    authors = sorted({commit.author for commit in matched})

    answer = (
        f"Found {len(matched)} commits related to {', '.join(keywords)}. "
        f"The most relevant is {top.short_hash} by {top.author} on {top.date.date().isoformat()}: "
        f"\"{top.message}\"."
    )
    if len(matched) > 1:
        answer += (
            f" Related work spans {first.date.date().isoformat()} to {last.date.date().isoformat()}"
            f" and involves {', '.join(authors)}."
        )
    return answer


def _analysis_summary(job: AnalysisJob, results: AnalysisResults) -> dict:
    return {
        "repo_url": job.repo_url,
        "branch": job.effective_branch,
        "metrics": job.metrics.model_dump(),
        "features": [feature.name for feature in results.features[:10]],
    }


def answer_query(
    job: AnalysisJob,
    results: AnalysisResults,
    question: str,
    generator: InsightGenerator,
    top_n: int = DEFAULT_TOP_N,
    timeout: float = 20.0,
) -> QueryResult:
    """
    Answer a question against a completed analysis.

    Never raises because of the insight generator: any CollaboratorError
    produces the templated keyword answer.
    """
    keywords = question_keywords(question)
    ranked = rank_commits(results.commits, question)
    top = ranked[:top_n]
    top_commits = [commit for commit, _ in top]

    answer_source = "fallback"
    if results.commits:
        try:
            answer = call_with_timeout(
                generator.answer_question,
                timeout,
                question,
                top_commits,
                _analysis_summary(job, results),
            )
            answer_source = "insight_generator"
        except CollaboratorError as exc:
            logger.warning("Query fallback for analysis %s: %s", job.id, exc)
            answer = fallback_answer(question, results, ranked)
    else:
        answer = fallback_answer(question, results, ranked)

    return QueryResult(
        id=str(uuid.uuid4()),
        analysis_id=job.id,
        question=question,
        answer=answer,
        answer_source=answer_source,
        related_commits=[
            RelatedCommit(
                hash=commit.hash,
                author=commit.author,
                date=commit.date.date().isoformat(),
                message=commit.message,
                files=list(commit.files),
                score=score,
                relevance=confidence(commit, keywords),
            )
            for commit, score in top
        ],
        timeline=build_timeline(top_commits),
    )
