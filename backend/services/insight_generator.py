"""Insight generator boundary: natural-language features, insights, and answers.

The generator is an external collaborator. Every call goes through
call_with_timeout() and every response is validated against the tagged
schemas in models.insights; any failure surfaces as CollaboratorError so
callers can switch to their keyword-based fallback.
"""

import json
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable

from openai import OpenAI, OpenAIError
from pydantic import ValidationError as SchemaValidationError

from models.analysis import CommitRecord, Feature, FeatureTimeRange
from models.insights import (
    AnswerResult,
    FeatureDraft,
    FeatureExtractionResult,
    InsightResult,
    insight_response_adapter,
)
from utils.errors import CollaboratorError
from utils.time_machine_config import TimeMachineConfig

logger = logging.getLogger(__name__)

# Dedicated pool so a hung collaborator call never occupies a git worker
_insight_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="insight")

MAX_PROMPT_COMMITS = 40


def call_with_timeout(fn: Callable[..., Any], timeout: float, *args, **kwargs) -> Any:
    """
    Run a collaborator call with an upper bound on its latency.

    Raises:
        CollaboratorError: On timeout or on any exception raised by fn.
    """
    future = _insight_executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError as exc:
        future.cancel()
        raise CollaboratorError(f"Insight generator timed out after {timeout}s", unavailable=True) from exc
    except CollaboratorError:
        raise
    except Exception as exc:
        raise CollaboratorError(f"Insight generator failed: {exc}") from exc


def parse_response(content: str, expected: type) -> Any:
    """Validate a raw JSON response against the tagged schema of the expected kind."""
    try:
        parsed = insight_response_adapter.validate_json(content)
    except SchemaValidationError as exc:
        raise CollaboratorError(f"Insight generator returned a malformed response: {exc}") from exc
    if not isinstance(parsed, expected):
        raise CollaboratorError(
            f"Insight generator returned kind '{parsed.kind}', expected {expected.__name__}"
        )
    return parsed


def features_from_drafts(drafts: list[FeatureDraft], cluster: list[CommitRecord]) -> list[Feature]:
    """Attach commit hashes, time range, and contributors from the cluster to generator drafts."""
    features = []
    for draft in drafts:
        matched = [
            commit
            for commit in cluster
            if any(commit.hash.startswith(ref) for ref in draft.commits if len(ref) >= 4)
        ]
        if not matched:
            matched = list(cluster)
        matched.sort(key=lambda c: c.date)
        features.append(
            Feature(
                name=draft.name,
                description=draft.description,
                commits=[commit.hash for commit in matched],
                time_range=FeatureTimeRange(
                    start=matched[0].date.date().isoformat() if matched else None,
                    end=matched[-1].date.date().isoformat() if matched else None,
                ),
                contributors=sorted({commit.author for commit in matched}),
                business_value=draft.business_value,
                complexity=draft.complexity,
            )
        )
    return features


def format_commit_for_prompt(commit: CommitRecord) -> str:
    files = ", ".join(commit.files[:5])
    if len(commit.files) > 5:
        files += f", +{len(commit.files) - 5} more"
    line = (
        f"{commit.short_hash} {commit.date.date().isoformat()} {commit.author}: {commit.message} "
        f"(+{commit.lines_added}/-{commit.lines_removed}; files: {files or 'none'})"
    )
    if commit.body:
        line += f"\n    {commit.body[:300]}"
    return line


class InsightGenerator(ABC):
    """Collaborator producing feature summaries, evolution insights, and answers."""

    @abstractmethod
    def extract_features(self, cluster: list[CommitRecord]) -> list[Feature]:
        """Group a time-proximate commit cluster into business features."""

    @abstractmethod
    def generate_insights(self, stats: dict) -> list[str]:
        """Summarize aggregate statistics as short insight sentences."""

    @abstractmethod
    def answer_question(self, question: str, ranked_commits: list[CommitRecord], summary: dict) -> str:
        """Answer a question from the most relevant commits."""


class UnavailableInsightGenerator(InsightGenerator):
    """Generator used when no model is configured; every call falls back."""

    def __init__(self, reason: str = "Insight generator is not configured"):
        self.reason = reason

    def extract_features(self, cluster):
        raise CollaboratorError(self.reason, unavailable=True)

    def generate_insights(self, stats):
        raise CollaboratorError(self.reason, unavailable=True)

    def answer_question(self, question, ranked_commits, summary):
        raise CollaboratorError(self.reason, unavailable=True)


FEATURE_SYSTEM_PROMPT = (
    "You group git commits into the business features they deliver. "
    'Respond with a JSON object: {"kind": "feature_extraction", "features": '
    '[{"name": str, "description": str, "business_value": str, '
    '"complexity": "low"|"medium"|"high", "commits": [short hashes]}]}. '
    "Return an empty features list when the commits do not form a feature."
)

INSIGHTS_SYSTEM_PROMPT = (
    "You analyze how a codebase evolved from aggregate git statistics. "
    'Respond with a JSON object: {"kind": "insights", "insights": [str, ...]} '
    "containing three to five short, factual sentences."
)

ANSWER_SYSTEM_PROMPT = (
    "You answer questions about a repository's history using only the commits provided. "
    'Respond with a JSON object: {"kind": "answer", "answer": str}. '
    "Cite short commit hashes and dates. Say so plainly when the commits do not answer the question."
)


class OpenAIInsightGenerator(InsightGenerator):
    """Insight generator backed by an OpenAI-compatible chat completions API."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout: float = 20.0, client: OpenAI | None = None):
        self.model = model
        self.client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    def _complete(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
                max_tokens=max_tokens,
                temperature=0.2,
            )
        except OpenAIError as exc:
            raise CollaboratorError(f"Insight generator request failed: {exc}") from exc

        if not response.choices or not response.choices[0].message.content:
            raise CollaboratorError("Insight generator returned an empty response")
        return response.choices[0].message.content

    def extract_features(self, cluster: list[CommitRecord]) -> list[Feature]:
        commits_text = "\n".join(format_commit_for_prompt(c) for c in cluster[:MAX_PROMPT_COMMITS])
        content = self._complete(FEATURE_SYSTEM_PROMPT, f"Commits:\n{commits_text}", max_tokens=800)
        result = parse_response(content, FeatureExtractionResult)
        return features_from_drafts(result.features, cluster)

    def generate_insights(self, stats: dict) -> list[str]:
        content = self._complete(
            INSIGHTS_SYSTEM_PROMPT,
            f"Statistics:\n{json.dumps(stats, default=str)}",
            max_tokens=400,
        )
        return list(parse_response(content, InsightResult).insights)

    def answer_question(self, question: str, ranked_commits: list[CommitRecord], summary: dict) -> str:
        commits_text = "\n".join(format_commit_for_prompt(c) for c in ranked_commits)
        user_prompt = (
            f"Repository summary: {json.dumps(summary, default=str)}\n\n"
            f"Relevant commits (most relevant first):\n{commits_text or 'none'}\n\n"
            f"Question: {question}"
        )
        content = self._complete(ANSWER_SYSTEM_PROMPT, user_prompt, max_tokens=600)
        return parse_response(content, AnswerResult).answer


def build_insight_generator(config: TimeMachineConfig) -> InsightGenerator:
    """Pick the generator implementation for the current configuration."""
    if not config.openai_api_key:
        logger.info("OPENAI_API_KEY not set; insight generator disabled, using keyword fallbacks")
        return UnavailableInsightGenerator()
    return OpenAIInsightGenerator(
        api_key=config.openai_api_key,
        model=config.insight_model,
        timeout=config.insight_timeout_seconds,
    )
