"""Feature and decision extraction from commit history.

Commits are grouped into clusters of time-proximate work. Each cluster is
offered to the insight generator; when it is unavailable, times out, or
returns a malformed response, a keyword heuristic derives features from the
commit text instead. Architectural decisions always come from the keyword
heuristic.
"""

import logging
from datetime import timedelta

from models.analysis import CommitRecord, Decision, Feature, FeatureTimeRange
from services.insight_generator import InsightGenerator, call_with_timeout
from utils.errors import CollaboratorError
from utils.keyword_vocabulary import (
    ARCHITECTURAL_KEYWORDS,
    FEATURE_KEYWORDS,
    business_value_for,
    feature_name_for,
    matching_keywords,
    mentions_keyword,
)

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 7
MAX_DECISIONS = 10
MIN_FEATURE_COMMITS = 2


def rate_complexity(total_lines: int, distinct_files: int) -> str:
    """
    Rate the size of a change.

    Returns:
        str: "high" for >1000 lines or >20 files, "medium" for >500 lines or
        >10 files, otherwise "low".
    """
    if total_lines > 1000 or distinct_files > 20:
        return "high"
    if total_lines > 500 or distinct_files > 10:
        return "medium"
    return "low"


def _commit_text(commit: CommitRecord) -> str:
    return f"{commit.message}\n{commit.body}"


def cluster_commits(commits: list[CommitRecord], window_days: int = DEFAULT_WINDOW_DAYS) -> list[list[CommitRecord]]:
    """
    Greedily group date-sorted commits.

    A commit joins the current cluster while it falls within window_days of
    the cluster's first commit; otherwise it starts a new cluster.
    """
    window = timedelta(days=window_days)
    clusters: list[list[CommitRecord]] = []
    for commit in sorted(commits, key=lambda c: c.date):
        if clusters and commit.date - clusters[-1][0].date <= window:
            clusters[-1].append(commit)
        else:
            clusters.append([commit])
    return clusters


def keyword_features(cluster: list[CommitRecord]) -> list[Feature]:
    """Emit one Feature per feature keyword matched by at least two commits of the cluster."""
    features = []
    for keyword in FEATURE_KEYWORDS:
        matched = sorted(
            (c for c in cluster if mentions_keyword(_commit_text(c), keyword)),
            key=lambda c: c.date,
        )
        if len(matched) < MIN_FEATURE_COMMITS:
            continue

        total_lines = sum(c.lines_changed for c in matched)
        distinct_files = len({path for c in matched for path in c.files})
        start = matched[0].date.date().isoformat()
        end = matched[-1].date.date().isoformat()

        features.append(
            Feature(
                name=feature_name_for(keyword),
                description=(
                    f"{len(matched)} commits related to '{keyword}' between {start} and {end}, "
                    f"touching {distinct_files} files"
                ),
                commits=[c.hash for c in matched],
                time_range=FeatureTimeRange(start=start, end=end),
                contributors=sorted({c.author for c in matched}),
                business_value=business_value_for(keyword),
                complexity=rate_complexity(total_lines, distinct_files),
            )
        )
    return features


def extract_features(
    commits: list[CommitRecord],
    generator: InsightGenerator,
    window_days: int = DEFAULT_WINDOW_DAYS,
    timeout: float = 20.0,
) -> list[Feature]:
    """
    Cluster commits and turn each cluster into features.

    Once the generator reports itself unavailable (not configured or timed
    out), the remaining clusters go straight to the keyword heuristic, so a
    hung generator costs at most one timeout per job.

    Args:
        commits: Extracted commits in any order.
        generator: Insight generator collaborator.
        window_days: Cluster window measured from each cluster's first commit.
        timeout: Upper bound for each generator call.

    Returns:
        list[Feature]: Features of all clusters, oldest cluster first.
    """
    features: list[Feature] = []
    fallbacks = 0
    generator_down = False
    for cluster in cluster_commits(commits, window_days):
        if generator_down:
            fallbacks += 1
            features.extend(keyword_features(cluster))
            continue
        try:
            features.extend(call_with_timeout(generator.extract_features, timeout, cluster))
        except CollaboratorError as exc:
            fallbacks += 1
            generator_down = exc.unavailable
            logger.debug("Feature extraction fallback for cluster of %d commits: %s", len(cluster), exc)
            features.extend(keyword_features(cluster))
    if fallbacks:
        logger.warning("Insight generator unavailable for %d cluster(s); used keyword features", fallbacks)
    return features


def extract_decisions(commits: list[CommitRecord], limit: int = MAX_DECISIONS) -> list[Decision]:
    """
    Emit a Decision for each commit mentioning an architectural keyword.

    Returns:
        list[Decision]: The `limit` most recent decisions, newest first.
    """
    candidates = []
    for commit in commits:
        keywords = matching_keywords(_commit_text(commit), ARCHITECTURAL_KEYWORDS)
        if keywords:
            candidates.append((commit, keywords))

    candidates.sort(key=lambda item: item[0].date, reverse=True)

    decisions = []
    for commit, keywords in candidates[:limit]:
        if commit.body:
            rationale = commit.body.splitlines()[0].strip()
        else:
            rationale = f"Commit message references {', '.join(keywords)}"
        decisions.append(
            Decision(
                date=commit.date.date().isoformat(),
                decision=commit.message,
                rationale=rationale,
                impact=rate_complexity(commit.lines_changed, len(set(commit.files))),
                related_commits=[commit.hash],
            )
        )
    return decisions
