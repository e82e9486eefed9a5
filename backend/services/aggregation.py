"""Aggregation engine folding CommitRecords into repository analytics.

Every function here is a pure fold over the extracted commit set, so the
results do not depend on commit order:
- contributor statistics (commits, line churn, touched files, primary areas)
- per-file ownership counters
- monthly complexity trend
- commit listing helpers (filters and summary) for the commits view
"""

from collections import Counter, defaultdict
from typing import Iterable

from models.analysis import (
    CommitRecord,
    CommitSummary,
    CommitTimeRange,
    ComplexityPoint,
    ContributorStat,
    Feature,
    FileOwnershipEntry,
    FileOwnershipView,
    JobMetrics,
    JobSummary,
)
from utils.time_machine_config import ComplexityWeights

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

PRIMARY_AREA_LIMIT = 3
SUMMARY_LIMIT = 5
DEFAULT_COMMIT_LIMIT = 50


def _area_for_path(path: str) -> str:
    """Top-level directory of a path; files at the repository root map to 'root'."""
    if "/" not in path:
        return "root"
    return path.split("/", 1)[0]


def _date_key(commit: CommitRecord) -> str:
    return commit.date.date().isoformat()


def build_contributor_stats(commits: Iterable[CommitRecord]) -> list[ContributorStat]:
    """
    Fold commits into per-author statistics.

    Returns:
        list[ContributorStat]: Sorted by commit count (desc), then name.
    """
    stats: dict[str, ContributorStat] = {}
    area_counts: dict[str, Counter] = defaultdict(Counter)
    email_counts: dict[str, Counter] = defaultdict(Counter)

    for commit in commits:
        stat = stats.get(commit.author)
        if stat is None:
            stat = ContributorStat(name=commit.author)
            stats[commit.author] = stat
        stat.commits += 1
        stat.lines_added += commit.lines_added
        stat.lines_removed += commit.lines_removed
        stat.files.update(commit.files)
        email_counts[commit.author][commit.author_email] += 1
        for path in commit.files:
            area_counts[commit.author][_area_for_path(path)] += 1

    for name, stat in stats.items():
        ranked = sorted(area_counts[name].items(), key=lambda item: (-item[1], item[0]))
        stat.primary_areas = [area for area, _ in ranked[:PRIMARY_AREA_LIMIT]]
        # Most used address; ties go to the alphabetically first
        stat.email = min(email_counts[name].items(), key=lambda item: (-item[1], item[0]))[0]

    return sorted(stats.values(), key=lambda s: (-s.commits, s.name))


def build_file_ownership(commits: Iterable[CommitRecord]) -> list[FileOwnershipEntry]:
    """
    Count, for every changed file, how many commits each author made to it.

    Returns:
        list[FileOwnershipEntry]: Sorted by total commits on the file (desc), then path.
    """
    counters: dict[str, Counter] = defaultdict(Counter)
    last_touched = {}

    for commit in commits:
        for path in commit.files:
            counters[path][commit.author] += 1
            previous = last_touched.get(path)
            if previous is None or commit.date > previous:
                last_touched[path] = commit.date

    entries = [
        FileOwnershipEntry(
            file=path,
            authors=dict(counter),
            last_modified=last_touched[path].date().isoformat(),
        )
        for path, counter in counters.items()
    ]
    return sorted(entries, key=lambda e: (-e.total_commits, e.file))


def ownership_view(entry: FileOwnershipEntry) -> FileOwnershipView:
    """Compute the primary owner and ownership percentages of one file."""
    total = entry.total_commits
    ranked = sorted(entry.authors.items(), key=lambda item: (-item[1], item[0]))
    owner, owner_count = ranked[0]
    return FileOwnershipView(
        file=entry.file,
        primary_owner=owner,
        ownership_percentage=round(owner_count / total * 100, 2),
        last_modified=entry.last_modified,
        contributors={author: round(count / total * 100, 2) for author, count in ranked},
    )


def complexity_score(files_changed: int, total_lines: int, commit_count: int, weights: ComplexityWeights) -> float:
    """Weighted average file breadth plus average line churn per commit, capped at 1."""
    if commit_count <= 0:
        return 0.0
    score = (files_changed / commit_count) * weights.file_weight + (total_lines / commit_count) * weights.line_weight
    return min(1.0, score)


def build_complexity_trend(
    commits: Iterable[CommitRecord],
    weights: ComplexityWeights | None = None,
) -> list[ComplexityPoint]:
    """
    Bucket commits by calendar month (YYYY-MM of the commit date) and score each bucket.

    Returns:
        list[ComplexityPoint]: One point per month, oldest first.
    """
    weights = weights or ComplexityWeights()
    buckets: dict[str, dict] = {}

    for commit in commits:
        month = commit.date.strftime("%Y-%m")
        bucket = buckets.setdefault(
            month,
            {"commit_count": 0, "files_changed": 0, "total_lines": 0, "authors": set()},
        )
        bucket["commit_count"] += 1
        bucket["files_changed"] += len(commit.files)
        bucket["total_lines"] += commit.lines_changed
        bucket["authors"].add(commit.author)

    return [
        ComplexityPoint(
            date=month,
            commit_count=data["commit_count"],
            files_changed=data["files_changed"],
            complexity=complexity_score(
                data["files_changed"], data["total_lines"], data["commit_count"], weights
            ),
            contributors=len(data["authors"]),
        )
        for month, data in sorted(buckets.items())
    ]


def build_metrics(commits: list[CommitRecord]) -> JobMetrics:
    """Headline numbers stored on the job once it completes."""
    if not commits:
        return JobMetrics()
    dates = [commit.date for commit in commits]
    return JobMetrics(
        total_commits=len(commits),
        total_files=len({path for commit in commits for path in commit.files}),
        contributors=len({commit.author for commit in commits}),
        time_range=CommitTimeRange(
            first_commit=min(dates).date().isoformat(),
            last_commit=max(dates).date().isoformat(),
        ),
    )


def build_summary(
    contributors: list[ContributorStat],
    ownership: list[FileOwnershipEntry],
    features: list[Feature],
) -> JobSummary:
    return JobSummary(
        most_active_files=[entry.file for entry in ownership[:SUMMARY_LIMIT]],
        top_contributors=[stat.name for stat in contributors[:SUMMARY_LIMIT]],
        major_features=[feature.name for feature in features[:SUMMARY_LIMIT]],
    )


def summarize_commits(commits: list[CommitRecord]) -> CommitSummary:
    """Totals, average commit size (lines added + removed), and busiest weekday."""
    if not commits:
        return CommitSummary()

    total_lines = sum(commit.lines_changed for commit in commits)
    weekday_counts = Counter(commit.date.weekday() for commit in commits)
    busiest = max(range(7), key=lambda day: (weekday_counts.get(day, 0), -day))

    return CommitSummary(
        total_commits=len(commits),
        total_authors=len({commit.author for commit in commits}),
        average_commit_size=int(total_lines / len(commits) + 0.5),
        most_active_weekday=WEEKDAYS[busiest],
    )


def filter_commits(
    commits: list[CommitRecord],
    author: str | None = None,
    date: str | None = None,
    file: str | None = None,
) -> list[CommitRecord]:
    """
    Filter commits for the commits view.

    Args:
        author: Case-insensitive substring of the author name or email.
        date: Date prefix such as "2024", "2024-03", or "2024-03-15".
        file: Case-insensitive substring of any changed path.
    """
    author_lower = author.lower() if author else None
    file_lower = file.lower() if file else None

    matched = []
    for commit in commits:
        if author_lower and author_lower not in commit.author.lower() and author_lower not in commit.author_email.lower():
            continue
        if date and not _date_key(commit).startswith(date):
            continue
        if file_lower and not any(file_lower in path.lower() for path in commit.files):
            continue
        matched.append(commit)
    return matched


def local_insights(trend: list[ComplexityPoint], contributors: list[ContributorStat]) -> list[str]:
    """Deterministic evolution insights, used when the insight generator is unavailable."""
    if not trend:
        return ["No commit activity was found in the analyzed range."]

    insights = []
    busiest = max(trend, key=lambda point: point.commit_count)
    insights.append(
        f"Most active development period was {busiest.date} with {busiest.commit_count} commits"
    )

    if len(trend) >= 2:
        first, last = trend[0], trend[-1]
        if first.complexity > 0:
            change = (last.complexity - first.complexity) / first.complexity * 100
            if abs(change) < 1:
                insights.append(f"Codebase complexity stayed flat between {first.date} and {last.date}")
            else:
                direction = "increased" if change > 0 else "decreased"
                insights.append(
                    f"Codebase complexity {direction} {abs(change):.0f}% between {first.date} and {last.date}"
                )

    peak_team = max(trend, key=lambda point: point.contributors)
    insights.append(f"Team size peaked at {peak_team.contributors} contributors in {peak_team.date}")

    if contributors:
        total = sum(stat.commits for stat in contributors)
        top = contributors[0]
        insights.append(
            f"{top.name} authored {top.commits} of {total} commits ({top.commits / total * 100:.0f}%)"
        )

    return insights


def stats_for_insights(trend: list[ComplexityPoint], contributors: list[ContributorStat], metrics: JobMetrics) -> dict:
    """Aggregate payload handed to the insight generator."""
    return {
        "metrics": metrics.model_dump(),
        "complexity_trend": [point.model_dump() for point in trend],
        "top_contributors": [
            {
                "name": stat.name,
                "commits": stat.commits,
                "lines_added": stat.lines_added,
                "lines_removed": stat.lines_removed,
                "primary_areas": stat.primary_areas,
            }
            for stat in contributors[:10]
        ],
    }
