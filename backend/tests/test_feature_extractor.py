"""Tests for feature clustering and architectural decision extraction."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from models.analysis import CommitRecord, Feature
from services.feature_extractor import (
    cluster_commits,
    extract_decisions,
    extract_features,
    keyword_features,
    rate_complexity,
)
from services.insight_generator import InsightGenerator, UnavailableInsightGenerator
from utils.errors import CollaboratorError

START = datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc)


def _commit(hash_, message, day, author="Alice", files=("src/app.py",), added=10, removed=0, body=""):
    return CommitRecord(
        hash=hash_,
        author=author,
        author_email=f"{author.lower()}@example.com",
        date=START + timedelta(days=day),
        message=message,
        body=body,
        files=tuple(files),
        lines_added=added,
        lines_removed=removed,
    )


class _SlowGenerator(InsightGenerator):
    def __init__(self, delay):
        self.delay = delay

    def extract_features(self, cluster):
        time.sleep(self.delay)
        return []

    def generate_insights(self, stats):
        time.sleep(self.delay)
        return []

    def answer_question(self, question, ranked_commits, summary):
        time.sleep(self.delay)
        return ""


class _FixedGenerator(InsightGenerator):
    def __init__(self):
        self.clusters = []

    def extract_features(self, cluster):
        self.clusters.append(cluster)
        return [Feature(name=f"Cluster of {len(cluster)}", description="generated", commits=[c.hash for c in cluster])]

    def generate_insights(self, stats):
        return ["generated"]

    def answer_question(self, question, ranked_commits, summary):
        return "generated"


@pytest.fixture
def auth_cluster():
    return [
        _commit("c2", "Fix auth token refresh", 2, author="Bob", files=["src/auth/token.py"], added=200, removed=50),
        _commit("c1", "Implement auth middleware", 0, files=["src/auth/middleware.py"], added=300),
        _commit("c3", "Payment form", 3, files=["web/payment.js"], added=20),
    ]


# ============================================================================
# COMPLEXITY RATING / CLUSTERING
# ============================================================================


@pytest.mark.parametrize(
    "lines,files,expected",
    [
        (0, 0, "low"),
        (500, 10, "low"),
        (501, 0, "medium"),
        (0, 11, "medium"),
        (1000, 20, "medium"),
        (1001, 0, "high"),
        (0, 21, "high"),
    ],
)
def test_rate_complexity_thresholds(lines, files, expected):
    assert rate_complexity(lines, files) == expected


def test_cluster_commits_window_measured_from_first_commit():
    commits = [
        _commit("d9", "later", 9),
        _commit("d0", "first", 0),
        _commit("d7", "edge", 7),
        _commit("d3", "middle", 3),
        _commit("d8", "next", 8),
    ]

    clusters = cluster_commits(commits, window_days=7)

    assert [[c.hash for c in cluster] for cluster in clusters] == [["d0", "d3", "d7"], ["d8", "d9"]]


def test_cluster_commits_empty():
    assert cluster_commits([]) == []


# ============================================================================
# FEATURES
# ============================================================================


def test_keyword_features_requires_two_matching_commits(auth_cluster):
    features = keyword_features(auth_cluster)

    assert len(features) == 1
    feature = features[0]
    assert feature.name == "User Authentication"
    assert feature.business_value == "Security and user management"
    assert feature.commits == ["c1", "c2"]
    assert feature.contributors == ["Alice", "Bob"]
    assert feature.time_range.start == "2024-04-01"
    assert feature.time_range.end == "2024-04-03"
    assert feature.complexity == "medium"


def test_keyword_features_single_match_yields_nothing():
    assert keyword_features([_commit("x", "Payment form", 0), _commit("y", "Docs", 1)]) == []


def test_keyword_features_match_whole_word_starts():
    cluster = [
        _commit("r1", "Rebuild cache on startup", 0),
        _commit("r2", "Require latest toolchain", 1),
        _commit("r3", "Rapid retry for flaky client", 2),
        _commit("r4", "Tune rapid polling", 3),
    ]
    assert keyword_features(cluster) == []

    prefixed = [_commit("a1", "Authentication via OAuth", 0), _commit("a2", "Fix auth redirect", 1)]
    assert [f.name for f in keyword_features(prefixed)] == ["User Authentication"]


def test_extract_features_falls_back_when_generator_unavailable(auth_cluster):
    features = extract_features(auth_cluster, UnavailableInsightGenerator())
    assert [f.name for f in features] == ["User Authentication"]


def test_extract_features_falls_back_on_timeout(auth_cluster):
    started = time.monotonic()
    features = extract_features(auth_cluster, _SlowGenerator(delay=2), timeout=0.1)

    assert time.monotonic() - started < 2
    assert [f.name for f in features] == ["User Authentication"]


def test_extract_features_stops_calling_hung_generator():
    # One commit per cluster, thirty clusters
    commits = [_commit(f"w{i}", f"auth change {i}", i * 10) for i in range(30)]
    generator = _SlowGenerator(delay=2)

    started = time.monotonic()
    features = extract_features(commits, generator, window_days=7, timeout=0.1)

    assert time.monotonic() - started < 1.5
    assert features == []


class _MalformedOnceGenerator(_FixedGenerator):
    def extract_features(self, cluster):
        if not self.clusters:
            self.clusters.append(cluster)
            raise CollaboratorError("Insight generator returned a malformed response")
        return super().extract_features(cluster)


def test_extract_features_keeps_generator_after_malformed_response():
    commits = [_commit("a", "one", 0), _commit("b", "two", 30)]
    generator = _MalformedOnceGenerator()

    features = extract_features(commits, generator, window_days=7)

    assert [f.name for f in features] == ["Cluster of 1"]
    assert len(generator.clusters) == 2


def test_extract_features_uses_generator_per_cluster():
    commits = [_commit("a", "one", 0), _commit("b", "two", 1), _commit("c", "three", 30)]
    generator = _FixedGenerator()

    features = extract_features(commits, generator, window_days=7)

    assert [f.name for f in features] == ["Cluster of 2", "Cluster of 1"]
    assert [[c.hash for c in cluster] for cluster in generator.clusters] == [["a", "b"], ["c"]]


def test_extract_features_no_commits():
    assert extract_features([], _FixedGenerator()) == []


# ============================================================================
# DECISIONS
# ============================================================================


def test_extract_decisions_newest_first_and_capped():
    commits = [_commit(f"r{i}", f"Refactor module {i}", i) for i in range(12)]

    decisions = extract_decisions(commits)

    assert len(decisions) == 10
    assert [d.related_commits[0] for d in decisions] == [f"r{i}" for i in range(11, 1, -1)]
    dates = [d.date for d in decisions]
    assert dates == sorted(dates, reverse=True)


def test_extract_decisions_rationale_and_impact():
    commits = [
        _commit("m1", "Migrate storage layer", 0, added=400, removed=200, body="Old driver is unmaintained\nMore text"),
        _commit("u1", "Upgrade framework version", 1),
        _commit("n1", "Fix typo", 2),
    ]

    decisions = {d.related_commits[0]: d for d in extract_decisions(commits)}

    assert set(decisions) == {"m1", "u1"}
    assert decisions["m1"].rationale == "Old driver is unmaintained"
    assert decisions["m1"].impact == "medium"
    assert decisions["m1"].decision == "Migrate storage layer"
    assert decisions["u1"].rationale == "Commit message references framework, upgrade"
    assert decisions["u1"].impact == "low"


def test_extract_decisions_ignores_keywords_inside_words():
    commits = [
        _commit("p1", "Improve unpatterned fill", 0),
        _commit("p2", "Ship premigrate hook", 1),
        _commit("p3", "Migrate sessions to redis", 2),
    ]

    assert [d.related_commits[0] for d in extract_decisions(commits)] == ["p3"]
