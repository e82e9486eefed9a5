"""Tests for question answering over an analyzed commit corpus."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from models.analysis import AnalysisJob, AnalysisResults, CommitRecord
from services.insight_generator import InsightGenerator, UnavailableInsightGenerator
from services.query_engine import (
    answer_query,
    build_timeline,
    confidence,
    fallback_answer,
    question_keywords,
    rank_commits,
    score_commit,
)
from utils.errors import CollaboratorError

START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _commit(hash_, message, day, body="", files=("README.md",), author="Alice"):
    return CommitRecord(
        hash=hash_,
        author=author,
        author_email=f"{author.lower()}@example.com",
        date=START + timedelta(days=day),
        message=message,
        body=body,
        files=tuple(files),
        lines_added=5,
    )


class _RecordingGenerator(InsightGenerator):
    def __init__(self, answer="Authentication arrived with the admin panel."):
        self.answer = answer
        self.calls = []

    def extract_features(self, cluster):
        raise CollaboratorError("not used")

    def generate_insights(self, stats):
        raise CollaboratorError("not used")

    def answer_question(self, question, ranked_commits, summary):
        self.calls.append((question, [c.hash for c in ranked_commits], summary))
        return self.answer


class _SlowGenerator(_RecordingGenerator):
    def answer_question(self, question, ranked_commits, summary):
        time.sleep(2)
        return self.answer


@pytest.fixture
def corpus():
    return [
        _commit("bump00001", "Bump version", 0),
        _commit(
            "authn0001",
            "Add authentication endpoints",
            1,
            body="Supports password authentication for the admin panel",
            files=["src/auth/login.py"],
            author="Bob",
        ),
        _commit("readme001", "Update README", 2),
        _commit("dbidx0001", "Tune database indexes", 3, files=["db/schema.sql"]),
        _commit("authn0002", "Fix authentication redirect", 5, files=["src/auth/redirect.py"]),
    ]


@pytest.fixture
def job():
    return AnalysisJob(id="job-1", repo_url="https://github.com/octocat/repo", max_commits=100, started_at=START)


# ============================================================================
# SCORING
# ============================================================================


def test_question_keywords_drop_short_words_and_duplicates():
    assert question_keywords("Why was authentication added? Authentication!") == ["authentication", "added"]
    assert question_keywords("Why?") == []


def test_score_commit_weights():
    commit = _commit("x", "Cache layer", 0, body="cache warmup", files=["src/cache.py"])
    assert score_commit(commit, ["cache"]) == 3 + 2 + 1
    assert score_commit(commit, ["warmup"]) == 2
    assert score_commit(commit, ["unrelated"]) == 0


def test_score_commit_grows_with_more_matches():
    plain = _commit("p", "Fix login", 0)
    richer = _commit("r", "Fix login", 0, body="login was broken")
    assert score_commit(richer, ["login"]) > score_commit(plain, ["login"])


def test_confidence_bounded():
    commit = _commit("x", "alpha bravo charlie delta echoo foxtrot", 0)
    keywords = ["alpha", "bravo", "charlie", "delta", "echoo", "foxtrot"]
    assert confidence(commit, keywords) == 1.0
    assert confidence(commit, keywords[:2]) == pytest.approx(0.4)
    assert confidence(commit, []) == 0.0


def test_rank_commits_authentication_question(corpus):
    ranked = rank_commits(corpus, "Why was authentication added?")

    assert [(c.hash, score) for c, score in ranked] == [("authn0001", 5), ("authn0002", 3)]


def test_rank_commits_stable_for_equal_scores():
    commits = [_commit("first", "login fix", 0), _commit("second", "login tweak", 1)]
    ranked = rank_commits(commits, "login")
    assert [c.hash for c, _ in ranked] == ["first", "second"]


def test_build_timeline_ascending(corpus):
    timeline = build_timeline(list(reversed(corpus)))
    assert [event.commit for event in timeline] == [c.hash for c in corpus]
    assert timeline[0].date == "2024-05-01"


# ============================================================================
# ANSWERS
# ============================================================================


def test_answer_query_uses_generator(job, corpus):
    generator = _RecordingGenerator()
    results = AnalysisResults(job_id=job.id, commits=corpus)

    result = answer_query(job, results, "Why was authentication added?", generator)

    assert result.answer == "Authentication arrived with the admin panel."
    assert result.answer_source == "insight_generator"
    assert result.analysis_id == "job-1"
    assert [c.hash for c in result.related_commits] == ["authn0001", "authn0002"]
    assert result.related_commits[0].score == 5
    assert result.related_commits[0].relevance == pytest.approx(0.2)
    assert [e.commit for e in result.timeline] == ["authn0001", "authn0002"]

    question, hashes, summary = generator.calls[0]
    assert hashes == ["authn0001", "authn0002"]
    assert summary["repo_url"] == "https://github.com/octocat/repo"


def test_answer_query_limits_related_commits(job, corpus):
    results = AnalysisResults(job_id=job.id, commits=corpus)
    result = answer_query(job, results, "authentication", _RecordingGenerator(), top_n=1)
    assert [c.hash for c in result.related_commits] == ["authn0001"]


def test_answer_query_fallback_when_generator_unavailable(job, corpus):
    results = AnalysisResults(job_id=job.id, commits=corpus)

    result = answer_query(job, results, "Why was authentication added?", UnavailableInsightGenerator())

    assert result.answer_source == "fallback"
    assert result.answer.startswith("Found 2 commits related to authentication, added.")
    assert "authn000 by Bob on 2024-05-02" in result.answer
    assert [c.hash for c in result.related_commits] == ["authn0001", "authn0002"]


def test_answer_query_fallback_on_timeout(job, corpus):
    results = AnalysisResults(job_id=job.id, commits=corpus)
    started = time.monotonic()

    result = answer_query(job, results, "authentication", _SlowGenerator(), timeout=0.1)

    assert time.monotonic() - started < 2
    assert result.answer_source == "fallback"
    assert result.answer.startswith("Found 2 commits")


def test_answer_query_without_commits(job):
    generator = _RecordingGenerator()
    result = answer_query(job, AnalysisResults(job_id=job.id), "Who wrote the parser?", generator)

    assert result.answer_source == "fallback"
    assert "No commit history is available" in result.answer
    assert result.related_commits == []
    assert result.timeline == []
    assert generator.calls == []


def test_fallback_answer_without_matches(corpus):
    results = AnalysisResults(job_id="job-1", commits=corpus)

    assert fallback_answer("Why?", results, []) == (
        "The question has no searchable keywords (words longer than three characters)."
    )
    assert fallback_answer("Where is kubernetes?", results, []) == (
        "No commits matched the keywords where, kubernetes across 5 analyzed commits."
    )
