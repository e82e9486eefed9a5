"""Git repository acquisition and history extraction for the time machine.

This module validates repository URLs, checks remote accessibility without
cloning, clones into an isolated per-job directory with branch fallback, and
walks the commit log into immutable CommitRecord objects.
"""

import logging
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo
from git.cmd import Git

from models.analysis import TIME_RANGES, CommitRecord
from utils.errors import (
    CAUSE_EMPTY,
    CAUSE_NETWORK,
    CAUSE_NOT_FOUND,
    CAUSE_TIMEOUT,
    AcquisitionError,
    AnalysisTimeoutError,
    PartialExtractionError,
    ValidationError,
)
from utils.time_machine_config import TimeMachineConfig

logger = logging.getLogger(__name__)

# Tried in order after the requested branch, skipping any already attempted
COMMON_DEFAULT_BRANCHES = ["main", "master", "develop", "trunk"]

REMOTE_SCHEMES = {"https", "http", "ssh", "git"}

_SCP_LIKE_URL = re.compile(r"^[\w.-]+@(?P<host>[\w.-]+):(?P<path>.+)$")

_TIME_RANGE_DAYS = {
    "last-month": 30,
    "last-6-months": 182,
    "last-year": 365,
}

_NOT_FOUND_MARKERS = (
    "repository not found",
    "not found",
    "does not exist",
    "does not appear to be a git repository",
    "could not read username",
    "authentication failed",
    "terminal prompts disabled",
    "permission denied",
    "access denied",
    "error: 403",
    "error: 404",
)

_NETWORK_MARKERS = (
    "could not resolve host",
    "failed to connect",
    "connection refused",
    "connection timed out",
    "connection reset",
    "network is unreachable",
    "operation timed out",
    "ssl certificate",
    "ssl_connect",
    "gnutls",
    "early eof",
)


# ============================================================================
# URL VALIDATION
# ============================================================================


def _is_local_reference(repo_url: str) -> bool:
    parsed = urlparse(repo_url)
    if parsed.scheme == "file":
        return True
    if parsed.scheme in REMOTE_SCHEMES or _SCP_LIKE_URL.match(repo_url):
        return False
    # Windows drive letters parse as a one-letter scheme
    return parsed.scheme == "" or len(parsed.scheme) == 1


def _host_allowed(host: str, allowed_hosts: tuple[str, ...]) -> bool:
    host = host.lower()
    return any(host == allowed or host.endswith("." + allowed) for allowed in allowed_hosts)


def validate_repo_url(repo_url: Optional[str], config: TimeMachineConfig) -> str:
    """
    Validate a repository URL against the accepted hosting providers.

    Args:
        repo_url: URL as submitted by the caller.
        config: Runtime configuration (allowed hosts, local repo switch).

    Returns:
        str: The stripped URL.

    Raises:
        ValidationError: If the URL is missing, malformed, or not on an accepted host.
    """
    if repo_url is None or not repo_url.strip():
        raise ValidationError("Repository URL is required")
    repo_url = repo_url.strip()

    if _is_local_reference(repo_url):
        if config.allow_local_repos:
            return repo_url
        raise ValidationError(
            "Local repository paths are not accepted. "
            f"Use a URL hosted on one of: {', '.join(config.allowed_hosts)}"
        )

    scp_match = _SCP_LIKE_URL.match(repo_url)
    if scp_match:
        host = scp_match.group("host")
        path = scp_match.group("path")
    else:
        parsed = urlparse(repo_url)
        host = parsed.hostname or ""
        path = parsed.path

    if not host:
        raise ValidationError(f"Could not determine host of repository URL: {redact_repo_url(repo_url)}")
    if not _host_allowed(host, config.allowed_hosts):
        raise ValidationError(
            f"Unsupported repository host '{host}'. "
            f"Accepted hosts: {', '.join(config.allowed_hosts)}"
        )

    segments = [s for s in path.strip("/").split("/") if s]
    if len(segments) < 2:
        raise ValidationError(f"Repository URL must include owner and repository name: {redact_repo_url(repo_url)}")

    return repo_url


def normalize_repo_url(repo_url: str) -> str:
    """Normalize a repo URL so resubmissions of the same repository share one key."""
    url = repo_url.strip().rstrip("/")
    if url.endswith(".git"):
        url = url[:-4]
    scp_match = _SCP_LIKE_URL.match(url)
    if scp_match:
        return f"{scp_match.group('host').lower()}/{scp_match.group('path')}"
    parsed = urlparse(url)
    if parsed.scheme in REMOTE_SCHEMES and parsed.hostname:
        return f"{parsed.hostname.lower()}{parsed.path}"
    return url


def redact_repo_url(repo_url: str) -> str:
    """Replace any userinfo (tokens, passwords) in a URL with '***' for logs and errors."""
    parsed = urlparse(repo_url)
    if parsed.scheme not in REMOTE_SCHEMES or "@" not in parsed.netloc:
        return repo_url
    host = parsed.netloc.rsplit("@", 1)[1]
    return parsed._replace(netloc=f"***@{host}").geturl()


# ============================================================================
# ACQUISITION
# ============================================================================


@dataclass
class CloneStrategy:
    """One clone attempt: a specific branch, or the remote default when branch is None."""

    label: str
    branch: str | None


@dataclass
class CloneResult:
    path: str
    effective_branch: str | None
    attempts: list[str] = field(default_factory=list)


def _git() -> Git:
    git_cmd = Git()
    # Private repositories must fail instead of waiting on a credential prompt
    git_cmd.update_environment(GIT_TERMINAL_PROMPT="0", GIT_ASKPASS="")
    return git_cmd


def _remaining(deadline: float | None, timeout: float) -> float:
    """Seconds left for the next git call, bounded by both timeout and deadline."""
    if deadline is None:
        return timeout
    left = deadline - time.monotonic()
    if left <= 0:
        raise AnalysisTimeoutError("Repository acquisition exceeded the configured timeout")
    return min(timeout, left)


def classify_git_error(message: str) -> str:
    """Map git stderr text onto an acquisition cause."""
    text = message.lower()
    if "did not complete in" in text:
        return CAUSE_TIMEOUT
    if any(marker in text for marker in _NETWORK_MARKERS):
        return CAUSE_NETWORK
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return CAUSE_NOT_FOUND
    return CAUSE_NOT_FOUND


def _describe_cause(cause: str) -> str:
    if cause == CAUSE_NETWORK:
        return "network failure while contacting the remote"
    if cause == CAUSE_TIMEOUT:
        return "git operation timed out"
    if cause == CAUSE_EMPTY:
        return "repository has no commits"
    return "repository not found or private"


def _git_error_text(exc: GitCommandError) -> str:
    stderr = exc.stderr if isinstance(exc.stderr, str) else str(exc.stderr or "")
    return (stderr.strip() or str(exc)).strip()


def check_accessible(repo_url: str, timeout: float, deadline: float | None = None) -> list[str]:
    """
    List remote references without cloning.

    Args:
        repo_url: Repository URL or (when enabled) local path.
        timeout: Upper bound in seconds for the ls-remote call.
        deadline: Optional monotonic deadline shared with the rest of acquisition.

    Returns:
        list[str]: Reference names advertised by the remote.

    Raises:
        AcquisitionError: cause "not_found", "network", "timeout", or "empty".
    """
    try:
        output = _git().ls_remote(repo_url, kill_after_timeout=_remaining(deadline, timeout))
    except GitCommandError as exc:
        detail = _git_error_text(exc)
        safe_url = redact_repo_url(repo_url)
        detail = detail.replace(repo_url, safe_url)
        cause = classify_git_error(detail)
        raise AcquisitionError(
            f"Repository {safe_url} is not accessible: {_describe_cause(cause)} ({detail})",
            cause=cause,
        ) from exc

    refs = [line.split("\t", 1)[1] for line in output.splitlines() if "\t" in line]
    if not refs:
        raise AcquisitionError(f"Repository {redact_repo_url(repo_url)} is empty", cause=CAUSE_EMPTY)
    return refs


def clone_strategies(branch: str | None) -> list[CloneStrategy]:
    """Ordered clone attempts: requested branch, common defaults, then remote default."""
    strategies: list[CloneStrategy] = []
    tried: set[str] = set()
    if branch and branch.strip():
        requested = branch.strip()
        strategies.append(CloneStrategy(label=f"branch '{requested}'", branch=requested))
        tried.add(requested)
    for candidate in COMMON_DEFAULT_BRANCHES:
        if candidate not in tried:
            strategies.append(CloneStrategy(label=f"branch '{candidate}'", branch=candidate))
            tried.add(candidate)
    strategies.append(CloneStrategy(label="remote default branch", branch=None))
    return strategies


def remove_work_dir(path: str | Path) -> None:
    """Delete a job working directory if it exists."""
    shutil.rmtree(path, ignore_errors=True)


def _active_branch(repo_path: Path) -> str | None:
    repo = Repo(str(repo_path))
    try:
        return repo.active_branch.name
    except (TypeError, ValueError):
        # Detached HEAD
        return None
    finally:
        repo.close()


def clone_with_fallback(
    repo_url: str,
    branch: str | None,
    dest_root: str | Path,
    job_id: str,
    timeout: float,
    deadline: float | None = None,
) -> CloneResult:
    """
    Clone a repository into dest_root/<job_id>, trying branches in order.

    Each failed attempt removes its partial working directory before the
    next one starts. A timeout stops the fallback chain immediately.

    Returns:
        CloneResult: Local path, branch actually cloned, and attempted strategies.

    Raises:
        AcquisitionError: If every strategy fails (message lists all of them).
        AnalysisTimeoutError: If the shared deadline passes between attempts.
    """
    dest = Path(dest_root).resolve() / job_id
    safe_url = redact_repo_url(repo_url)
    dest.parent.mkdir(parents=True, exist_ok=True)

    attempts: list[str] = []
    last_cause = CAUSE_NOT_FOUND
    last_detail = ""

    for strategy in clone_strategies(branch):
        budget = _remaining(deadline, timeout)
        attempts.append(strategy.label)
        remove_work_dir(dest)

        args = ["--branch", strategy.branch] if strategy.branch else []
        try:
            _git().clone(*args, "--", repo_url, str(dest), kill_after_timeout=budget)
        except GitCommandError as exc:
            last_detail = _git_error_text(exc).replace(repo_url, safe_url)
            last_cause = classify_git_error(last_detail)
            remove_work_dir(dest)
            logger.info("Clone of %s with %s failed: %s", safe_url, strategy.label, last_detail)
            if last_cause == CAUSE_TIMEOUT:
                raise AcquisitionError(
                    f"Cloning {safe_url} timed out. Tried: {', '.join(attempts)}",
                    cause=CAUSE_TIMEOUT,
                    attempts=attempts,
                ) from exc
            continue

        effective_branch = strategy.branch or _active_branch(dest)
        logger.info("Cloned %s (%s) into %s", safe_url, effective_branch or "detached HEAD", dest)
        return CloneResult(path=str(dest), effective_branch=effective_branch, attempts=attempts)

    raise AcquisitionError(
        f"Failed to clone {safe_url}: {_describe_cause(last_cause)}. "
        f"Tried: {', '.join(attempts)}. Last error: {last_detail}",
        cause=last_cause,
        attempts=attempts,
    )


# ============================================================================
# HISTORY EXTRACTION
# ============================================================================


@dataclass
class ExtractionResult:
    commits: list[CommitRecord] = field(default_factory=list)
    skipped: int = 0


def since_for_time_range(time_range: str | None, now: datetime | None = None) -> datetime | None:
    """
    Convert a time range label into a since-date.

    Args:
        time_range: "last-month", "last-6-months", "last-year", "all" (or None).
        now: Reference time, defaults to the current UTC time.

    Returns:
        datetime | None: Lower bound for commit dates, None for "all".

    Raises:
        ValidationError: For unknown labels.
    """
    if time_range is None or time_range == "all":
        return None
    if time_range not in _TIME_RANGE_DAYS:
        raise ValidationError(
            f"Invalid time_range: {time_range}. Must be one of: {', '.join(TIME_RANGES)}."
        )
    reference = now or datetime.now(timezone.utc)
    return reference - timedelta(days=_TIME_RANGE_DAYS[time_range])


def _commit_record(commit) -> CommitRecord:
    """Build a CommitRecord from a GitPython commit, including numstat totals."""
    # Diffs against the first parent; root commits diff against the empty tree
    stats = commit.stats
    message = commit.message
    if isinstance(message, bytes):
        message = message.decode("utf-8", errors="replace")
    subject, _, body = message.strip().partition("\n")

    return CommitRecord(
        hash=commit.hexsha,
        author=commit.author.name or "unknown",
        author_email=commit.author.email or "",
        date=commit.authored_datetime,
        message=subject.strip(),
        body=body.strip(),
        files=tuple(os.fspath(path) for path in stats.files),
        lines_added=int(stats.total.get("insertions", 0)),
        lines_removed=int(stats.total.get("deletions", 0)),
    )


def extract_commits(
    repo_path: str,
    max_commits: int,
    since: datetime | None = None,
    deadline: float | None = None,
) -> ExtractionResult:
    """
    Walk the commit log of HEAD into CommitRecords, newest first.

    A commit whose diff statistics cannot be read is logged and skipped;
    the number of skipped commits is returned alongside the records.

    Args:
        repo_path: Local clone.
        max_commits: Upper bound on commits walked.
        since: Optional lower bound on commit date.
        deadline: Optional monotonic deadline; exceeding it aborts the walk.

    Raises:
        ValueError: If repo_path is missing or not a Git repository.
        AnalysisTimeoutError: If the deadline passes mid-walk.
    """
    path = Path(repo_path)
    if not path.exists():
        raise ValueError(f"Repository path does not exist: {repo_path}")
    if not path.is_dir():
        raise ValueError(f"Repository path is not a directory: {repo_path}")

    try:
        repo = Repo(str(path))
    except (InvalidGitRepositoryError, NoSuchPathError) as e:
        raise ValueError(f"Path is not a valid Git repository: {repo_path}") from e

    result = ExtractionResult()
    try:
        if not repo.head.is_valid():
            # No commits yet
            return result

        kwargs = {"max_count": max_commits}
        if since is not None:
            kwargs["since"] = since.isoformat()

        for commit in repo.iter_commits("HEAD", **kwargs):
            if deadline is not None and time.monotonic() > deadline:
                raise AnalysisTimeoutError(
                    f"History walk exceeded the configured timeout after {len(result.commits)} commits"
                )
            try:
                result.commits.append(_commit_record(commit))
            except Exception as exc:
                skipped = PartialExtractionError(commit.hexsha, str(exc))
                logger.warning("%s; continuing", skipped)
                result.skipped += 1
    finally:
        repo.close()

    return result
