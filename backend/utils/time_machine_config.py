"""Environment-driven configuration for the codebase time machine.

Values are read on each call to load_config() so tests can monkeypatch the
environment. Invalid values log a warning and fall back to the default.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_HOSTS = ("github.com", "gitlab.com", "bitbucket.org")


def _get_default_workspace_dir() -> Path:
    """Get the default directory that holds per-job clones."""
    backend_dir = Path(__file__).resolve().parents[1]
    return backend_dir / ".repos" / "time-machine"


@dataclass(frozen=True)
class ComplexityWeights:
    """Weights of the monthly complexity score.

    Empirical values carried over from the first implementation; they have
    never been calibrated against real repositories.
    """

    file_weight: float = 0.3
    line_weight: float = 0.0001


@dataclass(frozen=True)
class TimeMachineConfig:
    """Resolved runtime configuration."""

    workspace_dir: Path = field(default_factory=_get_default_workspace_dir)
    allowed_hosts: tuple[str, ...] = DEFAULT_ALLOWED_HOSTS
    allow_local_repos: bool = False
    default_max_commits: int = 1000
    max_commits_limit: int = 10000
    git_timeout_seconds: float = 300.0
    insight_timeout_seconds: float = 20.0
    cluster_window_days: int = 7
    complexity: ComplexityWeights = field(default_factory=ComplexityWeights)
    max_workers: int = 2
    openai_api_key: str = ""
    insight_model: str = "gpt-4o-mini"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    logger.warning("Invalid %s value '%s'. Falling back to %s.", name, raw, default)
    return default


def _env_number(name: str, default, cast, minimum=None):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %s.", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s must be >= %s, got %s. Falling back to %s.", name, minimum, value, default)
        return default
    return value


def _env_hosts(name: str) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return DEFAULT_ALLOWED_HOSTS
    hosts = tuple(h.strip().lower() for h in raw.split(",") if h.strip())
    return hosts or DEFAULT_ALLOWED_HOSTS


def load_config() -> TimeMachineConfig:
    """Build a TimeMachineConfig from TIME_MACHINE_* environment variables."""
    workspace_raw = os.getenv("TIME_MACHINE_WORKSPACE_DIR", "").strip()
    workspace_dir = Path(workspace_raw) if workspace_raw else _get_default_workspace_dir()

    weights = ComplexityWeights(
        file_weight=_env_number("TIME_MACHINE_COMPLEXITY_FILE_WEIGHT", 0.3, float, minimum=0.0),
        line_weight=_env_number("TIME_MACHINE_COMPLEXITY_LINE_WEIGHT", 0.0001, float, minimum=0.0),
    )

    return TimeMachineConfig(
        workspace_dir=workspace_dir,
        allowed_hosts=_env_hosts("TIME_MACHINE_ALLOWED_HOSTS"),
        allow_local_repos=_env_bool("TIME_MACHINE_ALLOW_LOCAL_REPOS", False),
        default_max_commits=_env_number("TIME_MACHINE_DEFAULT_MAX_COMMITS", 1000, int, minimum=1),
        max_commits_limit=_env_number("TIME_MACHINE_MAX_COMMITS_LIMIT", 10000, int, minimum=1),
        git_timeout_seconds=_env_number("TIME_MACHINE_GIT_TIMEOUT_SECONDS", 300.0, float, minimum=1.0),
        insight_timeout_seconds=_env_number("TIME_MACHINE_INSIGHT_TIMEOUT_SECONDS", 20.0, float, minimum=0.1),
        cluster_window_days=_env_number("TIME_MACHINE_CLUSTER_WINDOW_DAYS", 7, int, minimum=1),
        complexity=weights,
        max_workers=_env_number("TIME_MACHINE_MAX_WORKERS", 2, int, minimum=1),
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        insight_model=os.getenv("TIME_MACHINE_INSIGHT_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini",
    )
