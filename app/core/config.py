"""
app/core/config.py  ── GitHub Repository Cache API
═══════════════════════════════════════════════════════════════════════════════
UPSTREAM:

  api.github.com  →  GET /users/{account}/repos   (public, token optional)

Every tracked account maps to exactly one cache key: the repos URL itself.

All tunables are read ONCE from the environment by Settings.from_env() and
then passed around explicitly. Nothing below reads os.environ at call time.
═══════════════════════════════════════════════════════════════════════════════
"""

import logging
import os
from dataclasses import dataclass

import pytz

UTC = pytz.utc

# ── GitHub ────────────────────────────────────────────────────────────────────
GITHUB_BASE = "https://api.github.com"
GITHUB_HEADERS = {
    "Accept":     "application/vnd.github+json",
    "User-Agent": "repo-cache-api",
}
DEFAULT_ACCOUNTS = ("dxdye", "d2tsb")

# ── Cache defaults ────────────────────────────────────────────────────────────
DEFAULT_REFRESH_INTERVAL_S = 5 * 60
DEFAULT_MAX_VERSIONS       = 50
DEFAULT_FETCH_TIMEOUT_S    = 30.0
BACKENDS                   = ("memory", "sql", "mongo")


def build_repos_url(account: str) -> str:
    """Cache key for one account. Same account → same key, always."""
    return f"{GITHUB_BASE}/users/{account}/repos"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name, "")
    items = tuple(a.strip() for a in raw.split(",") if a.strip())
    return items or default


@dataclass(frozen=True)
class Settings:
    accounts:          tuple[str, ...] = DEFAULT_ACCOUNTS
    github_token:      str   = ""
    backend:           str   = "memory"
    database_url:      str   = "sqlite+aiosqlite:///./cache.db"
    cache_table:       str   = "cache_entries"
    versions_table:    str   = "cache_versions"
    mongo_url:         str   = "mongodb://localhost:27017"
    mongo_db:          str   = "repo_cache"
    mongo_collection:  str   = "cache_entries"
    refresh_interval_s: float = DEFAULT_REFRESH_INTERVAL_S
    refresh_cron:      str   = ""
    max_versions:      int   = DEFAULT_MAX_VERSIONS
    recovery_enabled:  bool  = True
    fetch_timeout_s:   float = DEFAULT_FETCH_TIMEOUT_S

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise ValueError(f"CACHE_BACKEND must be one of {BACKENDS}, got '{self.backend}'")
        if self.max_versions < 0:
            raise ValueError("CACHE_MAX_VERSIONS must be >= 0")
        if self.refresh_interval_s <= 0:
            raise ValueError("CACHE_REFRESH_INTERVAL_S must be > 0")

    @property
    def cache_keys(self) -> list[str]:
        return [build_repos_url(a) for a in self.accounts]

    @classmethod
    def from_env(cls) -> "Settings":
        token = os.environ.get("GITHUB_TOKEN", "")
        if not token:
            logging.getLogger("config").warning(
                "GITHUB_TOKEN env var not set — GitHub allows 60 unauthenticated requests/hour"
            )
        settings = cls(
            accounts=_env_list("GITHUB_ACCOUNTS", DEFAULT_ACCOUNTS),
            github_token=token,
            backend=os.environ.get("CACHE_BACKEND", "memory").strip().lower(),
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            cache_table=os.environ.get("CACHE_TABLE", cls.cache_table),
            versions_table=os.environ.get("VERSIONS_TABLE", cls.versions_table),
            mongo_url=os.environ.get("MONGO_URL", cls.mongo_url),
            mongo_db=os.environ.get("MONGO_DB", cls.mongo_db),
            mongo_collection=os.environ.get("MONGO_COLLECTION", cls.mongo_collection),
            refresh_interval_s=float(
                os.environ.get("CACHE_REFRESH_INTERVAL_S", DEFAULT_REFRESH_INTERVAL_S)
            ),
            refresh_cron=os.environ.get("CACHE_REFRESH_CRON", "").strip(),
            max_versions=int(os.environ.get("CACHE_MAX_VERSIONS", DEFAULT_MAX_VERSIONS)),
            recovery_enabled=_env_bool("CACHE_RECOVERY_ENABLED", True),
            fetch_timeout_s=float(os.environ.get("FETCH_TIMEOUT_S", DEFAULT_FETCH_TIMEOUT_S)),
        )
        if settings.max_versions == 0:
            logging.getLogger("config").warning(
                "CACHE_MAX_VERSIONS=0 — version history will grow without bound"
            )
        return settings
