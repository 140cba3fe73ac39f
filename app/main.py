"""
app/main.py  — GitHub Repository Cache API
Startup: opens the cache store, launches the refresh scheduler (which warms
every tracked account right away). Reads are served from the store and only
fall through to GitHub on a cache miss.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from app.core.cache import CacheCoordinator, Fetcher
from app.core.config import Settings, build_repos_url
from app.core.http_client import close_all
from app.core.scheduler import RefreshScheduler
from app.core.triggers import trigger_from_settings
from app.routers import repos
from app.scrapers.github import GitHubFetcher
from app.stores.base import CacheStore
from app.stores.factory import create_store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
log = logging.getLogger("main")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[CacheStore] = None,
    fetcher: Optional[Fetcher] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info(f"🚀 GitHub Repository Cache API starting ({settings.backend} backend)...")
        cache_store = store or create_store(settings)
        await cache_store.start()
        coordinator = CacheCoordinator.from_settings(
            settings,
            cache_store,
            fetcher or GitHubFetcher(settings.github_token, settings.fetch_timeout_s),
        )
        app.state.settings = settings
        app.state.coordinator = coordinator

        handle = None
        if run_scheduler:
            scheduler = RefreshScheduler(coordinator, trigger_from_settings(settings))
            handle = scheduler.start(settings.cache_keys)
        yield
        log.info("🛑 Shutting down...")
        if handle is not None:
            handle.cancel()
            await handle.wait()
        await cache_store.close()
        await close_all()

    app = FastAPI(
        title="GitHub Repository Cache API",
        description=(
            "Cache-first proxy for GitHub's per-account repository listing. "
            "Keeps a bounded version history per account and refreshes it "
            "in the background."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(repos.router)

    @app.get("/", tags=["meta"])
    async def root():
        return {
            "status":   "online",
            "version":  "1.0.0",
            "backend":  settings.backend,
            "accounts": list(settings.accounts),
            "endpoints": {
                "repos":   "/github/{account}/repos?versions={n}",
                "refresh": "/github/{account}/repos/refresh  (POST)",
                "health":  "/health",
                "docs":    "/docs",
            },
        }

    @app.get("/health", tags=["meta"])
    async def health():
        """Lightweight health check: which tracked accounts are warm and readable."""
        summary = await app.state.coordinator.cache_summary()
        readable = {k for k, v in summary.items() if "error" not in v}
        accounts = {
            account: {
                "ready": build_repos_url(account) in readable,
                **summary.get(build_repos_url(account), {}),
            }
            for account in settings.accounts
        }
        if readable:
            status = "healthy" if len(readable) == len(summary) else "degraded"
        else:
            status = "unhealthy" if summary else "warming_up"
        return {
            "status":   status,
            "accounts": accounts,
        }

    return app


app = create_app()
