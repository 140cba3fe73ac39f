"""
app/routers/repos.py
═══════════════════════════════════════════════════════════════════════════════
Endpoints:
  GET  /github/{account}/repos?versions=n  → cached repo list (+ last n versions)
  POST /github/{account}/repos/refresh     → force a fetch now, then same shape

account must be in the configured allow-list; anything else is a 404 and
never reaches GitHub.

Error mapping:
  FetchError                        → 502 (upstream status in detail)
  CacheDecodeError / CacheStoreError → 500
═══════════════════════════════════════════════════════════════════════════════
"""

import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from app.core.cache import CacheCoordinator, history_slice
from app.core.config import build_repos_url
from app.core.errors import CacheDecodeError, CacheStoreError, FetchError
from app.stores.base import CacheEntry

log = logging.getLogger("repos_router")

router = APIRouter(prefix="/github", tags=["github"])


def _coordinator(request: Request) -> CacheCoordinator:
    return request.app.state.coordinator


def _key_for(request: Request, account: str) -> str:
    if account not in request.app.state.settings.accounts:
        raise HTTPException(404, detail=f"Account '{account}' is not tracked")
    return build_repos_url(account)


def _serialize(entry: CacheEntry, versions: Optional[int]) -> dict:
    body = {
        "url":       entry.key,
        "updatedAt": entry.updated_at.isoformat(),
        "data":      entry.data,
    }
    if versions and versions > 0:
        body["versions"] = [
            {"updatedAt": v.updated_at.isoformat(), "data": v.data}
            for v in history_slice(entry, versions)
        ]
    return body


def _raise_http(ex: Exception, key: str) -> NoReturn:
    if isinstance(ex, FetchError):
        raise HTTPException(
            502, detail={"error": "upstream_failed", "status": ex.status, "message": ex.message}
        )
    log.error(f"Cache failure for {key}: {ex}")
    raise HTTPException(500, detail={"error": type(ex).__name__, "message": str(ex)})


@router.get("/{account}/repos")
async def get_repos(
    request: Request,
    account: str,
    versions: Optional[int] = Query(None, description="Number of past snapshots to include"),
):
    key = _key_for(request, account)
    try:
        entry = await _coordinator(request).read_through(key)
    except (FetchError, CacheDecodeError, CacheStoreError) as ex:
        _raise_http(ex, key)
    return _serialize(entry, versions)


@router.post("/{account}/repos/refresh")
async def refresh_repos(
    request: Request,
    account: str,
    versions: Optional[int] = Query(None, description="Number of past snapshots to include"),
):
    key = _key_for(request, account)
    try:
        entry = await _coordinator(request).write_fresh(key)
    except (FetchError, CacheDecodeError, CacheStoreError) as ex:
        _raise_http(ex, key)
    return _serialize(entry, versions)
