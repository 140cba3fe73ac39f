"""
app/core/http_client.py
Shared async httpx clients for api.github.com.
  • github_client() → lazily built, one per (token, timeout), reused across fetches
  • close_all()     → called once on shutdown
"""

import httpx
from app.core.config import GITHUB_HEADERS, DEFAULT_FETCH_TIMEOUT_S

_github_clients: dict[tuple[str, float], httpx.AsyncClient] = {}

_LIMITS = httpx.Limits(max_connections=10, max_keepalive_connections=5)


def _headers(token: str) -> dict[str, str]:
    if not token:
        return dict(GITHUB_HEADERS)
    return {**GITHUB_HEADERS, "Authorization": f"Bearer {token}"}


def github_client(token: str = "", timeout_s: float = DEFAULT_FETCH_TIMEOUT_S) -> httpx.AsyncClient:
    key = (token, float(timeout_s))
    client = _github_clients.get(key)
    if client is None or client.is_closed:
        client = httpx.AsyncClient(
            headers=_headers(token),
            timeout=httpx.Timeout(timeout_s, connect=min(timeout_s, 15.0)),
            follow_redirects=True,
            limits=_LIMITS,
        )
        _github_clients[key] = client
    return client


async def close_all() -> None:
    for c in list(_github_clients.values()):
        if not c.is_closed:
            await c.aclose()
    _github_clients.clear()
