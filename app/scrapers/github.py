"""
app/scrapers/github.py
═══════════════════════════════════════════════════════════════════════════════
Reads GitHub's public "list repositories for a user" endpoint.

  GET https://api.github.com/users/{account}/repos

One call = one network read. The payload is returned exactly as GitHub sent
it (decoded JSON); nothing here inspects or reshapes it.

Unlike the scrapers that return None on failure, this one RAISES FetchError
on any non-2xx answer or transport failure. The cache layer relies on that:
an exception is the only thing that keeps a bad fetch from being stored.
═══════════════════════════════════════════════════════════════════════════════
"""

import logging
from typing import Any, Optional

import httpx

from app.core.config import DEFAULT_FETCH_TIMEOUT_S
from app.core.errors import FetchError
from app.core.http_client import github_client

log = logging.getLogger("github")


class GitHubFetcher:
    def __init__(
        self,
        token: str = "",
        timeout_s: float = DEFAULT_FETCH_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._token = token
        self._timeout_s = timeout_s
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return github_client(self._token, self._timeout_s)

    async def fetch(self, url: str) -> Any:
        try:
            resp = await self._http().get(url)
        except httpx.HTTPError as ex:
            log.warning(f"GitHub request failed ({url}): {ex}")
            raise FetchError(None, str(ex) or type(ex).__name__) from ex

        if not resp.is_success:
            log.warning(f"GitHub HTTP {resp.status_code} for {url}")
            raise FetchError(resp.status_code, resp.reason_phrase or resp.text[:200])

        try:
            return resp.json()
        except ValueError as ex:
            log.warning(f"GitHub sent non-JSON body for {url}")
            raise FetchError(resp.status_code, f"invalid JSON body: {ex}") from ex
