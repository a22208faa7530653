"""Evidence search for context gathering.

Two sources of evidence:

* RepoEvidenceSearch walks a local directory tree and returns ``path:line``
  locators for lines matching a query (or a file path that exists).
* TavilyEvidenceSearch queries Tavily's Search API for web scopes and
  returns result URLs.

Both remember a short snippet per locator so answers can carry a summary.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Iterator, Optional

import httpx

from ladder.core.config import ContextConfig, SearchConfig
from ladder.core.exceptions import SearchError

logger = logging.getLogger("ladder.tools.search")


class SearchResult:
    """A single search result."""

    def __init__(self, title: str, url: str, snippet: str):
        self.title = title
        self.url = url
        self.snippet = snippet

    def to_dict(self) -> dict[str, str]:
        return {"title": self.title, "url": self.url, "snippet": self.snippet}

    def __repr__(self) -> str:
        return f"SearchResult(title={self.title!r}, url={self.url!r})"


# ---------------------------------------------------------------------------
# Local repository search
# ---------------------------------------------------------------------------

class RepoEvidenceSearch:
    """Grep-style search over a local scope directory."""

    def __init__(self, config: Optional[ContextConfig] = None):
        self.config = config or ContextConfig()
        self.max_results = self.config.max_results
        self.skip_dirs = set(self.config.skip_dirs)
        self._snippets: dict[str, str] = {}

    def search(self, scope: str, query: str) -> list[str]:
        """Return locators for ``query`` under ``scope``.

        Raises:
            SearchError: If the scope is not a directory.
        """
        root = Path(scope)
        if not root.is_dir():
            raise SearchError(f"Search scope is not a directory: {scope}")
        query = query.strip()
        if not query:
            return []

        candidate = root / query
        if "/" in query and candidate.is_file():
            locator = f"{query}:1"
            self._snippets[locator] = self._first_line(candidate)
            return [locator]

        needle = query.lower()
        locators: list[str] = []
        for path in self._iter_files(root):
            if needle in (path.name.lower(), path.stem.lower()):
                rel = path.relative_to(root).as_posix()
                locators.append(f"{rel}:1")
                self._snippets[f"{rel}:1"] = self._first_line(path)
                if len(locators) >= self.max_results:
                    return locators
                continue
            try:
                with open(path, encoding="utf-8") as f:
                    for lineno, line in enumerate(f, start=1):
                        if needle in line.lower():
                            locator = f"{path.relative_to(root).as_posix()}:{lineno}"
                            locators.append(locator)
                            self._snippets[locator] = line.strip()[:200]
                            break
            except (UnicodeDecodeError, OSError):
                continue
            if len(locators) >= self.max_results:
                break
        return locators

    def snippet(self, locator: str) -> str:
        return self._snippets.get(locator, "")

    def _iter_files(self, root: Path) -> Iterator[Path]:
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(
                d for d in dirnames
                if d not in self.skip_dirs and not d.endswith(".egg-info")
            )
            for name in sorted(filenames):
                path = Path(dirpath) / name
                try:
                    if path.stat().st_size > self.config.max_file_bytes:
                        continue
                except OSError:
                    continue
                yield path

    @staticmethod
    def _first_line(path: Path) -> str:
        try:
            with open(path, encoding="utf-8") as f:
                return f.readline().strip()[:200]
        except (UnicodeDecodeError, OSError):
            return ""


# ---------------------------------------------------------------------------
# Web search
# ---------------------------------------------------------------------------

class TavilyClient:
    """Client for Tavily Search API.

    Requires TAVILY_API_KEY environment variable.
    """

    API_URL = "https://api.tavily.com/search"

    def __init__(self, config: Optional[SearchConfig] = None, api_key: Optional[str] = None):
        self.config = config or SearchConfig()
        self.api_key = api_key or os.getenv("TAVILY_API_KEY", "")
        self.max_results = self.config.max_results
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=httpx.Timeout(30.0))
        return self._client

    def search(self, query: str, num_results: Optional[int] = None) -> list[SearchResult]:
        """Execute a web search query.

        Raises:
            SearchError: If API call fails or API key missing.
        """
        if not self.api_key:
            raise SearchError("TAVILY_API_KEY not set")

        n = num_results or self.max_results
        payload = {
            "query": query,
            "max_results": n,
            "search_depth": "basic",
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = self.client.post(self.API_URL, json=payload, headers=headers)

            if response.status_code == 401:
                raise SearchError("Invalid Tavily API key")
            if response.status_code == 429:
                raise SearchError("Tavily rate limit exceeded")
            if response.status_code >= 400:
                raise SearchError(f"Tavily API error: HTTP {response.status_code}")

            return self._parse_results(response.json(), n)

        except SearchError:
            raise
        except httpx.TimeoutException as e:
            raise SearchError("Tavily API request timed out") from e
        except httpx.ConnectError as e:
            raise SearchError("Failed to connect to Tavily API") from e
        except (httpx.HTTPError, ValueError) as e:
            raise SearchError(f"Tavily search failed: {e}") from e

    def _parse_results(self, data: dict[str, Any], limit: int) -> list[SearchResult]:
        results = []
        for item in data.get("results", [])[:limit]:
            title = item.get("title", "")
            url = item.get("url", "")
            snippet = item.get("content", "")
            if title and url:
                results.append(SearchResult(title=title, url=url, snippet=snippet))
        return results[:limit]

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None


class TavilyEvidenceSearch:
    """EvidenceSearch adapter over TavilyClient; the scope narrows the query."""

    def __init__(self, client: TavilyClient):
        self.client = client
        self._snippets: dict[str, str] = {}

    def search(self, scope: str, query: str) -> list[str]:
        full_query = query if scope in ("", "web", "*") else f"{query} {scope}"
        results = self.client.search(full_query)
        for r in results:
            self._snippets[r.url] = r.snippet[:200] or r.title
        return [r.url for r in results]

    def snippet(self, locator: str) -> str:
        return self._snippets.get(locator, "")
