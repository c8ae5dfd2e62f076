"""GitHub repository metrics used by the quality score."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from ..config import Settings, get_settings
from ..errors import NotFound, Unauthorized, UpstreamUnavailable
from ..models import Clock, GitHubMetrics, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LAST_COMMIT_DAYS = 999


def _parse_timestamp(raw: str) -> datetime:
    ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class GitHubMetricsFetcher:
    """Best-effort metrics client.

    Only the repository lookup is required; each other sub-metric falls back
    to its default when its request fails.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "oss-token-settlement",
        }
        self._client = client or httpx.AsyncClient(
            base_url=str(self._settings.github_api_base),
            headers=headers,
            timeout=self._settings.github_timeout_sec,
        )
        self._clock = clock

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_metrics(self, owner: str, repo: str, credential: Optional[str] = None) -> GitHubMetrics:
        headers = {"Authorization": f"token {credential}"} if credential else {}
        base = f"/repos/{owner}/{repo}"

        repository = await self._fetch_repository(base, headers)
        commits, issues, downloads = await asyncio.gather(
            self._last_commit_days(base, headers),
            self._open_issues(base, headers),
            self._weekly_downloads(base, headers),
        )
        return GitHubMetrics(
            stars=int(repository.get("stargazers_count") or 0),
            weekly_downloads=downloads,
            last_commit_days=commits,
            open_issues=issues,
            fetched_at=self._clock(),
        )

    async def _fetch_repository(self, base: str, headers: dict[str, str]) -> dict[str, Any]:
        try:
            response = await self._client.get(base, headers=headers)
        except httpx.RequestError as exc:
            raise UpstreamUnavailable(f"GitHub unreachable: {exc}") from exc
        if response.status_code == 404:
            raise NotFound(f"Repository not found or not accessible: {base}")
        if response.status_code in (401, 403):
            raise Unauthorized(f"Access denied to repository: {base}")
        if response.is_error:
            raise UpstreamUnavailable(f"GitHub API error {response.status_code} for {base}")
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamUnavailable("GitHub returned invalid JSON") from exc

    async def _get_list(self, path: str, headers: dict[str, str], params: dict[str, Any]) -> list[Any]:
        response = await self._client.get(path, headers=headers, params=params)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, list):
            raise ValueError(f"Expected a list from {path}")
        return payload

    async def _last_commit_days(self, base: str, headers: dict[str, str]) -> int:
        try:
            commits = await self._get_list(f"{base}/commits", headers, {"per_page": 1})
            if not commits:
                return DEFAULT_LAST_COMMIT_DAYS
            committed_at = _parse_timestamp(commits[0]["commit"]["committer"]["date"])
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            logger.warning("metrics.commits_failed", extra={"repo": base, "error": str(exc)})
            return DEFAULT_LAST_COMMIT_DAYS
        return max(0, (self._clock() - committed_at).days)

    async def _open_issues(self, base: str, headers: dict[str, str]) -> int:
        try:
            issues = await self._get_list(f"{base}/issues", headers, {"state": "open", "per_page": 100})
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("metrics.issues_failed", extra={"repo": base, "error": str(exc)})
            return 0
        # the issues endpoint also lists pull requests
        return sum(1 for issue in issues if isinstance(issue, dict) and "pull_request" not in issue)

    async def _weekly_downloads(self, base: str, headers: dict[str, str]) -> int:
        try:
            releases = await self._get_list(f"{base}/releases", headers, {"per_page": 10})
            week_ago = self._clock() - timedelta(days=7)
            total = 0
            for release in releases:
                published = release.get("published_at")
                if not published or _parse_timestamp(published) < week_ago:
                    continue
                total += sum(int(asset.get("download_count") or 0) for asset in release.get("assets") or [])
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("metrics.releases_failed", extra={"repo": base, "error": str(exc)})
            return 0
        return total
