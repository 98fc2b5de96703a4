"""
Site Status — GitHub repository diff.

Collects the per-commit diffs pushed to a site's repo between two audits,
oldest API page first, capped at 100 KiB. Binary changes stop the collection.
"""

import base64
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlsplit

import aiohttp

logger = logging.getLogger(__name__)

MAX_DIFF_SIZE = 102400      # 100 KiB, counted in UTF-8 bytes
SECONDS_IN_A_DAY = 86400
PER_PAGE = 100
DIFF_MEDIA_TYPE = "application/vnd.github.v3.diff"

_BINARY_RE = re.compile(r"^Binary files .* differ$", re.MULTILINE)


class GithubCredentialsError(Exception):
    """Client id or secret is not configured."""


def is_binary_diff(diff: str) -> bool:
    return bool(_BINARY_RE.search(diff)) or "GIT binary patch" in diff


def parse_repo_url(repo_url: str) -> tuple[str, str]:
    """``https://github.com/org/repo(.git)`` -> ``("org", "repo")``."""
    parts = [p for p in urlsplit(repo_url).path.split("/") if p]
    if len(parts) < 2:
        raise ValueError(f"Not a repository URL: {repo_url}")
    org, repo = parts[0], parts[1]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    return org, repo


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class GithubClient:
    """Minimal GitHub REST client for commit listings and commit diffs."""

    def __init__(self, base_url: str, client_id: str = "", client_secret: str = ""):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret

    def api_url(self, org: str, repo: str = "", path: str = "", page: int = 1) -> str:
        repo_part = f"/{repo}" if repo else ""
        path_part = f"/{path}" if path else ""
        return f"{self.base_url}/repos/{org}{repo_part}{path_part}?page={page}&per_page={PER_PAGE}"

    def auth_header(self) -> str:
        if not self.client_id or not self.client_secret:
            raise GithubCredentialsError("GitHub credentials not provided")
        token = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode()).decode()
        return f"Basic {token}"

    # ── HTTP ────────────────────────────────────────────

    async def _get_json(self, url: str, params: dict, headers: dict) -> Any:
        async with aiohttp.ClientSession() as session:
            async with session.get(url, params=params, headers=headers) as resp:
                resp.raise_for_status()
                return await resp.json()

    async def _get_text(self, url: str, headers: dict) -> str:
        async with aiohttp.ClientSession() as session:
            async with session.get(url, headers=headers) as resp:
                resp.raise_for_status()
                return await resp.text()

    async def list_commits(self, org: str, repo: str, since: datetime, until: datetime, auth: str) -> list[str]:
        """All commit SHAs in [since, until], following pagination until a short page."""
        params = {"since": _iso(since), "until": _iso(until)}
        headers = {"Authorization": auth}
        shas: list[str] = []
        page = 1
        while True:
            commits = await self._get_json(self.api_url(org, repo, "commits", page), params, headers)
            shas += [c["sha"] for c in commits]
            if len(commits) < PER_PAGE:
                return shas
            page += 1

    # ── Diff ────────────────────────────────────────────

    async def diff(self, repo_url: Optional[str], since: Optional[datetime], until: datetime) -> str:
        """Concatenated commit diffs for ``repo_url`` between ``since`` and ``until``.

        Each accepted diff is followed by a newline. Accumulation stops at the first
        binary diff or the first diff that would push the total past MAX_DIFF_SIZE.
        Never raises: any failure yields "".
        """
        if not repo_url:
            logger.info("No github repo defined. Skipping github diff calculation")
            return ""

        if since is None:
            since = until - timedelta(seconds=SECONDS_IN_A_DAY)

        try:
            org, repo = parse_repo_url(repo_url)
            auth = self.auth_header()
            logger.info("Fetching diffs for %s/%s between %s and %s", org, repo, _iso(since), _iso(until))

            shas = await self.list_commits(org, repo, since, until, auth)
            logger.info("Found %d commits", len(shas))

            headers = {"Accept": DIFF_MEDIA_TYPE, "Authorization": auth}
            diffs: list[str] = []
            total = 0
            for sha in shas:
                logger.info("Fetching diff for commit %s", sha)
                text = await self._get_text(self.api_url(org, repo, f"commits/{sha}"), headers)
                chunk = f"{text}\n"
                size = len(chunk.encode("utf-8"))

                if is_binary_diff(text) or total + size > MAX_DIFF_SIZE:
                    logger.warning(
                        "Skipping commit %s because it is binary or too large (%d of %d)",
                        sha, total, MAX_DIFF_SIZE,
                    )
                    break

                diffs.append(chunk)
                total += size
                logger.info("Added commit %s (%d of %d) to diff", sha, total, MAX_DIFF_SIZE)

            return "".join(diffs)
        except (aiohttp.ClientError, GithubCredentialsError, ValueError, KeyError, TypeError) as e:
            logger.error("Error fetching github diff for %s: %s", repo_url, e)
            return ""
