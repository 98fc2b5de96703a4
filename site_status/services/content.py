"""
Site Status — Markdown content diff.

Every page on the audited sites has a markdown twin (``/path`` -> ``/path.md``,
``/dir/`` -> ``/dir/index.md``). We fetch it on each audit and keep a unified
diff against the previous audit's copy.
"""

import difflib
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import aiohttp

logger = logging.getLogger(__name__)

NOT_FOUND_STATUS = 404
NO_NEWLINE_MARKER = "\\ No newline at end of file"


@dataclass(frozen=True)
class ContentDiff:
    diff: Optional[str]
    content: str


def markdown_url(final_url: str) -> str:
    """Derive the markdown twin of a page URL (query and fragment dropped)."""
    parts = urlsplit(final_url)
    path = parts.path or "/"
    if path.endswith("/"):
        path = f"{path}index.md"
    elif path.endswith((".html", ".htm")):
        path = path[: path.rindex(".")] + ".md"
    elif not path.endswith(".md"):
        path = f"{path}.md"
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def create_patch(name: str, old: str, new: str) -> str:
    """Unified diff of two texts, with the usual marker for a missing final newline."""
    lines = difflib.unified_diff(
        old.splitlines(keepends=True),
        new.splitlines(keepends=True),
        fromfile=name,
        tofile=name,
    )
    out = []
    for line in lines:
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(f"{line}\n{NO_NEWLINE_MARKER}\n")
    return "".join(out)


class ContentClient:
    """Fetches markdown content and diffs it against the previous audit."""

    async def _fetch(self, url: str) -> str:
        async with aiohttp.ClientSession() as session:
            async with session.get(url) as resp:
                resp.raise_for_status()
                return await resp.text()

    async def diff(self, previous_content: Optional[str], scoring_result: dict) -> Optional[ContentDiff]:
        """Fetch the markdown for the audited page and diff it.

        The diff is None when there is no previous content or nothing changed.
        Returns None (never raises) when the final URL is unknown, the markdown
        does not exist, or the download fails.
        """
        final_url = ((scoring_result or {}).get("lighthouseResult") or {}).get("finalUrl")
        if not final_url:
            logger.error("Final URL not found in the audit result")
            return None

        url = markdown_url(final_url)
        try:
            content = await self._fetch(url)
        except aiohttp.ClientResponseError as e:
            if e.status == NOT_FOUND_STATUS:
                logger.info("Markdown content not found at %s", url)
            else:
                logger.error("Error while downloading markdown content from %s: %s", url, e)
            return None
        except (aiohttp.ClientError, UnicodeDecodeError) as e:
            logger.error("Error while downloading markdown content from %s: %s", url, e)
            return None

        logger.info("Downloaded markdown content from %s", url)

        if previous_content and previous_content != content:
            patch = create_patch(url, previous_content, content)
            logger.info("Found markdown diff %d characters long", len(patch))
            return ContentDiff(diff=patch, content=content)

        logger.info("No markdown diff found")
        return ContentDiff(diff=None, content=content)
