"""
Site Status — PageSpeed Insights client.

Runs a mobile Lighthouse check for the four tracked categories and returns the
raw PSI payload with every "." in a key turned into "_" (the stored result is
queried by field path, so dotted keys are not allowed).
"""

import json
import logging
import re
from typing import Any, Mapping, Optional, Union

import aiohttp

from site_status.pipeline.errors import ScoringFailure

logger = logging.getLogger(__name__)

CATEGORIES = ["performance", "accessibility", "best-practices", "seo"]
STRATEGY = "mobile"

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_HTTP_RE = re.compile(r"^http:", re.IGNORECASE)

JSONValue = Union[None, bool, int, float, str, list["JSONValue"], dict[str, "JSONValue"]]


def format_url(target: str) -> str:
    """Force HTTPS: rewrite an http:// prefix, or prepend https:// to a bare host."""
    if _SCHEME_RE.match(target):
        return _HTTP_RE.sub("https:", target, count=1)
    return f"https://{target}"


def sanitize_key(key: str) -> str:
    return key.replace(".", "_")


def sanitize_keys(value: JSONValue) -> JSONValue:
    """Recursively rename mapping keys containing "." at every nesting level.

    Mappings and sequences are rebuilt, scalars pass through. Idempotent.
    """
    if isinstance(value, dict):
        return {sanitize_key(str(k)): sanitize_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize_keys(item) for item in value]
    return value


def _retry_after(headers: Mapping[str, str]) -> Optional[float]:
    raw = headers.get("Retry-After")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _upstream_error(data: Any) -> Optional[str]:
    """PSI wraps failures as {"error": {"code": .., "message": ..}}."""
    if not isinstance(data, dict) or not data.get("error"):
        return None
    error = data["error"]
    if isinstance(error, dict):
        return error.get("message") or json.dumps(error)
    return str(error)


class PSIClient:
    """Client for the PageSpeed Insights v5 API."""

    def __init__(self, api_key: str, base_url: str):
        self.api_key = api_key
        self.base_url = base_url

    def build_params(self, target: str) -> list[tuple[str, str]]:
        params = [
            ("url", format_url(target)),
            ("key", self.api_key),
            ("strategy", STRATEGY),
        ]
        params += [("category", c) for c in CATEGORIES]
        return params

    async def _request(self, params: list[tuple[str, str]]) -> tuple[int, Any, Mapping[str, str]]:
        """Single GET against PSI. Returns (status, parsed JSON or None, headers)."""
        async with aiohttp.ClientSession() as session:
            async with session.get(self.base_url, params=params) as resp:
                try:
                    data = await resp.json(content_type=None)
                except (aiohttp.ContentTypeError, json.JSONDecodeError, ValueError):
                    data = None
                return resp.status, data, resp.headers

    async def score(self, target: str) -> Optional[dict]:
        """Run the PSI check for ``target``.

        Returns the sanitized payload, or None when PSI sent no body.
        Raises ScoringFailure (with status, upstream error text and Retry-After)
        on any non-2xx answer or transport error. No retries.
        """
        params = self.build_params(target)
        logger.info("Requesting PSI %s check for %s", STRATEGY, params[0][1])

        try:
            status, data, headers = await self._request(params)
        except aiohttp.ClientError as e:
            raise ScoringFailure(f"PSI request failed: {e}") from e

        if status >= 400:
            payload = _upstream_error(data)
            raise ScoringFailure(
                f"PSI returned HTTP {status}",
                status=status,
                payload=payload,
                retry_after=_retry_after(headers),
            )

        if not data:
            return None
        return sanitize_keys(data)
