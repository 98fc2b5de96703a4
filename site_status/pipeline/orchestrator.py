"""
Audit Orchestrator — drives one audit task from site lookup to the stored record.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from site_status.models.site import Audit, Site, as_utc
from site_status.pipeline.errors import (
    LookupFailure,
    MalformedTask,
    RateLimited,
    ScoringFailure,
    error_message,
)
from site_status.services import sites
from site_status.services.content import ContentClient, ContentDiff
from site_status.services.github import GithubClient
from site_status.services.psi import PSIClient

logger = logging.getLogger(__name__)

PHASES = [
    (1, "loading",    "Load site and latest audit"),
    (2, "scoring",    "PageSpeed Insights check"),
    (3, "diffing",    "Markdown and repository diffs"),
    (4, "persisting", "Store audit record"),
]
_PHASE_LABELS = {key: label for _, key, label in PHASES}


def task_site_id(task: Any) -> str:
    """Site reference of a task payload (``siteId``, or ``_id`` from older producers)."""
    if not isinstance(task, dict):
        raise MalformedTask(f"Task payload is not an object: {task!r}")
    site_id = task.get("siteId") or task.get("_id")
    if not site_id:
        raise MalformedTask("Task payload has no site id")
    return str(site_id)


def parse_fetch_time(value: Optional[str]) -> Optional[datetime]:
    """Lighthouse ``fetchTime`` ("2024-05-01T10:00:00.000Z") as an aware datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable fetchTime %r", value)
        return None
    return as_utc(parsed)


class AuditOrchestrator:
    """Runs the loading → scoring → diffing → persisting pipeline for one task at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        psi_client: PSIClient,
        content_client: ContentClient,
        github_client: GithubClient,
        audit_ttl: timedelta,
    ):
        self.session_factory = session_factory
        self.psi = psi_client
        self.content = content_client
        self.github = github_client
        self.audit_ttl = audit_ttl
        self.phase: Optional[str] = None

    # ── Public API ──────────────────────────────────────

    async def run(self, task: Any) -> Optional[Audit]:
        """Audit the site referenced by ``task``.

        Returns the stored success record, or None when the attempt failed and
        an error record was written instead. Raises MalformedTask (nothing
        written), LookupFailure and RateLimited (both after the error record).
        """
        site_id = task_site_id(task)
        start = time.monotonic()
        self.phase = None

        try:
            site, previous = await self._phase_load(site_id)
            scoring_result = await self._phase_score(site)
            content, github_diff = await self._phase_diff(site, previous, scoring_result)
            audit = await self._phase_persist(site, scoring_result, content, github_diff)
        except Exception as exc:
            await self._record_error(site_id, exc)
            if isinstance(exc, LookupFailure):
                raise
            if isinstance(exc, ScoringFailure) and exc.is_rate_limited:
                raise RateLimited(site_id, exc.retry_after) from exc
            logger.error("Audit of site %s failed during %s: %s", site_id, self.phase, exc)
            return None

        elapsed = time.monotonic() - start
        logger.info("Audited %s in %.2f seconds", site.domain, elapsed)
        return audit

    # ── Phases ──────────────────────────────────────────

    def _enter(self, phase: str) -> None:
        self.phase = phase
        logger.debug("Phase %s: %s", phase, _PHASE_LABELS[phase])

    async def _phase_load(self, site_id: str) -> tuple[Site, Optional[Audit]]:
        self._enter("loading")
        async with self.session_factory() as session:
            site, previous = await sites.find_site_by_id(session, site_id)
        if site is None:
            raise LookupFailure(site_id)
        return site, previous

    async def _phase_score(self, site: Site) -> dict:
        self._enter("scoring")
        target = site.audit_target
        logger.info("Auditing %s (live: %s)", target, site.is_live)
        result = await self.psi.score(target)
        if not result:
            raise ScoringFailure(f"PSI returned no result for {target}")
        return result

    async def _phase_diff(
        self,
        site: Site,
        previous: Optional[Audit],
        scoring_result: dict,
    ) -> tuple[Optional[ContentDiff], str]:
        """Content and repository diffs run side by side; neither one raises."""
        self._enter("diffing")
        lighthouse = scoring_result.get("lighthouseResult") or {}
        until = parse_fetch_time(lighthouse.get("fetchTime")) or datetime.now(timezone.utc)
        since = as_utc(previous.audited_at) if previous else None
        previous_content = previous.markdown_content if previous else None

        content, github_diff = await asyncio.gather(
            self.content.diff(previous_content, scoring_result),
            self.github.diff(site.github_url, since, until),
        )
        return content, github_diff

    async def _phase_persist(
        self,
        site: Site,
        scoring_result: dict,
        content: Optional[ContentDiff],
        github_diff: str,
    ) -> Audit:
        self._enter("persisting")
        async with self.session_factory() as session:
            return await sites.save_audit(
                session, site, scoring_result, content, github_diff, self.audit_ttl
            )

    # ── Failure path ────────────────────────────────────

    async def _record_error(self, site_id: str, exc: BaseException) -> None:
        """Best-effort error record; a failing write is only logged."""
        message = error_message(exc)
        try:
            async with self.session_factory() as session:
                await sites.save_audit_error(session, site_id, message, self.audit_ttl)
        except Exception as write_err:
            logger.error("Could not save error audit for site %s: %s", site_id, write_err)
