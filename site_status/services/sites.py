"""
Site Status — persistence for sites and audit records.

Write side (used by the audit worker): site lookup with its latest audit,
success and error records. Read side (used by the HTTP API): one site with
its audit history, all sites with their latest audit in triage order.
Audit records carry an ``expires_at`` stamp; reads ignore expired rows and
``purge_expired_audits`` deletes them.
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from site_status.models.site import Audit, Site
from site_status.services.content import ContentDiff

logger = logging.getLogger(__name__)

# Lighthouse result fields worth keeping; the audits/fullPageScreenshot blobs are not.
LIGHTHOUSE_FIELDS = (
    "categories",
    "requestedUrl",
    "finalUrl",
    "mainDocumentUrl",
    "finalDisplayedUrl",
    "lighthouseVersion",
    "userAgent",
    "environment",
    "runWarnings",
    "configSettings",
    "timing",
    "fetchTime",
)

# Worst first: the sites list is a to-do list
SORT_CATEGORIES = ("performance", "seo", "accessibility", "best-practices")


class SiteExistsError(Exception):
    """A site with that domain is already registered."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def trim_lighthouse_result(scoring_result: dict) -> dict:
    lighthouse = (scoring_result or {}).get("lighthouseResult") or {}
    return {k: lighthouse[k] for k in LIGHTHOUSE_FIELDS if k in lighthouse}


# ── Write side ──────────────────────────────────────────


async def latest_audit(session: AsyncSession, site_id: str, now: Optional[datetime] = None) -> Optional[Audit]:
    """Most recent non-expired audit of a site (ties broken by insertion order)."""
    now = now or _now()
    result = await session.execute(
        select(Audit)
        .where(Audit.site_id == site_id, Audit.expires_at > now)
        .order_by(Audit.audited_at.desc(), Audit.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_site_by_id(session: AsyncSession, site_id: str) -> tuple[Optional[Site], Optional[Audit]]:
    """Return ``(site, latest_audit)``; ``(None, None)`` when the site is unknown."""
    site = await session.get(Site, site_id)
    if site is None:
        return None, None
    return site, await latest_audit(session, site.id)


async def save_audit(
    session: AsyncSession,
    site: Site,
    scoring_result: dict,
    content: Optional[ContentDiff],
    github_diff: str,
    ttl: timedelta,
) -> Audit:
    """Persist a successful audit and stamp the site's last audit time.

    ``site`` is the snapshot the audit ran against (it may be detached); the
    record takes its live flag from it. Only ``last_audited_at`` is written
    back, so site changes made while the audit ran are kept.
    """
    now = _now()
    audit = Audit(
        site_id=site.id,
        audited_at=now,
        expires_at=now + ttl,
        is_live=site.is_live,
        is_error=False,
        audit_result=trim_lighthouse_result(scoring_result),
        markdown_content=content.content if content else None,
        markdown_diff=content.diff if content else None,
        github_diff=github_diff or "",
    )
    session.add(audit)
    await session.execute(
        update(Site).where(Site.id == site.id).values(last_audited_at=now)
    )
    await session.commit()
    await session.refresh(audit)
    logger.info("Saved audit %d for %s", audit.id, site.domain)
    return audit


async def save_audit_error(
    session: AsyncSession,
    site_id: str,
    message: str,
    ttl: timedelta,
) -> Audit:
    """Persist an error record. The site may not exist; the record is written anyway."""
    now = _now()
    site = await session.get(Site, site_id)
    audit = Audit(
        site_id=site_id,
        audited_at=now,
        expires_at=now + ttl,
        is_live=site.is_live if site else False,
        is_error=True,
        error_message=message,
        github_diff="",
    )
    session.add(audit)
    if site is not None:
        site.last_audited_at = now
    await session.commit()
    await session.refresh(audit)
    logger.warning("Saved error audit for site %s: %s", site_id, message)
    return audit


# ── Read side ───────────────────────────────────────────


async def get_site_by_domain(session: AsyncSession, domain: str) -> Optional[dict]:
    """Site with its non-expired audits (newest first) and ``lastAudit``."""
    site = (
        await session.execute(select(Site).where(Site.domain == domain))
    ).scalar_one_or_none()
    if site is None:
        return None

    result = await session.execute(
        select(Audit)
        .where(Audit.site_id == site.id, Audit.expires_at > _now())
        .order_by(Audit.audited_at.desc(), Audit.id.desc())
    )
    audits = [a.to_dict() for a in result.scalars().all()]
    data = site.to_dict()
    data["audits"] = audits
    data["lastAudit"] = audits[0] if audits else None
    return data


def _sort_key(pair: tuple[Site, Optional[Audit]]) -> tuple:
    _, audit = pair
    if audit is None or audit.is_error:
        return (1,)
    categories = (audit.audit_result or {}).get("categories") or {}

    def _score(name: str) -> float:
        score = (categories.get(name) or {}).get("score")
        return score if isinstance(score, (int, float)) else -math.inf

    return (0,) + tuple(_score(name) for name in SORT_CATEGORIES)


def sort_sites(pairs: list[tuple[Site, Optional[Audit]]]) -> list[tuple[Site, Optional[Audit]]]:
    """Errors and never-audited sites last, otherwise ascending by category score."""
    return sorted(pairs, key=_sort_key)


async def get_sites_with_latest_audit(session: AsyncSession) -> list[dict]:
    """All sites, each with its latest non-expired audit, in triage order."""
    ranked = (
        select(
            Audit.id.label("audit_id"),
            func.row_number()
            .over(
                partition_by=Audit.site_id,
                order_by=(Audit.audited_at.desc(), Audit.id.desc()),
            )
            .label("rn"),
        )
        .where(Audit.expires_at > _now())
        .subquery()
    )
    latest_ids = select(ranked.c.audit_id).where(ranked.c.rn == 1)
    audits = (
        await session.execute(select(Audit).where(Audit.id.in_(latest_ids)))
    ).scalars().all()
    by_site = {a.site_id: a for a in audits}

    sites = (await session.execute(select(Site).order_by(Site.domain))).scalars().all()
    entries = []
    for site, audit in sort_sites([(s, by_site.get(s.id)) for s in sites]):
        data = site.to_dict()
        data["lastAudit"] = audit.to_dict() if audit else None
        entries.append(data)
    return entries


# ── Mutations ───────────────────────────────────────────


async def create_site(
    session: AsyncSession,
    domain: str,
    github_url: Optional[str] = None,
    prod_url: Optional[str] = None,
    is_live: bool = False,
) -> Site:
    site = Site(domain=domain, github_url=github_url, prod_url=prod_url, is_live=is_live)
    session.add(site)
    try:
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise SiteExistsError(f"Site {domain} already exists") from e
    await session.refresh(site)
    logger.info("Registered site %s (%s)", domain, site.id)
    return site


async def set_live_status(session: AsyncSession, domain: str, is_live: bool) -> Optional[Site]:
    site = (
        await session.execute(select(Site).where(Site.domain == domain))
    ).scalar_one_or_none()
    if site is None:
        return None
    site.is_live = is_live
    await session.commit()
    await session.refresh(site)
    logger.info("Set live status of %s to %s", domain, is_live)
    return site


# ── Retention ───────────────────────────────────────────


async def purge_expired_audits(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Delete audit records past their ``expires_at``. Returns the number removed."""
    now = now or _now()
    result = await session.execute(delete(Audit).where(Audit.expires_at <= now))
    await session.commit()
    removed = result.rowcount or 0
    if removed:
        logger.info("Purged %d expired audit records", removed)
    return removed
