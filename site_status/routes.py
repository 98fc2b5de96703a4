"""
API Routes — sites, audit history, audit task producers, health.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from site_status import __version__
from site_status.config import settings
from site_status.database import get_db
from site_status.schemas import (
    HealthResponse,
    LiveStatusRequest,
    QueuedResponse,
    SiteDetailResponse,
    SiteListResponse,
    SiteRequest,
)
from site_status.services import sites
from site_status.services.queue import QueueError, queue_site_to_audit

logger = logging.getLogger(__name__)

router = APIRouter()


async def _enqueue_audit(request: Request, site_id: str) -> None:
    task_queue = getattr(request.app.state, "task_queue", None)
    if task_queue is None:
        raise HTTPException(503, "Task queue is not available")
    try:
        await queue_site_to_audit(task_queue, settings.audit_tasks_queue_name, site_id)
    except QueueError as e:
        logger.error("Could not queue audit for %s: %s", site_id, e)
        raise HTTPException(503, "Task queue is not available") from e


def _invalidate_cache(request: Request) -> None:
    cache = getattr(request.app.state, "sites_cache", None)
    if cache is not None:
        cache.invalidate()


# ── Health ──────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health(request: Request):
    task_queue = getattr(request.app.state, "task_queue", None)
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        queue=task_queue.stats if task_queue is not None else None,
    )


# ── Read side ───────────────────────────────────────────

@router.get("/sites", response_model=SiteListResponse, tags=["sites"])
async def list_sites(request: Request, session: AsyncSession = Depends(get_db)):
    """All sites with their latest audit; errors and unaudited sites last."""
    data = await request.app.state.sites_cache.get(session)
    return SiteListResponse(sites=data, total=len(data))


@router.get("/sites/{domain}", response_model=SiteDetailResponse, tags=["sites"])
async def get_site(domain: str, session: AsyncSession = Depends(get_db)):
    data = await sites.get_site_by_domain(session, domain)
    if data is None:
        raise HTTPException(404, f"Site {domain} not found")
    return data


# ── Mutations / task producers ──────────────────────────

@router.post("/sites", response_model=QueuedResponse, status_code=201, tags=["sites"])
async def add_site(req: SiteRequest, request: Request, session: AsyncSession = Depends(get_db)):
    """Register a site and queue its first audit."""
    try:
        site = await sites.create_site(
            session,
            req.domain,
            github_url=req.github_url,
            prod_url=req.prod_url,
            is_live=req.is_live,
        )
    except sites.SiteExistsError as e:
        raise HTTPException(409, str(e)) from e

    _invalidate_cache(request)
    await _enqueue_audit(request, site.id)
    return QueuedResponse(siteId=site.id, domain=site.domain, message="Site added, audit queued")


@router.put("/sites/{domain}/live", response_model=QueuedResponse, tags=["sites"])
async def set_live_status(
    domain: str,
    req: LiveStatusRequest,
    request: Request,
    session: AsyncSession = Depends(get_db),
):
    """Toggle the live flag and re-audit against the new target."""
    site = await sites.set_live_status(session, domain, req.is_live)
    if site is None:
        raise HTTPException(404, f"Site {domain} not found")

    _invalidate_cache(request)
    await _enqueue_audit(request, site.id)
    state = "live" if site.is_live else "not live"
    return QueuedResponse(siteId=site.id, domain=site.domain, message=f"Site marked {state}, audit queued")


@router.post("/sites/{domain}/audit", response_model=QueuedResponse, status_code=202, tags=["sites"])
async def run_audit(domain: str, request: Request, session: AsyncSession = Depends(get_db)):
    data = await sites.get_site_by_domain(session, domain)
    if data is None:
        raise HTTPException(404, f"Site {domain} not found")

    await _enqueue_audit(request, data["id"])
    return QueuedResponse(siteId=data["id"], domain=domain, message="Audit queued")
