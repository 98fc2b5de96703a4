"""
Shared test fixtures — async DB, mock broker, sample PSI payloads, FastAPI test client.
"""

import re
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.pool import StaticPool

from site_status.database import Base, get_db, make_engine, session_factory_for
from site_status.main import app
from site_status.models.site import Audit, Site
from site_status.services.cache import SitesCache


# ── Test Database (SQLite in-memory) ────────────────────

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

@pytest_asyncio.fixture()
async def db_engine():
    engine = make_engine(TEST_DB_URL, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(db_engine):
    return session_factory_for(db_engine)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ── Broker ──────────────────────────────────────────────

@pytest.fixture()
def mock_task_queue():
    """Stand-in for a connected TaskQueue."""
    task_queue = MagicMock()
    task_queue.publish = AsyncMock()
    task_queue.pause = AsyncMock()
    task_queue.stats = {"processed": 0, "rejected": 0, "paused": False}
    return task_queue


@pytest_asyncio.fixture()
async def client(session_factory, mock_task_queue):
    """FastAPI test client with test DB and mock broker injected (lifespan does not run)."""

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.state.task_queue = mock_task_queue
    app.state.sites_cache = SitesCache(ttl_secs=300)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Sample Data ─────────────────────────────────────────

def psi_payload(
    final_url: str = "https://example.com/",
    fetch_time: str = "2024-05-02T12:00:00.000Z",
    performance: float = 0.9,
    accessibility: float = 0.95,
    best_practices: float = 1.0,
    seo: float = 0.8,
) -> dict:
    """A PSI response as the scoring client returns it (keys already sanitized)."""
    return {
        "id": final_url,
        "loadingExperience": {"metrics": {}},
        "lighthouseResult": {
            "requestedUrl": final_url,
            "finalUrl": final_url,
            "mainDocumentUrl": final_url,
            "finalDisplayedUrl": final_url,
            "lighthouseVersion": "11.0.0",
            "userAgent": "Mozilla/5.0",
            "fetchTime": fetch_time,
            "environment": {"networkUserAgent": "Mozilla/5.0"},
            "runWarnings": [],
            "configSettings": {"formFactor": "mobile"},
            "timing": {"total": 1234.5},
            "categories": {
                "performance": {"id": "performance", "score": performance},
                "accessibility": {"id": "accessibility", "score": accessibility},
                "best-practices": {"id": "best-practices", "score": best_practices},
                "seo": {"id": "seo", "score": seo},
            },
            "audits": {"first-contentful-paint": {"score": 1, "numericValue": 800}},
            "fullPageScreenshot": {"screenshot": {"data": "data:image/jpeg;base64,AAAA"}},
        },
    }


async def make_site(session, domain="example.com", **kwargs) -> Site:
    site = Site(domain=domain, **kwargs)
    session.add(site)
    await session.commit()
    await session.refresh(site)
    return site


async def make_audit(session, site_id, *, audited_at=None, ttl=timedelta(days=30), **kwargs) -> Audit:
    audited_at = audited_at or datetime.now(timezone.utc)
    audit = Audit(site_id=site_id, audited_at=audited_at, expires_at=audited_at + ttl, **kwargs)
    session.add(audit)
    await session.commit()
    await session.refresh(audit)
    return audit


# ── Unified diff application ────────────────────────────

_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


def apply_patch(old: str, patch: str) -> str:
    """Apply a unified diff (as produced by content.create_patch) to ``old``."""
    old_lines = old.splitlines(keepends=True)
    entries: list[list] = []
    for line in patch.splitlines(keepends=True):
        if line.startswith("\\"):
            entries[-1][1] = entries[-1][1].rstrip("\n")
        else:
            entries.append([line[:1], line[1:], line])

    out: list[str] = []
    pos = 0
    in_hunk = False
    for tag, text, raw in entries:
        m = _HUNK_RE.match(raw)
        if m:
            start = int(m.group(1))
            length = int(m.group(2)) if m.group(2) is not None else 1
            index = start - 1 if length else start
            out.extend(old_lines[pos:index])
            pos = index
            in_hunk = True
        elif not in_hunk:
            continue  # ---/+++ headers
        elif tag == " ":
            out.append(old_lines[pos])
            pos += 1
        elif tag == "-":
            pos += 1
        elif tag == "+":
            out.append(text)
    out.extend(old_lines[pos:])
    return "".join(out)
