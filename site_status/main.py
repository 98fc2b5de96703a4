"""
FastAPI Application — read-side API and audit task producer.

Run with ``uvicorn site_status.main:app``.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from site_status import __version__
from site_status.config import settings
from site_status.database import close_db, init_db
from site_status.routes import router
from site_status.services.cache import SitesCache
from site_status.services.queue import QueueConnectionError, TaskQueue

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hook."""
    logger.info("Starting Site Status API v%s", __version__)
    await init_db()
    logger.info("Database ready")

    app.state.sites_cache = SitesCache(settings.sites_cache_ttl_secs)

    task_queue = TaskQueue(settings.amqp_url)
    try:
        await task_queue.connect()
        app.state.task_queue = task_queue
    except QueueConnectionError as e:
        logger.error("Audit tasks cannot be queued: %s", e)
        app.state.task_queue = None

    yield

    if app.state.task_queue is not None:
        await app.state.task_queue.close()
    await close_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Site Status API",
    description="PageSpeed audits, content and repository diffs for tracked sites.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Site Status API",
        "version": __version__,
        "docs": "/docs",
    }
