"""
Audit worker — consumes audit tasks from RabbitMQ, one at a time.

Run with ``python -m site_status`` or the ``site-status-worker`` script.
"""

import asyncio
import logging
import signal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from site_status import database
from site_status.config import Settings, settings as default_settings
from site_status.pipeline.errors import RateLimited
from site_status.pipeline.orchestrator import AuditOrchestrator
from site_status.services import sites
from site_status.services.content import ContentClient
from site_status.services.github import GithubClient
from site_status.services.psi import PSIClient
from site_status.services.queue import TaskQueue

logger = logging.getLogger(__name__)


class AuditWorker:
    """Wires the broker, the orchestrator and the retention sweep together."""

    def __init__(self, settings: Settings, engine: Optional[AsyncEngine] = None):
        self.settings = settings
        self.engine = engine or database.engine
        self.session_factory = database.session_factory_for(self.engine)
        self.queue = TaskQueue(settings.amqp_url)
        self.orchestrator = AuditOrchestrator(
            self.session_factory,
            PSIClient(settings.pagespeed_api_key, settings.pagespeed_api_base_url),
            ContentClient(),
            GithubClient(
                settings.github_api_base_url,
                settings.github_client_id,
                settings.github_client_secret,
            ),
            settings.audit_ttl,
        )
        self._purge_task: Optional[asyncio.Task] = None
        self.stopping = asyncio.Event()

    async def start(self) -> None:
        """Prepare the database, connect, then consume unless a shutdown was requested meanwhile."""
        await database.init_db(self.engine)
        await self.purge()
        await self.queue.connect()
        if self.stopping.is_set():
            logger.info("Shutdown requested during startup; not consuming")
            return
        await self.queue.consume(self.settings.audit_tasks_queue_name, self.handle_task)
        self._purge_task = asyncio.create_task(self._purge_loop())
        logger.info("Audit worker started")

    async def stop(self) -> None:
        if self._purge_task:
            self._purge_task.cancel()
            self._purge_task = None
        await self.queue.close()
        await database.close_db(self.engine)
        logger.info("Audit worker stopped")

    async def handle_task(self, payload: Any) -> None:
        """Queue handler. A rate limit pauses consumption before the message is rejected."""
        try:
            await self.orchestrator.run(payload)
        except RateLimited as e:
            pause = e.retry_after or self.settings.rate_limit_pause_secs
            logger.warning("PSI rate limit hit while auditing %s; pausing %.0fs", e.site_id, pause)
            await self.queue.pause(pause)
            raise

    # ── Retention ───────────────────────────────────────

    async def purge(self) -> int:
        try:
            async with self.session_factory() as session:
                return await sites.purge_expired_audits(session)
        except Exception as e:
            logger.error("Expired audit purge failed: %s", e)
            return 0

    async def _purge_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.audit_purge_interval_secs)
            await self.purge()


async def run_worker(settings: Settings = default_settings) -> None:
    """Run until SIGINT/SIGTERM, then close the broker and database connections."""
    worker = AuditWorker(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stopping.set)

    try:
        await worker.start()
        await worker.stopping.wait()
        logger.info("Shutdown signal received")
    finally:
        await worker.stop()


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, default_settings.log_level.upper(), logging.INFO),
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
    )
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
