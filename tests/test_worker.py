"""
Tests for the audit worker — rate-limit backpressure, retention sweep, lifecycle.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select

from site_status.config import Settings
from site_status.models.site import Audit
from site_status.pipeline.errors import LookupFailure, RateLimited, ScoringFailure
from site_status.worker import AuditWorker
from tests.conftest import make_audit, make_site


def _settings(**overrides):
    values = {"rate_limit_pause_secs": 60, "audit_purge_interval_secs": 3600}
    values.update(overrides)
    return Settings(**values)


def _message(body: bytes):
    message = MagicMock()
    message.body = body
    message.ack = AsyncMock()
    message.reject = AsyncMock()
    return message


class TestHandleTask:
    async def test_success(self, db_engine):
        worker = AuditWorker(_settings(), db_engine)
        worker.queue.pause = AsyncMock()
        with patch.object(worker.orchestrator, "run", new_callable=AsyncMock) as run:
            await worker.handle_task({"siteId": "abc"})
        run.assert_awaited_once_with({"siteId": "abc"})
        worker.queue.pause.assert_not_awaited()

    async def test_rate_limit_pauses_for_retry_after(self, db_engine):
        worker = AuditWorker(_settings(), db_engine)
        worker.queue.pause = AsyncMock()
        with patch.object(worker.orchestrator, "run", new_callable=AsyncMock,
                          side_effect=RateLimited("abc", retry_after=30.0)):
            with pytest.raises(RateLimited):
                await worker.handle_task({"siteId": "abc"})
        worker.queue.pause.assert_awaited_once_with(30.0)

    async def test_rate_limit_default_pause(self, db_engine):
        worker = AuditWorker(_settings(rate_limit_pause_secs=90), db_engine)
        worker.queue.pause = AsyncMock()
        with patch.object(worker.orchestrator, "run", new_callable=AsyncMock,
                          side_effect=RateLimited("abc")):
            with pytest.raises(RateLimited):
                await worker.handle_task({"siteId": "abc"})
        worker.queue.pause.assert_awaited_once_with(90)

    async def test_lookup_failure_propagates_without_pause(self, db_engine):
        worker = AuditWorker(_settings(), db_engine)
        worker.queue.pause = AsyncMock()
        with patch.object(worker.orchestrator, "run", new_callable=AsyncMock,
                          side_effect=LookupFailure("abc")):
            with pytest.raises(LookupFailure):
                await worker.handle_task({"siteId": "abc"})
        worker.queue.pause.assert_not_awaited()


class TestRateLimitedDelivery:
    async def test_rate_limited_message_is_discarded(self, db_session, db_engine, session_factory):
        """A 429 from PSI: one error record, consumer paused, message rejected without requeue."""
        site = await make_site(db_session)
        worker = AuditWorker(_settings(), db_engine)
        worker.queue.pause = AsyncMock()
        worker.queue._handler = worker.handle_task
        worker.orchestrator.psi.score = AsyncMock(side_effect=ScoringFailure(
            "PSI returned HTTP 429", status=429, payload="Quota exceeded",
        ))
        message = _message(f'{{"siteId": "{site.id}"}}'.encode())

        await worker.queue._on_message(message)

        message.reject.assert_awaited_once_with(requeue=False)
        message.ack.assert_not_awaited()
        worker.queue.pause.assert_awaited_once_with(60)
        async with session_factory() as session:
            rows = (await session.execute(select(Audit))).scalars().all()
        assert [(r.is_error, r.error_message) for r in rows] == [(True, "Quota exceeded")]

    async def test_absorbed_failure_is_acked(self, db_session, db_engine):
        site = await make_site(db_session)
        worker = AuditWorker(_settings(), db_engine)
        worker.queue._handler = worker.handle_task
        worker.orchestrator.psi.score = AsyncMock(side_effect=ScoringFailure("HTTP 500", status=500))
        message = _message(f'{{"siteId": "{site.id}"}}'.encode())

        await worker.queue._on_message(message)

        message.ack.assert_awaited_once()


class TestPurge:
    async def test_purge_removes_expired(self, db_session, db_engine):
        site = await make_site(db_session)
        await make_audit(db_session, site.id, audited_at=datetime.now(timezone.utc) - timedelta(days=60))
        worker = AuditWorker(_settings(), db_engine)

        assert await worker.purge() == 1

    async def test_purge_failure_is_logged(self, db_engine):
        worker = AuditWorker(_settings(), db_engine)
        worker.session_factory = MagicMock(side_effect=RuntimeError("db down"))
        assert await worker.purge() == 0


class TestEngine:
    async def test_sessions_bound_to_given_engine(self, db_engine):
        worker = AuditWorker(_settings(), db_engine)
        assert worker.engine is db_engine
        assert worker.session_factory.kw["bind"] is db_engine
        assert worker.orchestrator.session_factory is worker.session_factory

    async def test_defaults_to_shared_engine(self):
        from site_status import database

        worker = AuditWorker(_settings())
        assert worker.engine is database.engine


class TestLifecycle:
    def _worker(self, db_engine):
        worker = AuditWorker(_settings(audit_tasks_queue_name="audit-tasks"), db_engine)
        worker.queue.connect = AsyncMock()
        worker.queue.consume = AsyncMock()
        worker.queue.close = AsyncMock()
        return worker

    async def test_start_and_stop(self, db_engine):
        worker = self._worker(db_engine)

        with patch("site_status.worker.database.init_db", new_callable=AsyncMock) as init_db, \
             patch("site_status.worker.database.close_db", new_callable=AsyncMock) as close_db:
            await worker.start()
            worker.queue.consume.assert_awaited_once_with("audit-tasks", worker.handle_task)
            assert worker._purge_task is not None
            await worker.stop()

        init_db.assert_awaited_once_with(db_engine)
        close_db.assert_awaited_once_with(db_engine)
        worker.queue.close.assert_awaited_once()
        assert worker._purge_task is None

    async def test_shutdown_during_startup_skips_consume(self, db_engine):
        """A signal that lands while connecting leaves the worker idle; stop() still cleans up."""
        worker = self._worker(db_engine)
        worker.queue.connect = AsyncMock(side_effect=lambda: worker.stopping.set())

        with patch("site_status.worker.database.close_db", new_callable=AsyncMock) as close_db:
            await worker.start()
            worker.queue.consume.assert_not_awaited()
            assert worker._purge_task is None
            await worker.stop()

        worker.queue.close.assert_awaited_once()
        close_db.assert_awaited_once_with(db_engine)

    async def test_run_worker_stops_after_signal(self, db_engine):
        from site_status import worker as worker_module

        instance = self._worker(db_engine)
        instance.start = AsyncMock(side_effect=lambda: instance.stopping.set())
        instance.stop = AsyncMock()
        loop = asyncio.get_running_loop()

        with patch.object(worker_module, "AuditWorker", return_value=instance), \
             patch.object(loop, "add_signal_handler") as add_signal_handler:
            await worker_module.run_worker(_settings())

        handlers = [c.args[1] for c in add_signal_handler.call_args_list]
        assert handlers == [instance.stopping.set, instance.stopping.set]
        instance.start.assert_awaited_once()
        instance.stop.assert_awaited_once()

    async def test_run_worker_stops_when_start_fails(self, db_engine):
        from site_status import worker as worker_module

        instance = self._worker(db_engine)
        instance.start = AsyncMock(side_effect=RuntimeError("broker down"))
        instance.stop = AsyncMock()

        with patch.object(worker_module, "AuditWorker", return_value=instance), \
             patch.object(asyncio.get_running_loop(), "add_signal_handler"):
            with pytest.raises(RuntimeError):
                await worker_module.run_worker(_settings())

        instance.stop.assert_awaited_once()
