"""
Unit Tests - Pipeline Orchestrator
"""
import asyncio
import gc
from datetime import datetime

from sqlalchemy import func, select

from nexus_monitor.core.aggregation import MonthlyAggregator
from nexus_monitor.core.exposure import ExposureCalculator
from nexus_monitor.database.models import AlertLevel, NexusAlert
from nexus_monitor.notifications.service import NotificationService
from nexus_monitor.pipeline.orchestrator import NexusPipeline, PipelineStatus


async def alert_count(session_factory, user_id="u1") -> int:
    async with session_factory() as db:
        return await db.scalar(select(func.count(NexusAlert.alert_id)).where(NexusAlert.user_id == user_id))


class BrokenCalculator(ExposureCalculator):
    async def compute_exposure(self, user_id, as_of=None):
        raise RuntimeError("summary store unavailable")


class TestOnImportCompleted:
    """Tests for the import-completed entry point"""

    async def test_end_to_end(self, pipeline, dispatcher, add_orders, session_factory, as_of):
        await add_orders("u1", [
            {"state": "IL", "date": datetime(2025, 2, 1), "total": "60000"},
            {"state": "IL", "date": datetime(2025, 5, 1), "total": "60000"},
        ])

        result = await pipeline.on_import_completed("u1", ["il"], as_of=as_of)
        await pipeline.wait_for_dispatches()

        assert result.status == PipelineStatus.COMPLETED
        assert result.states == ["IL"]
        assert result.buckets_recomputed == 5
        assert result.snapshots == 1
        assert [(a.state_code, a.level) for a in result.new_alerts] == [("IL", "exceeded")]
        assert await alert_count(session_factory) == 3
        assert [(n.state_code, n.alert_level) for n in dispatcher.sent] == [("IL", AlertLevel.EXCEEDED)]

    async def test_second_run_creates_nothing(self, pipeline, dispatcher, add_orders, as_of):
        await add_orders("u1", [{"state": "IL", "date": datetime(2025, 2, 1), "total": "120000"}])

        await pipeline.on_import_completed("u1", ["IL"], as_of=as_of)
        second = await pipeline.on_import_completed("u1", ["IL"], as_of=as_of)
        await pipeline.wait_for_dispatches()

        assert second.new_alerts == []
        assert len(dispatcher.sent) == 1

    async def test_retry_after_dispatch_does_not_renotify_lower_levels(
        self, pipeline, dispatcher, add_orders, as_of
    ):
        await add_orders("u1", [{"state": "IL", "date": datetime(2025, 3, 1), "total": "120000"}])

        await pipeline.on_import_completed("u1", ["IL"], as_of=as_of)
        await pipeline.wait_for_dispatches()
        await pipeline.notifier.retry_unsent("u1")
        await pipeline.notifier.retry_unsent("u1")

        assert [(n.state_code, n.alert_level) for n in dispatcher.sent] == [("IL", AlertLevel.EXCEEDED)]

    async def test_user_locks_released_after_runs(self, pipeline, add_orders, as_of):
        await add_orders("u1", [{"state": "IL", "date": datetime(2025, 3, 1)}])
        await add_orders("u2", [{"state": "TX", "date": datetime(2025, 3, 1)}])

        await asyncio.gather(
            pipeline.on_import_completed("u1", ["IL"], as_of=as_of),
            pipeline.on_import_completed("u1", ["IL"], as_of=as_of),
            pipeline.on_import_completed("u2", ["TX"], as_of=as_of),
        )
        gc.collect()

        assert len(pipeline._user_locks) == 0

    async def test_unknown_states_are_dropped(self, pipeline, add_orders, as_of):
        await add_orders("u1", [{"state": "TX", "date": datetime(2025, 6, 1)}])

        result = await pipeline.on_import_completed("u1", ["TX", "ZZ", "", "tx"], as_of=as_of)

        assert result.status == PipelineStatus.COMPLETED
        assert result.states == ["TX"]

    async def test_concurrent_runs_for_one_user_are_serialized(self, pipeline, add_orders, session_factory, as_of):
        await add_orders("u1", [{"state": "IL", "date": datetime(2025, 2, 1), "total": "120000"}])

        results = await asyncio.gather(
            pipeline.on_import_completed("u1", ["IL"], as_of=as_of),
            pipeline.on_import_completed("u1", ["IL"], as_of=as_of),
        )
        await pipeline.wait_for_dispatches()

        assert sorted(len(r.new_alerts) for r in results) == [0, 1]
        assert await alert_count(session_factory) == 3

    async def test_dispatch_failure_does_not_fail_run(self, session_factory, failing_dispatcher, add_orders, as_of):
        notifier = NotificationService(session_factory, dispatcher=failing_dispatcher)
        pipeline = NexusPipeline(session_factory, notifier=notifier)
        await add_orders("u1", [{"state": "IL", "date": datetime(2025, 2, 1), "total": "120000"}])

        result = await pipeline.on_import_completed("u1", ["IL"], as_of=as_of)
        await pipeline.wait_for_dispatches()

        assert result.status == PipelineStatus.COMPLETED
        assert await alert_count(session_factory) == 3

    async def test_failed_buckets_make_run_partial(self, session_factory, dispatcher, add_orders, as_of):
        class FailingTexas(MonthlyAggregator):
            async def recompute_bucket(self, user_id, state_code, period):
                if state_code == "TX":
                    raise ConnectionError("lost connection")
                return await super().recompute_bucket(user_id, state_code, period)

        notifier = NotificationService(session_factory, dispatcher=dispatcher)
        pipeline = NexusPipeline(
            session_factory,
            aggregator=FailingTexas(session_factory, retry_attempts=1, retry_backoff_ms=0),
            notifier=notifier,
        )
        await add_orders("u1", [
            {"state": "TX", "date": datetime(2025, 6, 1)},
            {"state": "IL", "date": datetime(2025, 6, 1), "total": "120000"},
        ])

        result = await pipeline.on_import_completed("u1", ["TX", "IL"], as_of=as_of)
        await pipeline.wait_for_dispatches()

        assert result.status == PipelineStatus.PARTIAL
        assert result.buckets_failed == ["TX:2025-06"]
        assert [a.state_code for a in result.new_alerts] == ["IL"]

    async def test_evaluation_error_reported(self, session_factory, dispatcher, add_orders, as_of):
        notifier = NotificationService(session_factory, dispatcher=dispatcher)
        pipeline = NexusPipeline(session_factory, calculator=BrokenCalculator(session_factory), notifier=notifier)
        await add_orders("u1", [{"state": "IL", "date": datetime(2025, 2, 1), "total": "120000"}])

        result = await pipeline.on_import_completed("u1", ["IL"], as_of=as_of)

        assert result.status == PipelineStatus.FAILED
        assert "summary store unavailable" in result.error
        assert await alert_count(session_factory) == 0


class TestSweep:
    """Tests for the periodic sweep entry point"""

    async def test_sweep_evaluates_without_recompute(self, pipeline, add_orders, session_factory, as_of):
        await add_orders("u1", [{"state": "FL", "date": datetime(2025, 3, 1), "total": "95000"}])
        await MonthlyAggregator(session_factory).recompute_for_affected_states("u1", ["FL"], as_of=as_of)

        result = await pipeline.sweep_user("u1", as_of=as_of)
        await pipeline.wait_for_dispatches()

        assert result.trigger == "sweep"
        assert result.buckets_recomputed == 0
        assert [(a.state_code, a.level) for a in result.new_alerts] == [("FL", "warning")]

    async def test_active_user_ids(self, pipeline, add_orders, session_factory, as_of):
        await add_orders("u2", [{"state": "FL", "date": datetime(2025, 3, 1)}])
        await add_orders("u1", [{"state": "CA", "date": datetime(2025, 3, 1)}])
        await add_orders("u3", [{"state": "CA", "date": datetime(2025, 3, 1)}])
        for user_id, state in (("u1", "CA"), ("u2", "FL")):
            await MonthlyAggregator(session_factory).recompute_for_affected_states(user_id, [state], as_of=as_of)

        assert await pipeline.active_user_ids() == ["u1", "u2"]
