"""
Nexus Pipeline Orchestrator

Entry point invoked after each completed import batch, and by the periodic
sweep. One run for a user:

1. Recompute the affected (state, month) buckets, bounded-parallel
2. Barrier: compute exposure only once every bucket has settled
3. Reconcile alerts against that snapshot
4. Hand new alerts to notification dispatch in a background task

Runs for the same user are serialized in-process; across processes the
unique constraints on summaries and alerts keep writes race-free.
"""

import asyncio
import time
import weakref
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Set

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nexus_monitor.alerts.engine import AlertEngine, NewAlert
from nexus_monitor.core.aggregation import AggregationResult, MonthlyAggregator
from nexus_monitor.core.exposure import ExposureCalculator
from nexus_monitor.core.thresholds import ThresholdRegistry, default_registry
from nexus_monitor.database.connection import get_db
from nexus_monitor.database.models import SalesSummary
from nexus_monitor.metrics import PIPELINE_DURATION
from nexus_monitor.notifications.service import NotificationService

logger = structlog.get_logger(__name__)


class PipelineStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"  # some buckets still failing after retries
    FAILED = "failed"


class AlertSummary(BaseModel):
    state_code: str
    level: str
    percentage: float


class PipelineResult(BaseModel):
    """Outcome of one orchestrator run for a user"""
    user_id: str
    trigger: str
    status: PipelineStatus = PipelineStatus.COMPLETED
    states: List[str] = Field(default_factory=list)
    buckets_recomputed: int = 0
    buckets_failed: List[str] = Field(default_factory=list)
    snapshots: int = 0
    new_alerts: List[AlertSummary] = Field(default_factory=list)
    aggregation_seconds: float = 0
    evaluation_seconds: float = 0
    duration_seconds: float = 0
    error: Optional[str] = None


class NexusPipeline:
    """
    Wires aggregator, calculator, alert engine and notifications together.

    Example:
        pipeline = NexusPipeline(session_factory)
        result = await pipeline.on_import_completed("user-1", ["ca", "TX"])
        await pipeline.wait_for_dispatches()
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        registry: Optional[ThresholdRegistry] = None,
        aggregator: Optional[MonthlyAggregator] = None,
        calculator: Optional[ExposureCalculator] = None,
        alert_engine: Optional[AlertEngine] = None,
        notifier: Optional[NotificationService] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry or default_registry()
        self.aggregator = aggregator or MonthlyAggregator(session_factory, registry=self.registry)
        self.calculator = calculator or ExposureCalculator(session_factory, registry=self.registry)
        self.alert_engine = alert_engine or AlertEngine(session_factory, calculator=self.calculator)
        self.notifier = notifier or NotificationService(session_factory, alert_engine=self.alert_engine)

        # An entry lives only while some run holds or awaits its lock
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._dispatch_tasks: Set[asyncio.Task] = set()

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    def _normalize_states(self, state_codes: Optional[Iterable[str]]) -> List[str]:
        states: List[str] = []
        for code in state_codes or []:
            rule = self.registry.get_threshold(code)
            if rule is None:
                logger.warning("Dropping unknown state code from import", state_code=code)
                continue
            if rule.state_code not in states:
                states.append(rule.state_code)
        return states

    async def on_import_completed(
        self,
        user_id: str,
        affected_state_codes: Optional[Iterable[str]] = None,
        as_of: Optional[datetime] = None,
        trigger: str = "import",
    ) -> PipelineResult:
        """
        Bring summaries, exposure and alerts up to date for one user.

        Args:
            user_id: Seller whose import finished
            affected_state_codes: Destination states touched by the import;
                empty re-evaluates exposure without recomputing buckets
            as_of: Evaluation date, defaults to now
            trigger: Label for logs and metrics

        Returns:
            PipelineResult. Never raises for bucket or dispatch failures.
        """
        started = time.perf_counter()
        states = self._normalize_states(affected_state_codes)
        result = PipelineResult(user_id=user_id, trigger=trigger, states=states)
        log = logger.bind(user_id=user_id, trigger=trigger)

        async with self._user_lock(user_id):
            try:
                if states:
                    aggregation: AggregationResult = await self.aggregator.recompute_for_affected_states(
                        user_id, states, as_of=as_of
                    )
                    result.buckets_recomputed = aggregation.buckets_written + aggregation.buckets_empty
                    result.buckets_failed = aggregation.failed_buckets
                    if not aggregation.succeeded:
                        result.status = PipelineStatus.PARTIAL
                result.aggregation_seconds = time.perf_counter() - started

                evaluation_started = time.perf_counter()
                snapshots = await self.calculator.compute_exposure(user_id, as_of=as_of)
                new_alerts = await self.alert_engine.reconcile_alerts(user_id, snapshots=snapshots)
                result.evaluation_seconds = time.perf_counter() - evaluation_started

                result.snapshots = len(snapshots)
                result.new_alerts = [
                    AlertSummary(state_code=a.state_code, level=a.level.value, percentage=round(a.percentage, 2))
                    for a in new_alerts
                ]
            except Exception as e:
                result.status = PipelineStatus.FAILED
                result.error = str(e)
                log.exception("Nexus pipeline failed", states=states)
                new_alerts = []

        if new_alerts:
            self._schedule_dispatch(user_id, new_alerts)

        result.duration_seconds = time.perf_counter() - started
        PIPELINE_DURATION.labels(trigger=trigger).observe(result.duration_seconds)

        log.info(
            "Nexus pipeline finished",
            status=result.status.value,
            states=states,
            buckets_recomputed=result.buckets_recomputed,
            buckets_failed=len(result.buckets_failed),
            snapshots=result.snapshots,
            new_alerts=len(result.new_alerts),
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result

    async def sweep_user(self, user_id: str, as_of: Optional[datetime] = None) -> PipelineResult:
        """Re-evaluate a user without new imports, catching window-slide crossings."""
        return await self.on_import_completed(user_id, [], as_of=as_of, trigger="sweep")

    async def active_user_ids(self) -> List[str]:
        """Users with at least one sales summary."""
        async with get_db(self.session_factory) as db:
            rows = await db.execute(select(SalesSummary.user_id).distinct().order_by(SalesSummary.user_id))
            return list(rows.scalars().all())

    def _schedule_dispatch(self, user_id: str, alerts: List[NewAlert]) -> None:
        task = asyncio.create_task(self._dispatch(user_id, alerts), name=f"nexus-dispatch-{user_id}")
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def _dispatch(self, user_id: str, alerts: List[NewAlert]) -> None:
        try:
            await self.notifier.notify(user_id, alerts)
        except Exception as e:
            # The alerts are stored; retry_unsent picks them up later
            logger.error("Background notification dispatch failed", user_id=user_id, error=str(e))

    async def wait_for_dispatches(self) -> None:
        """Wait for every scheduled dispatch to settle."""
        while self._dispatch_tasks:
            await asyncio.gather(*list(self._dispatch_tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.wait_for_dispatches()
        await self.notifier.close()


def create_pipeline(session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> NexusPipeline:
    """Pipeline over the process-wide session factory and default registry."""
    return NexusPipeline(session_factory=session_factory)
