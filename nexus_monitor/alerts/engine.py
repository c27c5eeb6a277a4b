"""
Nexus Alert Engine

Keeps at most one alert per (user, state, level) and creates the missing
ones when exposure crosses a level.

Alerts are monotonic: once a level exists for a state it is never revoked
or re-created, even if sales later drop back below the threshold.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple
import uuid

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nexus_monitor.alerts.messages import alert_message
from nexus_monitor.config import get_settings
from nexus_monitor.core.exposure import ExposureCalculator, ExposureSnapshot, ExposureStatus
from nexus_monitor.database.connection import get_db
from nexus_monitor.database.models import AlertLevel, NexusAlert, utcnow
from nexus_monitor.database.statements import upsert_insert
from nexus_monitor.metrics import ALERTS_CREATED

logger = structlog.get_logger(__name__)

MAX_STORED_PERCENTAGE = Decimal("999.99")

_REQUIRED_LEVELS = {
    ExposureStatus.EXCEEDED: [AlertLevel.EXCEEDED, AlertLevel.WARNING, AlertLevel.APPROACHING],
    ExposureStatus.WARNING: [AlertLevel.WARNING, AlertLevel.APPROACHING],
    ExposureStatus.APPROACHING: [AlertLevel.APPROACHING],
    ExposureStatus.SAFE: [],
}


def required_levels(status: ExposureStatus) -> List[AlertLevel]:
    """Alert levels a state at ``status`` must have, highest first."""
    return list(_REQUIRED_LEVELS[status])


def levels_at_or_below(level: AlertLevel) -> List[AlertLevel]:
    """Levels a notification at ``level`` supersedes, itself included."""
    return [candidate for candidate in AlertLevel if candidate.severity <= level.severity]


def _stored_percentage(pct: float) -> Decimal:
    return min(Decimal(str(pct)), MAX_STORED_PERCENTAGE).quantize(Decimal("0.01"))


@dataclass
class NewAlert:
    """A freshly created alert, handed to notification dispatch"""
    alert_id: uuid.UUID
    user_id: str
    state_code: str
    state_name: str
    level: AlertLevel
    sales_amount: Decimal
    threshold: Optional[Decimal]
    percentage: float
    message: str

    @classmethod
    def from_record(cls, record: NexusAlert) -> "NewAlert":
        return cls(
            alert_id=record.alert_id,
            user_id=record.user_id,
            state_code=record.state_code,
            state_name=record.state_name,
            level=record.alert_level,
            sales_amount=record.sales_amount,
            threshold=record.threshold,
            percentage=float(record.percentage),
            message=record.message,
        )


class AlertEngine:
    """
    Reconciles stored alerts against current exposure.

    Existence is checked in one query up front; each missing level is then
    inserted with ON CONFLICT DO NOTHING, so a concurrent writer that got
    there first turns the insert into a no-op rather than an error.

    Example:
        engine = AlertEngine(session_factory)
        new_alerts = await engine.reconcile_alerts("user-1")
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        calculator: Optional[ExposureCalculator] = None,
    ):
        self.session_factory = session_factory
        self.calculator = calculator or ExposureCalculator(session_factory)

    async def _existing_keys(self, db: AsyncSession, user_id: str) -> Set[Tuple[str, AlertLevel]]:
        rows = await db.execute(
            select(NexusAlert.state_code, NexusAlert.alert_level).where(NexusAlert.user_id == user_id)
        )
        return {(row.state_code, row.alert_level) for row in rows}

    async def _insert_alert(
        self,
        db: AsyncSession,
        user_id: str,
        snapshot: ExposureSnapshot,
        level: AlertLevel,
    ) -> Optional[NewAlert]:
        message = alert_message(
            snapshot.state_name,
            level,
            snapshot.evaluated_sales,
            snapshot.sales_threshold,
            snapshot.governing_pct,
        )
        alert_id = uuid.uuid4()

        stmt = (
            upsert_insert(db, NexusAlert)
            .values(
                alert_id=alert_id,
                user_id=user_id,
                state_code=snapshot.state_code,
                state_name=snapshot.state_name,
                alert_level=level,
                sales_amount=snapshot.evaluated_sales,
                threshold=snapshot.sales_threshold,
                percentage=_stored_percentage(snapshot.governing_pct),
                message=message,
                read=False,
                email_sent=False,
                notification_skipped=False,
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["user_id", "state_code", "alert_level"])
            .returning(NexusAlert.alert_id)
        )
        created_id = (await db.execute(stmt)).scalar_one_or_none()
        if created_id is None:
            logger.debug(
                "Alert already created concurrently",
                user_id=user_id,
                state_code=snapshot.state_code,
                level=level.value,
            )
            return None

        ALERTS_CREATED.labels(level=level.value).inc()
        return NewAlert(
            alert_id=created_id,
            user_id=user_id,
            state_code=snapshot.state_code,
            state_name=snapshot.state_name,
            level=level,
            sales_amount=snapshot.evaluated_sales,
            threshold=snapshot.sales_threshold,
            percentage=snapshot.governing_pct,
            message=message,
        )

    async def reconcile_alerts(
        self,
        user_id: str,
        as_of: Optional[datetime] = None,
        snapshots: Optional[Dict[str, ExposureSnapshot]] = None,
    ) -> List[NewAlert]:
        """
        Create every missing required alert level for the user.

        Args:
            user_id: Seller to reconcile
            as_of: Evaluation date when snapshots are computed here
            snapshots: Precomputed exposure, skips the calculator when given

        Returns:
            The highest newly created level per state. States where nothing
            new was created are absent.
        """
        if snapshots is None:
            snapshots = await self.calculator.compute_exposure(user_id, as_of=as_of)

        new_alerts: List[NewAlert] = []

        async with get_db(self.session_factory) as db:
            existing = await self._existing_keys(db, user_id)

            for state_code in sorted(snapshots):
                snapshot = snapshots[state_code]
                created: List[NewAlert] = []

                for level in required_levels(snapshot.status):
                    if (snapshot.state_code, level) in existing:
                        continue
                    alert = await self._insert_alert(db, user_id, snapshot, level)
                    if alert is not None:
                        created.append(alert)

                if created:
                    top = max(created, key=lambda a: a.level.severity)
                    new_alerts.append(top)
                    logger.info(
                        "Nexus alert created",
                        user_id=user_id,
                        state_code=top.state_code,
                        level=top.level.value,
                        levels_created=[a.level.value for a in created],
                        percentage=round(top.percentage, 2),
                    )

        return new_alerts

    async def list_alerts(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: Optional[int] = None,
    ) -> Tuple[List[NexusAlert], int]:
        """
        Alerts for a user, newest first.

        Returns:
            (alerts, unread_count) where unread_count covers all alerts,
            not just the returned page.
        """
        limit = limit or get_settings().pipeline.alert_list_limit

        query = select(NexusAlert).where(NexusAlert.user_id == user_id)
        if unread_only:
            query = query.where(NexusAlert.read.is_(False))
        query = query.order_by(NexusAlert.created_at.desc(), NexusAlert.state_code).limit(limit)

        async with get_db(self.session_factory) as db:
            alerts = list((await db.execute(query)).scalars().all())
            unread_count = await db.scalar(
                select(func.count(NexusAlert.alert_id)).where(
                    NexusAlert.user_id == user_id,
                    NexusAlert.read.is_(False),
                )
            )

        return alerts, unread_count or 0

    async def mark_read(self, user_id: str, alert_ids: Optional[Iterable[uuid.UUID]] = None) -> int:
        """Mark the given alerts (or all of the user's alerts) as read."""
        stmt = update(NexusAlert).where(NexusAlert.user_id == user_id, NexusAlert.read.is_(False))
        if alert_ids is not None:
            ids = [uuid.UUID(str(alert_id)) for alert_id in alert_ids]
            if not ids:
                return 0
            stmt = stmt.where(NexusAlert.alert_id.in_(ids))

        async with get_db(self.session_factory) as db:
            result = await db.execute(stmt.values(read=True))

        return result.rowcount or 0

    async def _mark_handled(self, user_id: str, state_code: str, level: AlertLevel, **flags: bool) -> int:
        async with get_db(self.session_factory) as db:
            result = await db.execute(
                update(NexusAlert)
                .where(
                    NexusAlert.user_id == user_id,
                    NexusAlert.state_code == state_code,
                    NexusAlert.alert_level.in_(levels_at_or_below(level)),
                )
                .values(**flags)
            )
        return result.rowcount or 0

    async def mark_email_sent(self, user_id: str, state_code: str, level: AlertLevel) -> int:
        """
        Record a delivered notification for ``level``.

        Lower levels of the same state are marked too: the user has been told
        about a higher crossing and must not hear about the lesser ones later.
        """
        return await self._mark_handled(user_id, state_code, level, email_sent=True)

    async def mark_notification_skipped(self, user_id: str, state_code: str, level: AlertLevel) -> int:
        """Record that the user's preference suppressed dispatch for ``level`` and below."""
        return await self._mark_handled(user_id, state_code, level, notification_skipped=True)

    async def highest_unsent(self, user_id: str) -> List[NewAlert]:
        """
        Highest pending alert per state whose notification never went out.

        A state is only returned when its pending level is above every level
        already delivered or suppressed for it.
        """
        async with get_db(self.session_factory) as db:
            records = (
                await db.execute(select(NexusAlert).where(NexusAlert.user_id == user_id))
            ).scalars().all()

        pending: Dict[str, NexusAlert] = {}
        handled: Dict[str, int] = {}
        for record in records:
            severity = record.alert_level.severity
            if record.email_sent or record.notification_skipped:
                handled[record.state_code] = max(handled.get(record.state_code, 0), severity)
                continue
            current = pending.get(record.state_code)
            if current is None or severity > current.alert_level.severity:
                pending[record.state_code] = record

        return [
            NewAlert.from_record(pending[code])
            for code in sorted(pending)
            if pending[code].alert_level.severity > handled.get(code, 0)
        ]
