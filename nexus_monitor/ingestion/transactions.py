"""
Transaction Intake

Stores normalized orders handed over by the channel importers and reports
which domestic states the batch touched, ready for the orchestrator.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional, Set, Tuple, Union

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nexus_monitor.config import get_settings
from nexus_monitor.database.connection import get_db
from nexus_monitor.database.models import ImportedOrder, TransactionStatus, utcnow
from nexus_monitor.database.statements import upsert_insert

logger = structlog.get_logger(__name__)


class TransactionIn(BaseModel):
    """One order as delivered by a channel importer"""

    channel: str = Field(min_length=1, max_length=50)
    channel_order_id: str = Field(min_length=1, max_length=100)
    order_date: Optional[datetime] = None
    subtotal: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    shipping_state: Optional[str] = None
    shipping_country: Optional[str] = "US"
    status: TransactionStatus = TransactionStatus.IMPORTED

    @field_validator("order_date", mode="before")
    @classmethod
    def parse_order_date(cls, v: Any) -> Optional[datetime]:
        """Unparseable dates are kept as NULL so the order never counts."""
        if v is None or isinstance(v, datetime):
            return v
        try:
            return datetime.fromisoformat(str(v).replace("Z", "+00:00"))
        except ValueError:
            return None

    @field_validator("order_date")
    @classmethod
    def to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @field_validator("shipping_state", "shipping_country")
    @classmethod
    def upper_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().upper()
        return v or None

    @field_validator("status", mode="before")
    @classmethod
    def lower_status(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


@dataclass
class LoadResult:
    loaded: int = 0
    skipped: int = 0
    affected_states: List[str] = field(default_factory=list)


class TransactionLoader:
    """
    Upserts orders by (user, channel, channel order id).

    Example:
        loader = TransactionLoader(session_factory)
        result = await loader.load("user-1", records)
        await pipeline.on_import_completed("user-1", result.affected_states)
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        domestic_country: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.domestic_country = (domestic_country or get_settings().pipeline.domestic_country).upper()

    def _validate(self, user_id: str, records: Iterable[Union[TransactionIn, Mapping[str, Any]]]) -> Tuple[List[TransactionIn], int]:
        valid: List[TransactionIn] = []
        skipped = 0
        for index, record in enumerate(records):
            if isinstance(record, TransactionIn):
                valid.append(record)
                continue
            try:
                valid.append(TransactionIn.model_validate(record))
            except ValidationError as e:
                skipped += 1
                logger.warning(
                    "Skipping invalid transaction record",
                    user_id=user_id,
                    index=index,
                    errors=e.error_count(),
                    detail=e.errors(include_url=False)[0]["msg"],
                )
        return valid, skipped

    async def _previous_states(self, db: AsyncSession, user_id: str, orders: List[TransactionIn]) -> Set[str]:
        """States of already-stored versions of these orders; a changed destination empties the old bucket."""
        keys = {(o.channel, o.channel_order_id) for o in orders}
        rows = await db.execute(
            select(ImportedOrder.channel, ImportedOrder.channel_order_id, ImportedOrder.shipping_state).where(
                ImportedOrder.user_id == user_id,
                ImportedOrder.shipping_country == self.domestic_country,
                ImportedOrder.channel_order_id.in_([order_id for _, order_id in keys]),
            )
        )
        return {
            row.shipping_state
            for row in rows
            if row.shipping_state and (row.channel, row.channel_order_id) in keys
        }

    async def load(
        self,
        user_id: str,
        records: Iterable[Union[TransactionIn, Mapping[str, Any]]],
    ) -> LoadResult:
        """
        Store a batch of orders.

        Returns:
            LoadResult with the domestic state codes whose buckets changed
        """
        orders, skipped = self._validate(user_id, records)
        result = LoadResult(skipped=skipped)
        if not orders:
            return result

        # Last occurrence wins within a batch
        unique = {(o.channel, o.channel_order_id): o for o in orders}
        orders = list(unique.values())

        affected: Set[str] = set()
        async with get_db(self.session_factory) as db:
            affected |= await self._previous_states(db, user_id, orders)

            for order in orders:
                stmt = upsert_insert(db, ImportedOrder).values(
                    user_id=user_id,
                    updated_at=utcnow(),
                    **order.model_dump(),
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["user_id", "channel", "channel_order_id"],
                    set_={
                        "order_date": stmt.excluded.order_date,
                        "subtotal": stmt.excluded.subtotal,
                        "tax_amount": stmt.excluded.tax_amount,
                        "total_amount": stmt.excluded.total_amount,
                        "shipping_state": stmt.excluded.shipping_state,
                        "shipping_country": stmt.excluded.shipping_country,
                        "status": stmt.excluded.status,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                await db.execute(stmt)

                if order.shipping_state and order.shipping_country == self.domestic_country:
                    affected.add(order.shipping_state)

        result.loaded = len(orders)
        result.affected_states = sorted(affected)
        logger.info(
            "Transactions loaded",
            user_id=user_id,
            loaded=result.loaded,
            skipped=result.skipped,
            affected_states=result.affected_states,
        )
        return result
