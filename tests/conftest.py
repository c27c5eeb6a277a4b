"""
Test Suite Configuration
"""
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, List
import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from nexus_monitor.config import Settings
from nexus_monitor.core.thresholds import default_registry
from nexus_monitor.database.connection import build_engine, build_session_factory, create_tables
from nexus_monitor.database.models import ImportedOrder, TransactionStatus
from nexus_monitor.notifications.dispatchers import NexusAlertNotification, NotificationDispatcher
from nexus_monitor.notifications.service import NotificationService
from nexus_monitor.pipeline.orchestrator import NexusPipeline

# Fixed evaluation date: rolling window is 2024-07 .. 2025-06,
# calendar window is 2025-01 .. 2025-06
AS_OF = datetime(2025, 6, 15, 12, 0)


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
        debug=True,
    )


@pytest.fixture
def as_of() -> datetime:
    return AS_OF


@pytest.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    File-backed SQLite engine per test.

    A file (not ``:memory:``) so that concurrent sessions see one database.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'nexus.db'}")
    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(test_engine)


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def add_orders(session_factory):
    """
    Insert imported orders directly.

    Each order is a dict with ``state`` and ``date`` plus optional
    ``total``, ``subtotal``, ``tax``, ``country``, ``status``, ``channel``
    and ``channel_order_id``.
    """
    async def _add(user_id: str, orders: List[dict]) -> List[ImportedOrder]:
        rows = []
        async with session_factory() as db:
            for spec in orders:
                total = Decimal(str(spec.get("total", "100.00")))
                row = ImportedOrder(
                    user_id=user_id,
                    channel=spec.get("channel", "shopify"),
                    channel_order_id=spec.get("channel_order_id", uuid.uuid4().hex),
                    order_date=spec["date"],
                    subtotal=Decimal(str(spec.get("subtotal", total))),
                    tax_amount=Decimal(str(spec.get("tax", "0.00"))),
                    total_amount=total,
                    shipping_state=spec["state"],
                    shipping_country=spec.get("country", "US"),
                    status=spec.get("status", TransactionStatus.IMPORTED),
                )
                db.add(row)
                rows.append(row)
            await db.commit()
        return rows

    return _add


class RecordingDispatcher(NotificationDispatcher):
    """Collects notifications in memory; can be told to fail."""

    name = "recording"

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent: List[NexusAlertNotification] = []

    async def dispatch(self, notification: NexusAlertNotification) -> bool:
        if not self.succeed:
            raise ConnectionError("transport unavailable")
        self.sent.append(notification)
        return True


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def pipeline(session_factory, dispatcher) -> NexusPipeline:
    notifier = NotificationService(session_factory, dispatcher=dispatcher, timeout_seconds=2)
    return NexusPipeline(session_factory, notifier=notifier)


@pytest.fixture
def failing_dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher(succeed=False)
