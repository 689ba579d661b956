"""Celery tasks, run eagerly in-process."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from group_ordering import tasks
from group_ordering.core.config import Settings
from group_ordering.services.payment import MockPaymentService
from group_ordering.services.persistence import InMemorySessionStore, SqlSessionStore


@pytest.fixture
def payment(monkeypatch):
    service = MockPaymentService(failure_rate=0.0, min_latency=0, max_latency=0)
    monkeypatch.setattr(tasks, "get_payment_service", lambda: service)
    return service


def test_refunds_every_charge(payment):
    payload = {
        "session_id": "s-1",
        "charges": [
            {"participant_id": "p1", "payment_intent_id": "pi_mock_a", "amount": "10.00"},
            {"participant_id": "p2", "payment_intent_id": "pi_mock_b", "amount": "4.50"},
            {"participant_id": "p3", "payment_intent_id": None, "amount": "1.00"},
        ],
    }

    result = tasks.refund_group_order_charges.apply(kwargs={"payload": payload}).get()

    assert [r["participant_id"] for r in result["refunded"]] == ["p1", "p2"]
    assert result["pending"] == []
    assert len(payment.refunds) == 2


def test_purge_finished_snapshots(monkeypatch):
    store = InMemorySessionStore()
    old = (datetime.now(timezone.utc) - timedelta(days=3)).isoformat()
    store._rows["done"] = {"id": "done", "status": "expired", "updated_at": old, "revision": 1}
    store._rows["open"] = {"id": "open", "status": "active", "updated_at": old, "revision": 1}
    monkeypatch.setattr(tasks, "get_session_store", lambda: store)
    monkeypatch.setattr(tasks, "get_settings", lambda: Settings(_env_file=None, snapshot_retention_hours=24))

    result = tasks.purge_finished_snapshots.apply().get()

    assert result["purged"] == ["done"]
    assert list(store._rows) == ["open"]


def test_health_check():
    assert tasks.health_check.apply().get()["status"] == "healthy"


def test_purge_uses_a_fresh_engine_each_run(monkeypatch, tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'snapshots.db'}"
    monkeypatch.setattr(
        tasks,
        "get_settings",
        lambda: Settings(_env_file=None, use_database=True, database_url=url, snapshot_retention_hours=24),
    )
    old = (datetime.now(timezone.utc) - timedelta(days=3)).isoformat()

    async def seed():
        from group_ordering import models  # noqa: F401
        from group_ordering.database import Base

        engine = create_async_engine(url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        store = SqlSessionStore(async_sessionmaker(engine, expire_on_commit=False))
        for session_id, status in (("done", "expired"), ("open", "active")):
            await store.save({
                "id": session_id,
                "join_code": session_id.upper(),
                "restaurant_id": "resto-1",
                "table_id": None,
                "status": status,
                "revision": 1,
                "order_reference": None,
                "updated_at": old,
            })
        await engine.dispose()

    asyncio.run(seed())

    first = tasks.purge_finished_snapshots.apply().get()
    second = tasks.purge_finished_snapshots.apply().get()

    assert first["purged"] == ["done"]
    assert second["purged"] == []
