"""
Celery Tasks
Background jobs for group orders.

refund_group_order_charges is queued when a placement is cancelled after some
participants were already charged: those charges are handed back here, with
retries, instead of inside the request that failed.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from group_ordering.celery_worker import celery_app
from group_ordering.core.config import get_settings
from group_ordering.services.payment import get_payment_service
from group_ordering.services.persistence import SqlSessionStore, get_session_store

logger = logging.getLogger(__name__)


async def _refund_all(charges: list[dict], reason: str) -> tuple[list[dict], list[dict]]:
    """Refund every charge; return (refunded, still_pending)."""
    service = get_payment_service()
    results = await asyncio.gather(*[
        service.refund_payment(
            c["payment_intent_id"],
            amount=Decimal(c["amount"]) if c.get("amount") else None,
            reason=reason,
        )
        for c in charges
    ])
    refunded, pending = [], []
    for charge, result in zip(charges, results):
        (refunded if result.success else pending).append({**charge, "refund": result.to_dict()})
    return refunded, pending


@celery_app.task(
    bind=True,
    max_retries=5,
    default_retry_delay=10,
)
def refund_group_order_charges(self, payload: dict) -> dict:
    """
    Refund the successful charges of a cancelled placement.

    Args:
        payload: {"session_id": str, "charges": [{"participant_id", "payment_intent_id", "amount"}]}

    Returns:
        dict: Refunded charges plus anything still pending after the last retry
    """
    task_id = self.request.id
    session_id = payload.get("session_id", "unknown")
    charges = [c for c in payload.get("charges", []) if c.get("payment_intent_id")]

    logger.info(f"📋 Task {task_id}: Refunding {len(charges)} charge(s) of group order {session_id}")
    start_time = time.time()

    refunded, pending = asyncio.run(_refund_all(charges, "requested_by_customer"))
    elapsed = round(time.time() - start_time, 3)

    if pending and self.request.retries < self.max_retries:
        logger.warning(
            f"⚠️ Task {task_id}: {len(pending)} refund(s) for {session_id} failed, retrying"
        )
        retry_payload = {
            "session_id": session_id,
            "charges": [{k: v for k, v in c.items() if k != "refund"} for c in pending],
        }
        raise self.retry(kwargs={"payload": retry_payload}, countdown=10 * (2 ** self.request.retries))

    if pending:
        logger.error(f"❌ Task {task_id}: {len(pending)} refund(s) for {session_id} need manual review")
    else:
        logger.info(f"✅ Task {task_id}: Group order {session_id} refunded in {elapsed}s")

    return {
        "task_id": task_id,
        "session_id": session_id,
        "refunded": refunded,
        "pending": pending,
        "processing_time_seconds": elapsed,
    }


async def _purge_terminal(cutoff: datetime) -> list[str]:
    settings = get_settings()
    if not settings.use_database:
        return await get_session_store().purge_terminal(cutoff)

    from group_ordering.database import task_session_maker

    async with task_session_maker(settings.database_url) as session_maker:
        return await SqlSessionStore(session_maker).purge_terminal(cutoff)


@celery_app.task
def purge_finished_snapshots() -> dict:
    """
    Drop snapshots of group orders that finished longer ago than the
    retention window.
    """
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(hours=settings.snapshot_retention_hours)
    purged = asyncio.run(_purge_terminal(cutoff))
    return {
        'purged': purged,
        'cutoff': cutoff.isoformat(),
        'timestamp': datetime.now().isoformat()
    }


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }
