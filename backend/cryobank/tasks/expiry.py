"""Celery task that expires stored samples past their expiry date."""

import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cryobank.celery_app import celery
from cryobank.database import async_session_factory
from cryobank.models.enums import ACTIVE_STORAGE_STATUSES, SampleStatus
from cryobank.models.sample import Sample
from cryobank.services.sample import SampleService

logger = logging.getLogger(__name__)


async def expire_overdue(db: AsyncSession, now: datetime | None = None) -> list[str]:
    """Transition every overdue frozen/stored sample to expired.

    Runs as the system actor and commits once. Returns the expired codes.
    """
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(Sample)
        .where(
            Sample.status.in_(list(ACTIVE_STORAGE_STATUSES)),
            Sample.expiry_date.is_not(None),
            Sample.expiry_date <= now,
            Sample.is_deleted == False,  # noqa: E712
        )
        .order_by(Sample.expiry_date.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    overdue = list(result.scalars().all())

    svc = SampleService(db)
    expired = []
    for sample in overdue:
        await svc.transition(
            sample.id,
            SampleStatus.EXPIRED,
            None,
            notes=f"Expired on {sample.expiry_date:%Y-%m-%d}",
            sample=sample,
        )
        expired.append(sample.sample_code)

    await db.commit()
    return expired


async def _run_expiry() -> list[str]:
    async with async_session_factory() as db:
        return await expire_overdue(db)


@celery.task(name="cryobank.tasks.expiry.expire_overdue_samples")
def expire_overdue_samples():
    """Expire overdue samples. Scheduled by celery beat."""
    logger.info("Starting expiry sweep...")
    try:
        expired = asyncio.run(_run_expiry())
    except Exception:
        logger.exception("Expiry sweep failed")
        raise
    logger.info("Expiry sweep done: %d samples expired", len(expired))
    return {"status": "ok", "expired": expired}
