"""Chain-of-custody ledger: append-only cryo import and export records.

Slot occupancy is never stored. It is derived on read: a slot is held by
the sample whose latest import points at it, while that sample is frozen
or stored. "Latest" means most recently appended (created_at). The
import_date a caller supplies is recorded as-is but never ranks records,
so a backdated entry still becomes the current placement.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cryobank.core.errors import NotFoundError, WitnessConflictError
from cryobank.models.enums import ACTIVE_STORAGE_STATUSES
from cryobank.models.ledger import CryoExportRecord, CryoImportRecord
from cryobank.models.sample import Sample
from cryobank.models.storage import CryoLocation
from cryobank.services.audit import AuditService

logger = logging.getLogger(__name__)


def _latest_imports():
    """Each sample's imports ranked newest first (rn == 1 is the latest)."""
    rank = func.row_number().over(
        partition_by=CryoImportRecord.sample_id,
        order_by=CryoImportRecord.created_at.desc(),
    ).label("rn")
    return select(
        CryoImportRecord.id,
        CryoImportRecord.sample_id,
        CryoImportRecord.slot_id,
        CryoImportRecord.import_date,
        CryoImportRecord.created_at,
        rank,
    ).subquery()


def _current_placements():
    """(slot_id, sample_id, import_date, created_at) of every active sample."""
    latest = _latest_imports()
    return (
        select(
            latest.c.slot_id,
            latest.c.sample_id,
            latest.c.import_date,
            latest.c.created_at,
        )
        .join(Sample, Sample.id == latest.c.sample_id)
        .where(
            latest.c.rn == 1,
            Sample.status.in_(list(ACTIVE_STORAGE_STATUSES)),
            Sample.is_deleted == False,  # noqa: E712
        )
    )


class LedgerService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    # --- Imports ---

    async def append(
        self,
        *,
        sample_id: uuid.UUID,
        slot_id: uuid.UUID,
        imported_by: uuid.UUID,
        witnessed_by: uuid.UUID,
        import_date: datetime | None = None,
        temperature: Decimal | None = None,
        reason: str | None = None,
        notes: str | None = None,
        context: dict | None = None,
    ) -> CryoImportRecord:
        """Insert one import record. Records are never edited or removed."""
        if imported_by == witnessed_by:
            raise WitnessConflictError(
                "The witness must be a different person from the importer."
            )
        record = CryoImportRecord(
            id=uuid.uuid4(),
            sample_id=sample_id,
            slot_id=slot_id,
            import_date=import_date or datetime.now(timezone.utc),
            imported_by=imported_by,
            witnessed_by=witnessed_by,
            temperature=temperature,
            reason=reason,
            notes=notes,
        )
        self.db.add(record)
        await self.db.flush()

        await self.audit.log_create(
            user_id=imported_by,
            entity_type="cryo_import",
            entity_id=record.id,
            new_values={
                "sample_id": str(sample_id),
                "slot_id": str(slot_id),
                "witnessed_by": str(witnessed_by),
            },
            context=context,
        )
        return record

    async def latest_import_for_sample(
        self, sample_id: uuid.UUID
    ) -> CryoImportRecord | None:
        result = await self.db.execute(
            select(CryoImportRecord)
            .where(CryoImportRecord.sample_id == sample_id)
            .order_by(CryoImportRecord.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def current_occupant(self, slot_id: uuid.UUID) -> Sample | None:
        """The sample currently held by ``slot_id``, if any."""
        placements = _current_placements().subquery()
        result = await self.db.execute(
            select(Sample)
            .join(placements, placements.c.sample_id == Sample.id)
            .where(placements.c.slot_id == slot_id)
            .order_by(placements.c.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def current_location(self, sample_id: uuid.UUID) -> CryoLocation | None:
        """The slot holding ``sample_id``, or None when it is not in storage."""
        result = await self.db.execute(
            select(Sample.status).where(Sample.id == sample_id)
        )
        status = result.scalar_one_or_none()
        if status not in ACTIVE_STORAGE_STATUSES:
            return None
        record = await self.latest_import_for_sample(sample_id)
        if record is None:
            return None
        result = await self.db.execute(
            select(CryoLocation).where(CryoLocation.id == record.slot_id)
        )
        return result.scalar_one_or_none()

    async def occupied_slot_ids(
        self, slot_ids: list[uuid.UUID]
    ) -> set[uuid.UUID]:
        if not slot_ids:
            return set()
        placements = _current_placements().subquery()
        result = await self.db.execute(
            select(placements.c.slot_id)
            .where(placements.c.slot_id.in_(slot_ids))
            .distinct()
        )
        return set(result.scalars().all())

    async def history_for_sample(
        self, sample_id: uuid.UUID
    ) -> list[CryoImportRecord]:
        result = await self.db.execute(
            select(CryoImportRecord)
            .where(CryoImportRecord.sample_id == sample_id)
            .order_by(CryoImportRecord.created_at.desc())
        )
        return list(result.scalars().all())

    async def history_for_slot(self, slot_id: uuid.UUID) -> list[CryoImportRecord]:
        result = await self.db.execute(
            select(CryoImportRecord)
            .where(CryoImportRecord.slot_id == slot_id)
            .order_by(CryoImportRecord.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_record(self, record_id: uuid.UUID) -> CryoImportRecord:
        result = await self.db.execute(
            select(CryoImportRecord).where(CryoImportRecord.id == record_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError(f"Cryo import {record_id} not found.")
        return record

    async def list_records(
        self,
        page: int = 1,
        per_page: int = 20,
        slot_id: uuid.UUID | None = None,
        sample_id: uuid.UUID | None = None,
    ) -> tuple[list[CryoImportRecord], int]:
        query = select(CryoImportRecord)
        if slot_id:
            query = query.where(CryoImportRecord.slot_id == slot_id)
        if sample_id:
            query = query.where(CryoImportRecord.sample_id == sample_id)

        count_q = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_q)).scalar_one()

        query = query.order_by(CryoImportRecord.created_at.desc())
        query = query.offset((page - 1) * per_page).limit(per_page)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    # --- Exports (retrieval / thaw log) ---

    async def append_export(
        self,
        *,
        sample_id: uuid.UUID,
        exported_by: uuid.UUID,
        witnessed_by: uuid.UUID,
        slot_id: uuid.UUID | None = None,
        reason: str | None = None,
        destination: str | None = None,
        notes: str | None = None,
        is_thawed: bool = False,
        thawing_result: str | None = None,
    ) -> CryoExportRecord:
        if exported_by == witnessed_by:
            raise WitnessConflictError(
                "The witness must be a different person from the exporter."
            )
        now = datetime.now(timezone.utc)
        record = CryoExportRecord(
            id=uuid.uuid4(),
            sample_id=sample_id,
            slot_id=slot_id,
            export_date=now,
            exported_by=exported_by,
            witnessed_by=witnessed_by,
            reason=reason,
            destination=destination,
            notes=notes,
            is_thawed=is_thawed,
            thawing_date=now if is_thawed else None,
            thawing_result=thawing_result,
        )
        self.db.add(record)
        await self.db.flush()

        await self.audit.log_create(
            user_id=exported_by,
            entity_type="cryo_export",
            entity_id=record.id,
            new_values={
                "sample_id": str(sample_id),
                "slot_id": str(slot_id) if slot_id else None,
                "is_thawed": is_thawed,
            },
        )
        return record

    async def list_exports(
        self,
        page: int = 1,
        per_page: int = 20,
        sample_id: uuid.UUID | None = None,
    ) -> tuple[list[CryoExportRecord], int]:
        query = select(CryoExportRecord)
        if sample_id:
            query = query.where(CryoExportRecord.sample_id == sample_id)

        count_q = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_q)).scalar_one()

        query = query.order_by(
            CryoExportRecord.export_date.desc(),
            CryoExportRecord.created_at.desc(),
        )
        query = query.offset((page - 1) * per_page).limit(per_page)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total
