"""Allocation coordinator: import, move and retrieval of stored samples.

A slot holds at most one active sample. The vacancy check and the ledger
write for a slot run under that slot's lock and are committed before the
lock is released, so a second import into the same slot always sees the
first one. On PostgreSQL the slot row is also locked (``FOR UPDATE``) to
serialize across worker processes.
"""

import asyncio
import logging
import uuid
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from cryobank.core.errors import (
    IllegalTransitionError,
    LocationInactiveError,
    NotASlotError,
    SlotOccupiedError,
    ValidationError,
    WitnessConflictError,
)
from cryobank.models.enums import ACTIVE_STORAGE_STATUSES, LocationType, SampleStatus
from cryobank.models.ledger import CryoExportRecord, CryoImportRecord
from cryobank.models.sample import Sample
from cryobank.models.storage import CryoLocation
from cryobank.schemas.ledger import CryoImportCreate, CryoMoveCreate
from cryobank.schemas.sample import RetrieveRequest
from cryobank.services.ledger import LedgerService
from cryobank.services.location_tree import LocationTree
from cryobank.services.sample import SampleService, allowed_transitions
from cryobank.services.storage import StorageService

logger = logging.getLogger(__name__)

# Statuses a sample may leave storage into.
RETRIEVAL_STATUSES = frozenset({
    SampleStatus.THAWED,
    SampleStatus.DISCARDED,
    SampleStatus.EXPIRED,
    SampleStatus.FERTILIZED,
})


class SlotLockRegistry:
    """One asyncio.Lock per slot, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def lock_for(self, slot_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(slot_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[slot_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, slot_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self.lock_for(slot_id)
        async with lock:
            yield


class AllocationCoordinator:
    def __init__(
        self,
        db: AsyncSession,
        locks: SlotLockRegistry,
        tree: LocationTree | None = None,
    ):
        self.db = db
        self.locks = locks
        self.tree = tree
        self.samples = SampleService(db)
        self.storage = StorageService(db)
        self.ledger = LedgerService(db)

    async def _target_slot(
        self, slot_id: uuid.UUID, performer: uuid.UUID, witness: uuid.UUID
    ) -> CryoLocation:
        slot = await self.storage.require_location(slot_id)
        if slot.location_type != LocationType.SLOT:
            raise NotASlotError(
                f"{slot.name} ({slot.code}) is a {slot.location_type.value}, "
                f"only slots can hold samples."
            )
        inactive = await self.storage.first_inactive_on_path(slot)
        if inactive is not None:
            raise LocationInactiveError(
                f"Slot {slot.code} is unavailable: {inactive.name} ({inactive.code}) "
                f"is deactivated.",
                details=[{"location_id": str(inactive.id)}],
            )
        if performer == witness:
            raise WitnessConflictError(
                "The witness must be a different person from the importer."
            )
        return slot

    async def _ensure_vacant(self, slot: CryoLocation) -> None:
        await self.storage.lock_location(slot.id)
        occupant = await self.ledger.current_occupant(slot.id)
        if occupant is not None:
            raise SlotOccupiedError(
                f"Slot {slot.code} already holds sample {occupant.sample_code}.",
                details=[{"sample_id": str(occupant.id)}],
            )

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    async def _refresh_counts(self, slot_ids: list[uuid.UUID]) -> None:
        if self.tree is None:
            return
        stale = []
        for slot_id in slot_ids:
            stale.extend(await self.storage.ancestor_ids(slot_id))
        self.tree.invalidate_path(stale)

    # --- Import ---

    async def import_sample(
        self, data: CryoImportCreate, performed_by: uuid.UUID | None
    ) -> CryoImportRecord:
        """Place a quality-checked sample into a vacant slot.

        Checks run in order: slot exists, is a slot and is active, importer differs
        from witness, slot is vacant, sample exists and may enter the
        requested storage status.
        """
        if data.target_status not in ACTIVE_STORAGE_STATUSES:
            raise ValidationError(
                "Imported samples must become frozen or stored.",
                details=[{"field": "target_status", "message": "must be frozen or stored"}],
            )
        slot = await self._target_slot(data.slot_id, data.imported_by, data.witnessed_by)

        async with self.locks.hold(slot.id):
            try:
                await self._ensure_vacant(slot)
                sample = await self.samples.lock_sample(data.sample_id)
                if data.target_status not in allowed_transitions(
                    sample.sample_type, sample.status
                ):
                    raise IllegalTransitionError(
                        f"Sample {sample.sample_code} is {sample.status.value} and "
                        f"cannot be {data.target_status.value}."
                    )
                if data.target_status == SampleStatus.FROZEN and not sample.can_frozen:
                    logger.warning(
                        "Sample %s frozen without the can_frozen flag",
                        sample.sample_code,
                    )

                record = await self.ledger.append(
                    sample_id=sample.id,
                    slot_id=slot.id,
                    imported_by=data.imported_by,
                    witnessed_by=data.witnessed_by,
                    import_date=data.import_date,
                    temperature=data.temperature,
                    reason=data.reason,
                    notes=data.notes,
                    context={"event": "import", "performed_by": str(performed_by)},
                )
                await self.samples.transition(
                    sample.id,
                    data.target_status,
                    performed_by or data.imported_by,
                    notes=f"Imported into {slot.code}",
                    sample=sample,
                )
            except Exception:
                await self.db.rollback()
                raise
            await self._commit()

        logger.info(
            "Imported sample %s into slot %s", sample.sample_code, slot.code
        )
        await self._refresh_counts([slot.id])
        return record

    # --- Move ---

    async def move_sample(
        self, data: CryoMoveCreate, performed_by: uuid.UUID | None
    ) -> CryoImportRecord:
        """Relocate an active sample to another vacant slot.

        Writes a new import record; the sample's status is unchanged.
        """
        slot = await self._target_slot(data.slot_id, data.imported_by, data.witnessed_by)

        async with self.locks.hold(slot.id):
            try:
                await self._ensure_vacant(slot)
                sample = await self.samples.lock_sample(data.sample_id)
                if sample.status not in ACTIVE_STORAGE_STATUSES:
                    raise IllegalTransitionError(
                        f"Sample {sample.sample_code} is {sample.status.value}; "
                        f"only frozen or stored samples can be moved."
                    )
                previous = await self.ledger.current_location(sample.id)
                record = await self.ledger.append(
                    sample_id=sample.id,
                    slot_id=slot.id,
                    imported_by=data.imported_by,
                    witnessed_by=data.witnessed_by,
                    import_date=data.import_date,
                    temperature=data.temperature,
                    reason=data.reason,
                    notes=data.notes,
                    context={
                        "event": "move",
                        "from_slot_id": str(previous.id) if previous else None,
                        "performed_by": str(performed_by),
                    },
                )
            except Exception:
                await self.db.rollback()
                raise
            await self._commit()

        logger.info(
            "Moved sample %s from %s to %s",
            sample.sample_code,
            previous.code if previous else None,
            slot.code,
        )
        await self._refresh_counts(
            [slot.id] + ([previous.id] if previous else [])
        )
        return record

    # --- Retrieval ---

    async def retrieve_sample(
        self,
        sample_id: uuid.UUID,
        data: RetrieveRequest,
        performed_by: uuid.UUID | None,
    ) -> tuple[Sample, CryoExportRecord | None]:
        """Take a sample out of storage by moving it to a leave status.

        No import record is written; the slot frees up because the sample
        is no longer active. With custody details an export record is
        appended to the retrieval log.
        """
        if data.status not in RETRIEVAL_STATUSES:
            raise ValidationError(
                f"{data.status.value} is not a retrieval status.",
                details=[{"field": "status", "message": "must be thawed, discarded, expired or fertilized"}],
            )
        custody = data.exported_by is not None or data.witnessed_by is not None
        if custody:
            if data.exported_by is None or data.witnessed_by is None:
                raise ValidationError(
                    "Export custody needs both exported_by and witnessed_by.",
                    details=[{"field": "witnessed_by", "message": "required with exported_by"}],
                )
            if data.exported_by == data.witnessed_by:
                raise WitnessConflictError(
                    "The witness must be a different person from the exporter."
                )

        try:
            sample = await self.samples.lock_sample(sample_id)
            slot = await self.ledger.current_location(sample.id)
            await self.samples.transition(
                sample.id, data.status, performed_by, notes=data.notes, sample=sample
            )
            export = None
            if custody:
                export = await self.ledger.append_export(
                    sample_id=sample.id,
                    slot_id=slot.id if slot else None,
                    exported_by=data.exported_by,
                    witnessed_by=data.witnessed_by,
                    reason=data.reason,
                    destination=data.destination,
                    notes=data.notes,
                    is_thawed=data.status == SampleStatus.THAWED,
                    thawing_result=data.thawing_result,
                )
        except Exception:
            await self.db.rollback()
            raise
        await self._commit()

        logger.info(
            "Retrieved sample %s from %s as %s",
            sample.sample_code,
            slot.code if slot else None,
            data.status.value,
        )
        if slot is not None:
            await self._refresh_counts([slot.id])
        return sample, export
