"""Tests for the allocation coordinator: import, move, retrieval, concurrency."""

import asyncio
import uuid
from datetime import datetime, timezone

import pytest

from cryobank.core.errors import (
    IllegalTransitionError,
    LocationInactiveError,
    NotASlotError,
    NotFoundError,
    SlotOccupiedError,
    ValidationError,
    WitnessConflictError,
)
from cryobank.models.enums import SampleStatus, SampleType
from cryobank.schemas.ledger import CryoImportCreate, CryoMoveCreate
from cryobank.schemas.quality import SpermQuality
from cryobank.schemas.sample import RetrieveRequest, SampleCreate
from cryobank.schemas.storage import DefaultBankCreate, LocationUpdate
from cryobank.services.allocation import AllocationCoordinator, SlotLockRegistry
from cryobank.services.audit import AuditService
from cryobank.services.ledger import LedgerService
from cryobank.services.location_tree import LocationTree
from cryobank.services.sample import SampleService
from cryobank.services.storage import StorageService


@pytest.fixture
def tree():
    return LocationTree()


@pytest.fixture
def coordinator(db, tree):
    return AllocationCoordinator(db, SlotLockRegistry(), tree)


def _import(sample_id, slot_id, imported_by, witnessed_by, **fields):
    return CryoImportCreate(
        sample_id=sample_id,
        slot_id=slot_id,
        imported_by=imported_by,
        witnessed_by=witnessed_by,
        **fields,
    )


class TestImport:
    @pytest.mark.asyncio
    async def test_import_places_and_freezes(self, db, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample()
        record = await coordinator.import_sample(
            _import(sample.id, bank.slot_ids[0], actor, witness), actor
        )
        assert record.slot_id == bank.slot_ids[0]

        stored = await SampleService(db).require_sample(sample.id)
        assert stored.status == SampleStatus.FROZEN
        assert stored.storage_date is not None
        assert (await LedgerService(db).current_location(sample.id)).id == bank.slot_ids[0]

    @pytest.mark.asyncio
    async def test_import_as_stored(self, db, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample()
        await coordinator.import_sample(
            _import(
                sample.id, bank.slot_ids[0], actor, witness,
                target_status=SampleStatus.STORED,
            ),
            actor,
        )
        assert (await SampleService(db).require_sample(sample.id)).status == SampleStatus.STORED

    @pytest.mark.asyncio
    async def test_second_import_into_slot_is_rejected(self, db, bank, make_sample, coordinator, actor, witness):
        first = await make_sample()
        second = await make_sample()
        second_id = second.id
        slot_id = bank.slot_ids[0]
        await coordinator.import_sample(_import(first.id, slot_id, actor, witness), actor)

        with pytest.raises(SlotOccupiedError):
            await coordinator.import_sample(_import(second_id, slot_id, actor, witness), actor)

        # Nothing of the failed import survives.
        ledger = LedgerService(db)
        assert len(await ledger.history_for_slot(slot_id)) == 1
        assert await ledger.history_for_sample(second_id) == []
        rejected = await SampleService(db).require_sample(second_id)
        assert rejected.status == SampleStatus.QUALITY_CHECKED

    @pytest.mark.asyncio
    async def test_witness_checked_before_vacancy(self, db, bank, make_sample, coordinator, actor, witness):
        first = await make_sample()
        second = await make_sample()
        second_id = second.id
        slot_id = bank.slot_ids[0]
        await coordinator.import_sample(_import(first.id, slot_id, actor, witness), actor)

        with pytest.raises(WitnessConflictError):
            await coordinator.import_sample(_import(second_id, slot_id, actor, actor), actor)

    @pytest.mark.asyncio
    async def test_only_slots_hold_samples(self, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample()
        with pytest.raises(NotASlotError):
            await coordinator.import_sample(
                _import(sample.id, bank.goblet_id, actor, witness), actor
            )

    @pytest.mark.asyncio
    async def test_deactivated_slot_refuses_imports(self, db, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample()
        sample_id = sample.id
        slot_id = bank.slot_ids[0]
        await StorageService(db).update_location(slot_id, LocationUpdate(is_active=False), actor)
        await db.commit()

        with pytest.raises(LocationInactiveError) as exc_info:
            await coordinator.import_sample(_import(sample_id, slot_id, actor, witness), actor)
        assert exc_info.value.details == [{"location_id": str(slot_id)}]
        assert await LedgerService(db).history_for_sample(sample_id) == []

    @pytest.mark.asyncio
    async def test_slots_under_a_deactivated_tank_refuse_imports(self, db, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample()
        storage = StorageService(db)
        await storage.update_location(bank.tank_id, LocationUpdate(is_active=False), actor)
        await db.commit()

        with pytest.raises(LocationInactiveError) as exc_info:
            await coordinator.import_sample(
                _import(sample.id, bank.slot_ids[1], actor, witness), actor
            )
        assert exc_info.value.details == [{"location_id": str(bank.tank_id)}]

        # Reactivating the tank opens its slots again.
        await storage.update_location(bank.tank_id, LocationUpdate(is_active=True), actor)
        await db.commit()
        record = await coordinator.import_sample(
            _import(sample.id, bank.slot_ids[1], actor, witness), actor
        )
        assert record.slot_id == bank.slot_ids[1]

    @pytest.mark.asyncio
    async def test_unknown_slot(self, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample()
        with pytest.raises(NotFoundError):
            await coordinator.import_sample(
                _import(sample.id, uuid.uuid4(), actor, witness), actor
            )

    @pytest.mark.asyncio
    async def test_unknown_sample(self, bank, coordinator, actor, witness):
        with pytest.raises(NotFoundError):
            await coordinator.import_sample(
                _import(uuid.uuid4(), bank.slot_ids[0], actor, witness), actor
            )

    @pytest.mark.asyncio
    async def test_unchecked_sample_cannot_be_imported(self, db, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample(checked=False)
        sample_id = sample.id
        with pytest.raises(IllegalTransitionError):
            await coordinator.import_sample(
                _import(sample_id, bank.slot_ids[0], actor, witness), actor
            )
        assert await LedgerService(db).history_for_sample(sample_id) == []

    @pytest.mark.asyncio
    async def test_target_status_must_be_storage(self, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample()
        with pytest.raises(ValidationError):
            await coordinator.import_sample(
                _import(
                    sample.id, bank.slot_ids[0], actor, witness,
                    target_status=SampleStatus.THAWED,
                ),
                actor,
            )

    @pytest.mark.asyncio
    async def test_import_refreshes_cached_counts(self, db, bank, make_sample, coordinator, tree, actor, witness):
        source = StorageService(db)
        roots = await tree.get_roots(source)
        canisters = await tree.get_children(source, bank.tank_id)
        assert roots[0].sample_count == 0
        assert canisters[0].sample_count == 0

        sample = await make_sample()
        await coordinator.import_sample(
            _import(sample.id, bank.slot_ids[0], actor, witness), actor
        )

        assert (await tree.get_roots(source))[0].sample_count == 1
        assert (await tree.get_children(source, bank.tank_id))[0].sample_count == 1


class TestMove:
    @pytest.mark.asyncio
    async def test_move_relocates_without_status_change(self, db, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample()
        await coordinator.import_sample(
            _import(sample.id, bank.slot_ids[0], actor, witness), actor
        )
        await coordinator.move_sample(
            CryoMoveCreate(
                sample_id=sample.id,
                slot_id=bank.slot_ids[1],
                imported_by=witness,
                witnessed_by=actor,
                reason="tank maintenance",
            ),
            actor,
        )

        ledger = LedgerService(db)
        assert (await ledger.current_location(sample.id)).id == bank.slot_ids[1]
        assert await ledger.current_occupant(bank.slot_ids[0]) is None
        assert len(await ledger.history_for_sample(sample.id)) == 2
        assert (await SampleService(db).require_sample(sample.id)).status == SampleStatus.FROZEN

    @pytest.mark.asyncio
    async def test_backdated_move_still_relocates(self, db, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample()
        sample_id = sample.id
        await coordinator.import_sample(
            _import(sample_id, bank.slot_ids[0], actor, witness), actor
        )
        record = await coordinator.move_sample(
            CryoMoveCreate(
                sample_id=sample_id,
                slot_id=bank.slot_ids[1],
                imported_by=actor,
                witnessed_by=witness,
                import_date=datetime(2000, 1, 1, tzinfo=timezone.utc),
            ),
            actor,
        )

        ledger = LedgerService(db)
        assert (await ledger.current_location(sample_id)).id == record.slot_id
        assert (await ledger.current_occupant(bank.slot_ids[1])).id == sample_id
        assert await ledger.current_occupant(bank.slot_ids[0]) is None

    @pytest.mark.asyncio
    async def test_move_into_occupied_slot(self, bank, make_sample, coordinator, actor, witness):
        first = await make_sample()
        second = await make_sample()
        await coordinator.import_sample(_import(first.id, bank.slot_ids[0], actor, witness), actor)
        await coordinator.import_sample(_import(second.id, bank.slot_ids[1], actor, witness), actor)

        with pytest.raises(SlotOccupiedError):
            await coordinator.move_sample(
                CryoMoveCreate(
                    sample_id=second.id,
                    slot_id=bank.slot_ids[0],
                    imported_by=actor,
                    witnessed_by=witness,
                ),
                actor,
            )

    @pytest.mark.asyncio
    async def test_move_into_deactivated_goblet(self, db, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample()
        sample_id = sample.id
        await coordinator.import_sample(
            _import(sample_id, bank.slot_ids[0], actor, witness), actor
        )
        await StorageService(db).update_location(
            bank.goblet_id, LocationUpdate(is_active=False), actor
        )
        await db.commit()

        with pytest.raises(LocationInactiveError):
            await coordinator.move_sample(
                CryoMoveCreate(
                    sample_id=sample_id,
                    slot_id=bank.slot_ids[1],
                    imported_by=actor,
                    witnessed_by=witness,
                ),
                actor,
            )
        assert (await LedgerService(db).current_location(sample_id)).id == bank.slot_ids[0]

    @pytest.mark.asyncio
    async def test_only_stored_samples_move(self, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample()
        with pytest.raises(IllegalTransitionError):
            await coordinator.move_sample(
                CryoMoveCreate(
                    sample_id=sample.id,
                    slot_id=bank.slot_ids[0],
                    imported_by=actor,
                    witnessed_by=witness,
                ),
                actor,
            )


class TestRetrieve:
    @pytest.mark.asyncio
    async def test_thaw_frees_slot_and_logs_export(self, db, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample()
        await coordinator.import_sample(
            _import(sample.id, bank.slot_ids[0], actor, witness), actor
        )

        retrieved, export = await coordinator.retrieve_sample(
            sample.id,
            RetrieveRequest(
                exported_by=actor,
                witnessed_by=witness,
                destination="IVF lab",
                thawing_result="motile",
            ),
            actor,
        )
        assert retrieved.status == SampleStatus.THAWED
        assert export.slot_id == bank.slot_ids[0]
        assert export.is_thawed
        assert export.thawing_date is not None

        ledger = LedgerService(db)
        assert await ledger.current_location(sample.id) is None
        assert await ledger.current_occupant(bank.slot_ids[0]) is None
        # Retrieval appends nothing to the import ledger.
        assert len(await ledger.history_for_sample(sample.id)) == 1

        newcomer = await make_sample()
        await coordinator.import_sample(
            _import(newcomer.id, bank.slot_ids[0], actor, witness), actor
        )
        assert (await ledger.current_occupant(bank.slot_ids[0])).id == newcomer.id

    @pytest.mark.asyncio
    async def test_discard_without_custody(self, bank, make_sample, coordinator, actor, witness):
        sample = await make_sample()
        await coordinator.import_sample(
            _import(sample.id, bank.slot_ids[0], actor, witness), actor
        )
        retrieved, export = await coordinator.retrieve_sample(
            sample.id, RetrieveRequest(status=SampleStatus.DISCARDED), actor
        )
        assert retrieved.status == SampleStatus.DISCARDED
        assert export is None

    @pytest.mark.asyncio
    async def test_retrieval_status_must_leave_storage(self, make_sample, coordinator, actor):
        sample = await make_sample()
        with pytest.raises(ValidationError):
            await coordinator.retrieve_sample(
                sample.id, RetrieveRequest(status=SampleStatus.STORED), actor
            )

    @pytest.mark.asyncio
    async def test_exporter_needs_a_distinct_witness(self, make_sample, coordinator, actor):
        sample = await make_sample()
        with pytest.raises(ValidationError):
            await coordinator.retrieve_sample(
                sample.id, RetrieveRequest(exported_by=actor), actor
            )
        with pytest.raises(WitnessConflictError):
            await coordinator.retrieve_sample(
                sample.id, RetrieveRequest(exported_by=actor, witnessed_by=actor), actor
            )

    @pytest.mark.asyncio
    async def test_collected_sample_cannot_be_thawed(self, make_sample, coordinator, actor):
        sample = await make_sample(checked=False)
        with pytest.raises(IllegalTransitionError):
            await coordinator.retrieve_sample(sample.id, RetrieveRequest(), actor)


class TestConcurrentImports:
    @pytest.mark.asyncio
    async def test_one_winner_per_slot(self, file_session_factory, actor, witness, patient_id):
        """Two sessions race for one slot; exactly one import lands."""
        factory = file_session_factory
        async with factory() as setup:
            tanks = await StorageService(setup).initialize_default_bank(
                DefaultBankCreate(
                    tanks=1, canisters_per_tank=1,
                    goblets_per_canister=1, slots_per_goblet=1,
                ),
                actor,
            )
            await setup.flush()
            storage = StorageService(setup)
            canister = (await storage.list_children(tanks[0].id))[0]
            goblet = (await storage.list_children(canister.id))[0]
            slot_id = (await storage.list_children(goblet.id))[0].id

            samples = SampleService(setup)
            sample_ids = []
            for _ in range(2):
                sample = await samples.create_sample(
                    SampleCreate(patient_id=patient_id, sample_type=SampleType.SPERM),
                    actor,
                )
                await samples.transition(
                    sample.id, SampleStatus.QUALITY_CHECKED, actor, sample=sample
                )
                sample_ids.append(sample.id)
            await setup.commit()

        locks = SlotLockRegistry()

        async def attempt(sample_id):
            async with factory() as session:
                coordinator = AllocationCoordinator(session, locks)
                return await coordinator.import_sample(
                    _import(sample_id, slot_id, actor, witness), actor
                )

        results = await asyncio.gather(
            *(attempt(sample_id) for sample_id in sample_ids),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], SlotOccupiedError)

        async with factory() as check:
            occupant = await LedgerService(check).current_occupant(slot_id)
            assert occupant.id == winners[0].sample_id
            assert len(await LedgerService(check).history_for_slot(slot_id)) == 1


class TestSpermScenario:
    @pytest.mark.asyncio
    async def test_assess_check_and_bank(self, db, bank, make_sample, coordinator, actor, witness):
        """Collect, assess, check and freeze one sample; a second cannot share its slot."""
        s1 = await make_sample(SampleType.SPERM, checked=False)
        s2 = await make_sample(SampleType.SPERM)
        s1_id, s2_id = s1.id, s2.id
        slot_a = bank.slot_ids[0]

        samples = SampleService(db)
        await samples.update_quality(s1_id, SpermQuality(volume=3.2, motility=55), actor)
        await samples.transition(s1_id, SampleStatus.QUALITY_CHECKED, actor)
        await db.commit()

        record = await coordinator.import_sample(_import(s1_id, slot_a, actor, witness), actor)
        record_id = record.id
        with pytest.raises(SlotOccupiedError):
            await coordinator.import_sample(_import(s2_id, slot_a, actor, witness), actor)

        assert (await LedgerService(db).current_occupant(slot_a)).id == s1_id
        entries = await AuditService(db).entries_for("cryo_import", record_id)
        assert len(entries) == 1
        assert entries[0].user_id == actor
        assert entries[0].new_values["witnessed_by"] == str(witness)
