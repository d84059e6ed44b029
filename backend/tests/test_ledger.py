"""Tests for the append-only import ledger and derived slot occupancy."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from cryobank.core.errors import NotFoundError, WitnessConflictError
from cryobank.models.enums import SampleStatus
from cryobank.services.ledger import LedgerService
from cryobank.services.sample import SampleService


def _at(hours: int) -> datetime:
    return datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(hours=hours)


@pytest.fixture
def frozen_sample(db, make_sample, actor):
    async def _make():
        sample = await make_sample()
        await SampleService(db).transition(sample.id, SampleStatus.FROZEN, actor)
        await db.commit()
        return sample

    return _make


class TestAppend:
    @pytest.mark.asyncio
    async def test_witness_must_differ(self, db, bank, make_sample, actor):
        sample = await make_sample()
        with pytest.raises(WitnessConflictError):
            await LedgerService(db).append(
                sample_id=sample.id,
                slot_id=bank.slot_ids[0],
                imported_by=actor,
                witnessed_by=actor,
            )

    @pytest.mark.asyncio
    async def test_record_fields(self, db, bank, make_sample, actor, witness):
        sample = await make_sample()
        record = await LedgerService(db).append(
            sample_id=sample.id,
            slot_id=bank.slot_ids[0],
            imported_by=actor,
            witnessed_by=witness,
            reason="initial storage",
        )
        assert record.id is not None
        assert record.import_date is not None
        assert record.reason == "initial storage"


class TestDerivedOccupancy:
    @pytest.mark.asyncio
    async def test_appended_record_is_current_location(self, db, bank, frozen_sample, actor, witness):
        """Whatever import_date a record carries, the newest append places the sample."""
        sample = await frozen_sample()
        ledger = LedgerService(db)
        dates = (_at(5), _at(-1000), None, datetime(2000, 1, 1, tzinfo=timezone.utc))
        for slot_id, import_date in zip(
            (bank.slot_ids[1], bank.slot_ids[0], bank.slot_ids[2], bank.slot_ids[1]),
            dates,
        ):
            record = await ledger.append(
                sample_id=sample.id, slot_id=slot_id,
                imported_by=actor, witnessed_by=witness, import_date=import_date,
            )
            slot = await ledger.current_location(sample.id)
            assert slot.id == record.slot_id
            assert (await ledger.current_occupant(record.slot_id)).id == sample.id
            assert await ledger.occupied_slot_ids(bank.slot_ids) == {record.slot_id}
        await db.commit()

    @pytest.mark.asyncio
    async def test_backdated_record_keeps_its_import_date(self, db, bank, frozen_sample, actor, witness):
        sample = await frozen_sample()
        ledger = LedgerService(db)
        await ledger.append(
            sample_id=sample.id, slot_id=bank.slot_ids[0],
            imported_by=actor, witnessed_by=witness,
        )
        backdated = datetime(2000, 1, 1, tzinfo=timezone.utc)
        record = await ledger.append(
            sample_id=sample.id, slot_id=bank.slot_ids[1],
            imported_by=actor, witnessed_by=witness, import_date=backdated,
        )
        await db.commit()

        latest = await ledger.latest_import_for_sample(sample.id)
        assert latest.id == record.id
        assert latest.import_date.replace(tzinfo=timezone.utc) == backdated
        assert await ledger.current_occupant(bank.slot_ids[0]) is None

    @pytest.mark.asyncio
    async def test_inactive_sample_holds_no_slot(self, db, bank, frozen_sample, actor, witness):
        sample = await frozen_sample()
        ledger = LedgerService(db)
        await ledger.append(
            sample_id=sample.id, slot_id=bank.slot_ids[0],
            imported_by=actor, witnessed_by=witness,
        )
        await SampleService(db).transition(sample.id, SampleStatus.THAWED, actor)
        await db.commit()

        assert await ledger.current_location(sample.id) is None
        assert await ledger.current_occupant(bank.slot_ids[0]) is None
        # The record itself stays.
        assert len(await ledger.history_for_slot(bank.slot_ids[0])) == 1

    @pytest.mark.asyncio
    async def test_sample_without_imports_has_no_location(self, db, frozen_sample):
        sample = await frozen_sample()
        assert await LedgerService(db).current_location(sample.id) is None


class TestQueries:
    @pytest.mark.asyncio
    async def test_history_in_reverse_append_order(self, db, bank, frozen_sample, actor, witness):
        sample = await frozen_sample()
        ledger = LedgerService(db)
        for hours, slot_id in ((1, bank.slot_ids[0]), (3, bank.slot_ids[1]), (2, bank.slot_ids[2])):
            await ledger.append(
                sample_id=sample.id, slot_id=slot_id,
                imported_by=actor, witnessed_by=witness, import_date=_at(hours),
            )
        await db.commit()

        history = await ledger.history_for_sample(sample.id)
        assert [r.slot_id for r in history] == [
            bank.slot_ids[2], bank.slot_ids[1], bank.slot_ids[0],
        ]

        records, total = await ledger.list_records(slot_id=bank.slot_ids[0])
        assert total == 1
        assert records[0].sample_id == sample.id

    @pytest.mark.asyncio
    async def test_get_record_not_found(self, db):
        with pytest.raises(NotFoundError):
            await LedgerService(db).get_record(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_export_log(self, db, bank, frozen_sample, actor, witness):
        sample = await frozen_sample()
        ledger = LedgerService(db)
        export = await ledger.append_export(
            sample_id=sample.id,
            slot_id=bank.slot_ids[0],
            exported_by=actor,
            witnessed_by=witness,
            is_thawed=True,
            thawing_result="survived",
        )
        await db.commit()
        assert export.thawing_date is not None

        exports, total = await ledger.list_exports(sample_id=sample.id)
        assert total == 1
        assert exports[0].thawing_result == "survived"

        with pytest.raises(WitnessConflictError):
            await ledger.append_export(
                sample_id=sample.id, exported_by=actor, witnessed_by=actor
            )
