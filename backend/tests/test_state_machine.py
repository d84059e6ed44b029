"""Tests for the sample status state machine."""

import re

import pytest

from cryobank.core.errors import IllegalTransitionError, ValidationError
from cryobank.models.enums import SampleStatus, SampleType
from cryobank.schemas.quality import EmbryoQuality
from cryobank.schemas.sample import SampleCreate
from cryobank.services.sample import SampleService, allowed_transitions


class TestAllowedTransitions:
    def test_collected_only_goes_to_quality_checked(self):
        for sample_type in SampleType:
            assert allowed_transitions(sample_type, SampleStatus.COLLECTED) == {
                SampleStatus.QUALITY_CHECKED
            }

    def test_gametes_can_be_fertilized_from_storage_and_thaw(self):
        for sample_type in (SampleType.SPERM, SampleType.OOCYTE):
            for status in (SampleStatus.STORED, SampleStatus.FROZEN, SampleStatus.THAWED):
                assert SampleStatus.FERTILIZED in allowed_transitions(sample_type, status)

    def test_embryos_are_never_fertilized(self):
        for status in SampleStatus:
            assert SampleStatus.FERTILIZED not in allowed_transitions(
                SampleType.EMBRYO, status
            )

    def test_only_embryos_enter_culture(self):
        assert SampleStatus.CULTURED_EMBRYO in allowed_transitions(
            SampleType.EMBRYO, SampleStatus.QUALITY_CHECKED
        )
        assert SampleStatus.CULTURED_EMBRYO not in allowed_transitions(
            SampleType.SPERM, SampleStatus.QUALITY_CHECKED
        )

    def test_terminal_statuses(self):
        for status in (SampleStatus.DISCARDED, SampleStatus.EXPIRED, SampleStatus.FERTILIZED):
            for sample_type in SampleType:
                assert allowed_transitions(sample_type, status) == set()


class TestSampleTransitions:
    @pytest.mark.asyncio
    async def test_sample_code_format(self, make_sample):
        sperm = await make_sample(SampleType.SPERM, checked=False)
        embryo = await make_sample(SampleType.EMBRYO, checked=False)
        assert re.fullmatch(r"SP-\d{14}-[0-9A-F]{6}", sperm.sample_code)
        assert re.fullmatch(r"EM-\d{14}-[0-9A-F]{6}", embryo.sample_code)

    @pytest.mark.asyncio
    async def test_collected_cannot_be_frozen(self, db, make_sample, actor):
        sample = await make_sample(checked=False)
        svc = SampleService(db)
        with pytest.raises(IllegalTransitionError):
            await svc.transition(sample.id, SampleStatus.FROZEN, actor)
        assert sample.status == SampleStatus.COLLECTED

    @pytest.mark.asyncio
    async def test_storage_date_set_on_first_storage(self, db, make_sample, actor):
        sample = await make_sample()
        assert sample.storage_date is None
        await SampleService(db).transition(sample.id, SampleStatus.FROZEN, actor)
        assert sample.status == SampleStatus.FROZEN
        assert sample.storage_date is not None

    @pytest.mark.asyncio
    async def test_history_records_every_edge(self, db, make_sample, actor):
        sample = await make_sample()
        svc = SampleService(db)
        await svc.transition(sample.id, SampleStatus.STORED, actor, notes="Tank 1")
        await db.commit()

        history = await svc.status_history(sample.id)
        assert [(h.previous_status, h.new_status) for h in history] == [
            (None, SampleStatus.COLLECTED),
            (SampleStatus.COLLECTED, SampleStatus.QUALITY_CHECKED),
            (SampleStatus.QUALITY_CHECKED, SampleStatus.STORED),
        ]
        assert history[-1].notes == "Tank 1"
        assert history[-1].changed_by == actor


class TestEmbryoCulture:
    @pytest.mark.asyncio
    async def test_culture_requires_cell_count(self, db, make_sample, actor):
        embryo = await make_sample(SampleType.EMBRYO)
        with pytest.raises(ValidationError) as exc_info:
            await SampleService(db).transition(
                embryo.id, SampleStatus.CULTURED_EMBRYO, actor
            )
        assert exc_info.value.details[0]["field"] == "cell_count"
        assert embryo.status == SampleStatus.QUALITY_CHECKED

    @pytest.mark.asyncio
    async def test_culture_then_freeze(self, db, make_sample, actor):
        embryo = await make_sample(SampleType.EMBRYO)
        svc = SampleService(db)
        await svc.update_quality(embryo.id, EmbryoQuality(cell_count=8), actor)
        await svc.transition(embryo.id, SampleStatus.CULTURED_EMBRYO, actor)
        await svc.transition(embryo.id, SampleStatus.FROZEN, actor)
        assert embryo.status == SampleStatus.FROZEN


class TestConcurrentTransitions:
    @pytest.mark.asyncio
    async def test_stale_reader_cannot_apply_a_second_edge(self, file_session_factory, actor, patient_id):
        """A session that read FROZEN before another thawed the sample re-reads it."""
        async with file_session_factory() as setup:
            svc = SampleService(setup)
            sample = await svc.create_sample(
                SampleCreate(patient_id=patient_id, sample_type=SampleType.SPERM), actor
            )
            for status in (SampleStatus.QUALITY_CHECKED, SampleStatus.FROZEN):
                await svc.transition(sample.id, status, actor, sample=sample)
            await setup.commit()
            sample_id = sample.id

        async with file_session_factory() as first, file_session_factory() as second:
            stale = await SampleService(second).require_sample(sample_id)
            assert stale.status == SampleStatus.FROZEN

            await SampleService(first).transition(sample_id, SampleStatus.THAWED, actor)
            await first.commit()

            with pytest.raises(IllegalTransitionError):
                await SampleService(second).transition(
                    sample_id, SampleStatus.DISCARDED, actor
                )
            await second.rollback()

        async with file_session_factory() as check:
            svc = SampleService(check)
            assert (await svc.require_sample(sample_id)).status == SampleStatus.THAWED
            history = await svc.status_history(sample_id)
        assert [(h.previous_status, h.new_status) for h in history] == [
            (None, SampleStatus.COLLECTED),
            (SampleStatus.COLLECTED, SampleStatus.QUALITY_CHECKED),
            (SampleStatus.QUALITY_CHECKED, SampleStatus.FROZEN),
            (SampleStatus.FROZEN, SampleStatus.THAWED),
        ]
