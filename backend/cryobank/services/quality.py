"""Quality assessment: type-specific field validation and embryo lineage."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cryobank.core.errors import TypeMismatchError, ValidationError
from cryobank.models.enums import SampleType
from cryobank.models.sample import Sample
from cryobank.schemas.quality import (
    EmbryoQuality,
    OocyteQuality,
    SpermQuality,
    payload_fields,
    payload_tag,
)
from cryobank.schemas.sample import EmbryoCreate, SampleCreate

logger = logging.getLogger(__name__)

SPERM_NON_NEGATIVE = (
    "volume",
    "concentration",
    "motility",
    "progressive_motility",
    "morphology",
    "ph",
    "total_sperm_count",
)
SPERM_PERCENTAGES = ("motility", "progressive_motility", "morphology")
MAX_DAY_OF_DEVELOPMENT = 7


@dataclass
class LineageResolution:
    oocyte: Sample | None = None
    sperm: Sample | None = None
    oocyte_from_fallback: bool = False
    sperm_from_fallback: bool = False


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; treat them as UTC.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _problem(field: str, message: str) -> dict:
    return {"field": field, "message": message}


def _sperm_problems(payload: SpermQuality) -> list[dict]:
    problems = []
    for field in SPERM_NON_NEGATIVE:
        value = getattr(payload, field)
        if value is not None and value < 0:
            problems.append(_problem(field, "must not be negative"))
    for field in SPERM_PERCENTAGES:
        value = getattr(payload, field)
        if value is not None and value > 100:
            problems.append(_problem(field, "must be a percentage between 0 and 100"))
    if payload.ph is not None and payload.ph > 14:
        problems.append(_problem("ph", "must be between 0 and 14"))
    if (
        payload.motility is not None
        and payload.progressive_motility is not None
        and payload.progressive_motility > payload.motility
    ):
        problems.append(
            _problem("progressive_motility", "cannot exceed total motility")
        )
    return problems


def _oocyte_problems(payload: OocyteQuality) -> list[dict]:
    problems = []
    if payload.vitrification_date is not None:
        if payload.is_vitrified is False:
            problems.append(
                _problem("vitrification_date", "set on an oocyte not marked vitrified")
            )
        if payload.retrieval_date is not None and _aware(
            payload.vitrification_date
        ) < _aware(payload.retrieval_date):
            problems.append(
                _problem("vitrification_date", "is before the retrieval date")
            )
    return problems


def _embryo_problems(payload: EmbryoQuality) -> list[dict]:
    problems = []
    day = payload.day_of_development
    if day is not None and not 1 <= day <= MAX_DAY_OF_DEVELOPMENT:
        problems.append(
            _problem(
                "day_of_development",
                f"must be between 1 and {MAX_DAY_OF_DEVELOPMENT}",
            )
        )
    if payload.cell_count is not None and payload.cell_count < 0:
        problems.append(_problem("cell_count", "must not be negative"))
    if payload.pgt_result is not None and payload.is_pgt_tested is False:
        problems.append(
            _problem("pgt_result", "set on an embryo not marked PGT tested")
        )
    return problems


_CHECKS = {
    SampleType.SPERM: _sperm_problems,
    SampleType.OOCYTE: _oocyte_problems,
    SampleType.EMBRYO: _embryo_problems,
}


class QualityService:
    def __init__(self, db: AsyncSession):
        self.db = db

    # --- Validation ---

    @staticmethod
    def validate(sample_type: SampleType, payload: BaseModel) -> None:
        """Raise ValidationError listing every malformed field of ``payload``."""
        tag = payload_tag(payload)
        if tag != sample_type:
            raise TypeMismatchError(
                f"Quality payload for {tag.value} given for a {sample_type.value} sample."
            )
        problems = _CHECKS[sample_type](payload)
        if problems:
            raise ValidationError(
                f"Invalid {sample_type.value} quality fields.", details=problems
            )

    # --- Lineage ---

    async def _latest_of_type(
        self,
        patient_id: uuid.UUID,
        sample_type: SampleType,
        treatment_cycle_id: uuid.UUID | None,
    ) -> Sample | None:
        query = select(Sample).where(
            Sample.patient_id == patient_id,
            Sample.sample_type == sample_type,
            Sample.is_deleted == False,  # noqa: E712
        )
        if treatment_cycle_id is None:
            query = query.where(Sample.treatment_cycle_id.is_(None))
        else:
            query = query.where(Sample.treatment_cycle_id == treatment_cycle_id)
        query = query.order_by(
            Sample.collection_date.desc(), Sample.created_at.desc()
        ).limit(1)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def _resolve_parent(
        self,
        patient_id: uuid.UUID,
        sample_type: SampleType,
        treatment_cycle_id: uuid.UUID | None,
    ) -> tuple[Sample | None, bool]:
        if treatment_cycle_id is not None:
            tagged = await self._latest_of_type(
                patient_id, sample_type, treatment_cycle_id
            )
            if tagged is not None:
                return tagged, False
        untagged = await self._latest_of_type(patient_id, sample_type, None)
        fallback = treatment_cycle_id is not None and untagged is not None
        if fallback:
            logger.warning(
                "No %s sample tagged with cycle %s for patient %s; "
                "using latest untagged sample %s",
                sample_type.value,
                treatment_cycle_id,
                patient_id,
                untagged.sample_code,
            )
        return untagged, fallback

    async def resolve_lineage(
        self,
        patient_id: uuid.UUID,
        treatment_cycle_id: uuid.UUID | None = None,
    ) -> LineageResolution:
        """Pick the most recently collected oocyte and sperm for a cycle.

        Samples tagged with ``treatment_cycle_id`` win; otherwise the most
        recent untagged sample of the patient is used and the fallback is
        logged. Either parent may come back as None.
        """
        oocyte, oocyte_fallback = await self._resolve_parent(
            patient_id, SampleType.OOCYTE, treatment_cycle_id
        )
        sperm, sperm_fallback = await self._resolve_parent(
            patient_id, SampleType.SPERM, treatment_cycle_id
        )
        return LineageResolution(
            oocyte=oocyte,
            sperm=sperm,
            oocyte_from_fallback=oocyte_fallback,
            sperm_from_fallback=sperm_fallback,
        )

    async def check_lineage(
        self,
        patient_id: uuid.UUID,
        oocyte_sample_id: uuid.UUID | None,
        sperm_sample_id: uuid.UUID | None,
    ) -> tuple[Sample | None, Sample | None]:
        """Verify embryo parents exist, have the right type and patient."""
        problems = []
        parents = []
        for field, parent_id, expected in (
            ("oocyte_sample_id", oocyte_sample_id, SampleType.OOCYTE),
            ("sperm_sample_id", sperm_sample_id, SampleType.SPERM),
        ):
            if parent_id is None:
                parents.append(None)
                continue
            result = await self.db.execute(
                select(Sample).where(
                    Sample.id == parent_id,
                    Sample.is_deleted == False,  # noqa: E712
                )
            )
            parent = result.scalar_one_or_none()
            parents.append(parent)
            if parent is None:
                problems.append(_problem(field, f"sample {parent_id} does not exist"))
            elif parent.sample_type != expected:
                problems.append(
                    _problem(
                        field,
                        f"sample {parent.sample_code} is {parent.sample_type.value}, "
                        f"expected {expected.value}",
                    )
                )
            elif parent.patient_id != patient_id:
                problems.append(
                    _problem(field, f"sample {parent.sample_code} belongs to another patient")
                )
        if problems:
            raise ValidationError("Invalid embryo lineage.", details=problems)
        return parents[0], parents[1]

    # --- Embryo creation ---

    async def create_embryo(
        self, data: EmbryoCreate, created_by: uuid.UUID
    ) -> tuple[Sample, LineageResolution]:
        """Create an embryo sample linked to its oocyte and sperm parents."""
        from cryobank.services.sample import SampleService

        resolution = LineageResolution()
        if data.oocyte_sample_id is None or data.sperm_sample_id is None:
            resolution = await self.resolve_lineage(
                data.patient_id, data.treatment_cycle_id
            )
        oocyte_id = data.oocyte_sample_id or (
            resolution.oocyte.id if resolution.oocyte else None
        )
        sperm_id = data.sperm_sample_id or (
            resolution.sperm.id if resolution.sperm else None
        )
        oocyte, sperm = await self.check_lineage(data.patient_id, oocyte_id, sperm_id)
        for parent in (oocyte, sperm):
            if parent is not None and not parent.can_fertilize:
                logger.warning(
                    "Sample %s used as embryo parent but not flagged can_fertilize",
                    parent.sample_code,
                )

        quality = data.quality.model_copy(
            update={"oocyte_sample_id": oocyte_id, "sperm_sample_id": sperm_id}
        )
        self.validate(SampleType.EMBRYO, quality)

        embryo = await SampleService(self.db).create_sample(
            SampleCreate(
                patient_id=data.patient_id,
                sample_type=SampleType.EMBRYO,
                treatment_cycle_id=data.treatment_cycle_id,
                collection_date=data.collection_date,
                expiry_date=data.expiry_date,
                notes=data.notes,
            ),
            created_by,
            quality=payload_fields(quality, only_set=False),
        )
        return embryo, LineageResolution(
            oocyte=oocyte,
            sperm=sperm,
            oocyte_from_fallback=resolution.oocyte_from_fallback
            and data.oocyte_sample_id is None,
            sperm_from_fallback=resolution.sperm_from_fallback
            and data.sperm_sample_id is None,
        )
