"""Sample lifecycle service: registry, quality payloads, status state machine."""

import logging
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cryobank.core.errors import (
    IllegalTransitionError,
    NotFoundError,
    TypeMismatchError,
    ValidationError,
)
from cryobank.models.enums import (
    ACTIVE_STORAGE_STATUSES,
    SampleStatus,
    SampleType,
)
from cryobank.models.sample import Sample, SampleStatusHistory
from cryobank.schemas.quality import (
    load_payload,
    payload_fields,
    payload_tag,
)
from cryobank.schemas.sample import SampleCreate, SampleFlagsUpdate, SampleUpdate
from cryobank.services.audit import AuditService
from cryobank.services.quality import QualityService

logger = logging.getLogger(__name__)

# Valid status transitions for every sample type
VALID_TRANSITIONS: dict[SampleStatus, set[SampleStatus]] = {
    SampleStatus.COLLECTED: {SampleStatus.QUALITY_CHECKED},
    SampleStatus.QUALITY_CHECKED: {SampleStatus.STORED, SampleStatus.FROZEN},
    SampleStatus.CULTURED_EMBRYO: set(),
    SampleStatus.STORED: {
        SampleStatus.THAWED, SampleStatus.DISCARDED, SampleStatus.EXPIRED,
    },
    SampleStatus.FROZEN: {
        SampleStatus.THAWED, SampleStatus.DISCARDED, SampleStatus.EXPIRED,
    },
    SampleStatus.THAWED: set(),
    SampleStatus.FERTILIZED: set(),
    SampleStatus.DISCARDED: set(),
    SampleStatus.EXPIRED: set(),
}

# Extra transitions that depend on the sample type
GAMETE_TRANSITIONS: dict[SampleStatus, set[SampleStatus]] = {
    SampleStatus.STORED: {SampleStatus.FERTILIZED},
    SampleStatus.FROZEN: {SampleStatus.FERTILIZED},
    SampleStatus.THAWED: {SampleStatus.FERTILIZED},
}
EMBRYO_TRANSITIONS: dict[SampleStatus, set[SampleStatus]] = {
    SampleStatus.QUALITY_CHECKED: {SampleStatus.CULTURED_EMBRYO},
    SampleStatus.CULTURED_EMBRYO: {
        SampleStatus.STORED, SampleStatus.FROZEN, SampleStatus.DISCARDED,
    },
}
TYPE_TRANSITIONS: dict[SampleType, dict[SampleStatus, set[SampleStatus]]] = {
    SampleType.SPERM: GAMETE_TRANSITIONS,
    SampleType.OOCYTE: GAMETE_TRANSITIONS,
    SampleType.EMBRYO: EMBRYO_TRANSITIONS,
}

SAMPLE_CODE_PREFIXES: dict[SampleType, str] = {
    SampleType.SPERM: "SP",
    SampleType.OOCYTE: "OO",
    SampleType.EMBRYO: "EM",
}


def allowed_transitions(
    sample_type: SampleType, status: SampleStatus
) -> set[SampleStatus]:
    """Statuses a sample of ``sample_type`` may move to from ``status``."""
    extra = TYPE_TRANSITIONS[sample_type].get(status, set())
    return VALID_TRANSITIONS.get(status, set()) | extra


def _generate_sample_code(sample_type: SampleType, when: datetime) -> str:
    """Generate sample code: {prefix}-{YYYYmmddHHMMSS}-{6 hex}."""
    prefix = SAMPLE_CODE_PREFIXES[sample_type]
    return f"{prefix}-{when:%Y%m%d%H%M%S}-{uuid.uuid4().hex[:6].upper()}"


class SampleService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)
        self.quality = QualityService(db)

    # --- CRUD ---

    async def create_sample(
        self,
        data: SampleCreate,
        created_by: uuid.UUID | None,
        quality: dict | None = None,
    ) -> Sample:
        """Register a collected sample with an empty quality payload."""
        now = datetime.now(timezone.utc)
        sample = Sample(
            id=uuid.uuid4(),
            sample_code=_generate_sample_code(data.sample_type, now),
            patient_id=data.patient_id,
            treatment_cycle_id=data.treatment_cycle_id,
            sample_type=data.sample_type,
            status=SampleStatus.COLLECTED,
            collection_date=data.collection_date or now,
            expiry_date=data.expiry_date,
            quality=quality or {},
            is_available=data.is_available,
            can_frozen=data.can_frozen,
            can_fertilize=data.can_fertilize,
            notes=data.notes,
            created_by=created_by,
        )
        self.db.add(sample)
        await self.db.flush()

        # Initial status history entry
        self._add_status_history(
            sample.id, None, SampleStatus.COLLECTED, created_by, "Sample collected"
        )

        await self.audit.log_create(
            user_id=created_by,
            entity_type="sample",
            entity_id=sample.id,
            new_values={
                "sample_code": sample.sample_code,
                "sample_type": sample.sample_type.value,
                "patient_id": str(sample.patient_id),
            },
        )
        return sample

    async def get_sample(self, sample_id: uuid.UUID) -> Sample | None:
        result = await self.db.execute(
            select(Sample).where(
                Sample.id == sample_id,
                Sample.is_deleted == False,  # noqa: E712
            )
        )
        return result.scalar_one_or_none()

    async def require_sample(self, sample_id: uuid.UUID) -> Sample:
        sample = await self.get_sample(sample_id)
        if sample is None:
            raise NotFoundError(f"Sample {sample_id} not found.")
        return sample

    async def lock_sample(self, sample_id: uuid.UUID) -> Sample:
        """Fetch a sample with a row lock held until the transaction ends.

        The row is re-read even when the session already holds the object,
        so callers see the status committed by whoever held the lock before.
        """
        result = await self.db.execute(
            select(Sample)
            .where(
                Sample.id == sample_id,
                Sample.is_deleted == False,  # noqa: E712
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        sample = result.scalar_one_or_none()
        if sample is None:
            raise NotFoundError(f"Sample {sample_id} not found.")
        return sample

    async def list_samples(
        self,
        page: int = 1,
        per_page: int = 20,
        search: str | None = None,
        patient_id: uuid.UUID | None = None,
        treatment_cycle_id: uuid.UUID | None = None,
        sample_type: SampleType | None = None,
        status: SampleStatus | None = None,
        sort: str = "created_at",
        order: str = "desc",
    ) -> tuple[list[Sample], int]:
        query = select(Sample).where(Sample.is_deleted == False)  # noqa: E712

        # Sort column allowlist
        ALLOWED_SORTS = {
            "created_at", "sample_code", "collection_date",
            "status", "sample_type", "expiry_date",
        }

        if search:
            query = query.where(Sample.sample_code.ilike(f"%{search}%"))
        if patient_id:
            query = query.where(Sample.patient_id == patient_id)
        if treatment_cycle_id:
            query = query.where(Sample.treatment_cycle_id == treatment_cycle_id)
        if sample_type:
            query = query.where(Sample.sample_type == sample_type)
        if status:
            query = query.where(Sample.status == status)

        count_q = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_q)).scalar_one()

        safe_sort = sort if sort in ALLOWED_SORTS else "created_at"
        sort_col = getattr(Sample, safe_sort, Sample.created_at)
        if order == "asc":
            query = query.order_by(sort_col.asc())
        else:
            query = query.order_by(sort_col.desc())

        query = query.offset((page - 1) * per_page).limit(per_page)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def update_sample(
        self,
        sample_id: uuid.UUID,
        data: SampleUpdate,
        updated_by: uuid.UUID | None,
    ) -> Sample:
        sample = await self.require_sample(sample_id)
        await self._apply_fields(
            sample, data.model_dump(exclude_unset=True), updated_by
        )
        return sample

    async def update_flags(
        self,
        sample_id: uuid.UUID,
        data: SampleFlagsUpdate,
        updated_by: uuid.UUID | None,
    ) -> Sample:
        """Set availability flags. Flags are advisory and always settable."""
        sample = await self.require_sample(sample_id)
        changes = {
            field: value
            for field, value in data.model_dump(exclude_unset=True).items()
            if value is not None
        }
        await self._apply_fields(sample, changes, updated_by)
        return sample

    async def _apply_fields(
        self, sample: Sample, changes: dict, updated_by: uuid.UUID | None
    ) -> None:
        old_values = {}
        new_values = {}
        for field, value in changes.items():
            current = getattr(sample, field)
            if value != current:
                old_values[field] = str(current) if current is not None else None
                setattr(sample, field, value)
                new_values[field] = str(value) if value is not None else None

        if new_values:
            await self.audit.log_update(
                user_id=updated_by,
                entity_type="sample",
                entity_id=sample.id,
                old_values=old_values,
                new_values=new_values,
            )

    # --- Quality ---

    async def update_quality(
        self,
        sample_id: uuid.UUID,
        payload: BaseModel,
        updated_by: uuid.UUID | None,
    ) -> Sample:
        """Merge the fields present in ``payload`` into the stored quality.

        The stored payload is untouched unless the merged result validates.
        """
        sample = await self.require_sample(sample_id)
        tag = payload_tag(payload)
        if tag != sample.sample_type:
            raise TypeMismatchError(
                f"Quality payload for {tag.value} given for "
                f"{sample.sample_type.value} sample {sample.sample_code}."
            )

        changes = payload_fields(payload)
        merged = {**(sample.quality or {}), **changes}
        candidate = load_payload(sample.sample_type, merged)
        self.quality.validate(sample.sample_type, candidate)

        if sample.sample_type == SampleType.EMBRYO and (
            {"oocyte_sample_id", "sperm_sample_id"} & changes.keys()
        ):
            await self.quality.check_lineage(
                sample.patient_id,
                candidate.oocyte_sample_id,
                candidate.sperm_sample_id,
            )

        old_values, new_values = AuditService.diff_values(sample.quality or {}, merged)
        sample.quality = merged
        if new_values:
            await self.audit.log_update(
                user_id=updated_by,
                entity_type="sample",
                entity_id=sample.id,
                old_values={"quality": old_values},
                new_values={"quality": new_values},
            )
        return sample

    # --- Status transitions ---

    async def transition(
        self,
        sample_id: uuid.UUID,
        new_status: SampleStatus,
        changed_by: uuid.UUID | None,
        notes: str | None = None,
        sample: Sample | None = None,
    ) -> Sample:
        """Move a sample along one edge of the state machine.

        Only status, storage_date, history and audit are touched; slot
        custody is the allocation coordinator's concern.
        """
        if sample is None:
            sample = await self.lock_sample(sample_id)

        allowed = allowed_transitions(sample.sample_type, sample.status)
        if new_status not in allowed:
            raise IllegalTransitionError(
                f"Cannot transition {sample.sample_type.value} sample from "
                f"{sample.status.value} to {new_status.value}."
            )

        if new_status == SampleStatus.CULTURED_EMBRYO:
            cell_count = (sample.quality or {}).get("cell_count")
            if not cell_count or cell_count <= 0:
                raise ValidationError(
                    "Embryo culture requires a recorded cell count above zero.",
                    details=[{"field": "cell_count", "message": "must be greater than 0"}],
                )

        if new_status == SampleStatus.FERTILIZED and not sample.can_fertilize:
            logger.warning(
                "Sample %s fertilized without the can_fertilize flag",
                sample.sample_code,
            )

        old_status = sample.status
        sample.status = new_status

        # Set storage_date on first entry into storage
        if new_status in ACTIVE_STORAGE_STATUSES and sample.storage_date is None:
            sample.storage_date = datetime.now(timezone.utc)

        self._add_status_history(
            sample.id, old_status, new_status, changed_by, notes
        )

        await self.audit.log_update(
            user_id=changed_by,
            entity_type="sample",
            entity_id=sample.id,
            old_values={"status": old_status.value},
            new_values={"status": new_status.value},
        )
        return sample

    async def status_history(self, sample_id: uuid.UUID) -> list[SampleStatusHistory]:
        await self.require_sample(sample_id)
        result = await self.db.execute(
            select(SampleStatusHistory)
            .where(SampleStatusHistory.sample_id == sample_id)
            .order_by(
                SampleStatusHistory.changed_at.asc(),
                SampleStatusHistory.created_at.asc(),
            )
        )
        return list(result.scalars().all())

    # --- Helpers ---

    def _add_status_history(
        self,
        sample_id: uuid.UUID,
        previous_status: SampleStatus | None,
        new_status: SampleStatus,
        changed_by: uuid.UUID | None,
        notes: str | None = None,
    ) -> None:
        self.db.add(SampleStatusHistory(
            id=uuid.uuid4(),
            sample_id=sample_id,
            previous_status=previous_status,
            new_status=new_status,
            changed_at=datetime.now(timezone.utc),
            changed_by=changed_by,
            notes=notes,
        ))
