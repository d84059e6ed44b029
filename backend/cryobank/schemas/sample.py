"""Sample, status history, flags and lineage request/response schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from cryobank.models.enums import SampleStatus, SampleType
from cryobank.schemas.quality import EmbryoQuality, QualityPayload


# --- Sample ---

class SampleCreate(BaseModel):
    patient_id: uuid.UUID
    sample_type: SampleType
    treatment_cycle_id: uuid.UUID | None = None
    collection_date: datetime | None = None
    expiry_date: datetime | None = None
    is_available: bool = True
    can_frozen: bool = False
    can_fertilize: bool = False
    notes: str | None = None


class SampleUpdate(BaseModel):
    notes: str | None = None
    expiry_date: datetime | None = None
    treatment_cycle_id: uuid.UUID | None = None


class SampleStatusUpdate(BaseModel):
    status: SampleStatus
    notes: str | None = None


class SampleFlagsUpdate(BaseModel):
    is_available: bool | None = None
    can_frozen: bool | None = None
    can_fertilize: bool | None = None


class SampleRead(BaseModel):
    id: uuid.UUID
    sample_code: str
    patient_id: uuid.UUID
    treatment_cycle_id: uuid.UUID | None
    sample_type: SampleType
    status: SampleStatus
    collection_date: datetime
    storage_date: datetime | None
    expiry_date: datetime | None
    quality: QualityPayload
    is_available: bool
    can_frozen: bool
    can_fertilize: bool
    notes: str | None
    created_by: uuid.UUID | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("quality", mode="before")
    @classmethod
    def _tag_quality(cls, value, info: ValidationInfo):
        # Stored payloads carry no tag; the sample's own type is the tag.
        sample_type = info.data.get("sample_type")
        if isinstance(value, dict) and sample_type is not None:
            return {**value, "sample_type": SampleType(sample_type).value}
        return value


class StatusHistoryRead(BaseModel):
    id: uuid.UUID
    sample_id: uuid.UUID
    previous_status: SampleStatus | None
    new_status: SampleStatus
    changed_at: datetime
    changed_by: uuid.UUID | None
    notes: str | None

    model_config = {"from_attributes": True}


# --- Embryos and lineage ---

class EmbryoCreate(BaseModel):
    patient_id: uuid.UUID
    treatment_cycle_id: uuid.UUID | None = None
    collection_date: datetime | None = None
    # Explicit parents skip lineage resolution.
    oocyte_sample_id: uuid.UUID | None = None
    sperm_sample_id: uuid.UUID | None = None
    quality: EmbryoQuality = Field(default_factory=EmbryoQuality)
    expiry_date: datetime | None = None
    notes: str | None = None


class LineageRead(BaseModel):
    patient_id: uuid.UUID
    treatment_cycle_id: uuid.UUID | None
    oocyte_sample_id: uuid.UUID | None
    sperm_sample_id: uuid.UUID | None
    oocyte_from_fallback: bool = False
    sperm_from_fallback: bool = False


# --- Retrieval ---

class RetrieveRequest(BaseModel):
    status: SampleStatus = SampleStatus.THAWED
    notes: str | None = None
    # Custody details; when both are given an export record is written.
    exported_by: uuid.UUID | None = None
    witnessed_by: uuid.UUID | None = None
    reason: str | None = Field(default=None, max_length=500)
    destination: str | None = Field(default=None, max_length=200)
    thawing_result: str | None = None
