"""Chain-of-custody schemas: cryo imports, moves and exports."""

import uuid
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field

from cryobank.config import settings
from cryobank.models.enums import SampleStatus


class CryoImportCreate(BaseModel):
    sample_id: uuid.UUID
    slot_id: uuid.UUID
    imported_by: uuid.UUID
    witnessed_by: uuid.UUID
    import_date: datetime | None = None
    temperature: Decimal | None = Decimal(str(settings.DEFAULT_STORAGE_TEMPERATURE_C))
    reason: str | None = Field(default=None, max_length=500)
    notes: str | None = None
    # Frozen or stored; checked by the allocation coordinator.
    target_status: SampleStatus = SampleStatus.FROZEN


class CryoMoveCreate(BaseModel):
    sample_id: uuid.UUID
    slot_id: uuid.UUID
    imported_by: uuid.UUID
    witnessed_by: uuid.UUID
    import_date: datetime | None = None
    temperature: Decimal | None = Decimal(str(settings.DEFAULT_STORAGE_TEMPERATURE_C))
    reason: str | None = Field(default=None, max_length=500)
    notes: str | None = None


class CryoImportRead(BaseModel):
    id: uuid.UUID
    sample_id: uuid.UUID
    slot_id: uuid.UUID
    import_date: datetime
    imported_by: uuid.UUID
    witnessed_by: uuid.UUID
    temperature: Decimal | None
    reason: str | None
    notes: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class CryoExportRead(BaseModel):
    id: uuid.UUID
    sample_id: uuid.UUID
    slot_id: uuid.UUID | None
    export_date: datetime
    exported_by: uuid.UUID
    witnessed_by: uuid.UUID
    reason: str | None
    destination: str | None
    notes: str | None
    is_thawed: bool
    thawing_date: datetime | None
    thawing_result: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class CustodyRead(BaseModel):
    """Full replay of a sample's custody, newest first."""

    sample_id: uuid.UUID
    current_slot_id: uuid.UUID | None
    imports: list[CryoImportRead]
    exports: list[CryoExportRead]
