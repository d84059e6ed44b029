"""Cryostorage topology schemas: location nodes, updates and bank layout."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from cryobank.config import settings
from cryobank.models.enums import LocationType, SampleType


class LocationRead(BaseModel):
    id: uuid.UUID
    name: str
    code: str
    location_type: LocationType
    parent_id: uuid.UUID | None
    sample_type: SampleType | None
    capacity: int | None
    temperature: Decimal | None
    is_active: bool
    notes: str | None
    created_at: datetime
    updated_at: datetime
    # Computed from the import ledger (set by service layer)
    sample_count: int = 0

    model_config = {"from_attributes": True}


class LocationNode(BaseModel):
    """A node of the cached tree. ``children`` is None until loaded."""

    id: uuid.UUID
    name: str
    code: str
    location_type: LocationType
    parent_id: uuid.UUID | None = None
    sample_type: SampleType | None = None
    capacity: int | None = None
    temperature: Decimal | None = None
    is_active: bool = True
    sample_count: int = 0
    is_loaded: bool = False
    children: list["LocationNode"] | None = None

    model_config = {"from_attributes": True}


class LocationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    capacity: int | None = Field(default=None, ge=0)
    temperature: Decimal | None = None
    sample_type: SampleType | None = None
    is_active: bool | None = None
    notes: str | None = None


class DefaultBankCreate(BaseModel):
    tanks: int = Field(default=settings.DEFAULT_BANK_TANKS, ge=1, le=50)
    canisters_per_tank: int = Field(
        default=settings.DEFAULT_BANK_CANISTERS_PER_TANK, ge=1, le=50
    )
    goblets_per_canister: int = Field(
        default=settings.DEFAULT_BANK_GOBLETS_PER_CANISTER, ge=1, le=50
    )
    slots_per_goblet: int = Field(
        default=settings.DEFAULT_BANK_SLOTS_PER_GOBLET, ge=1, le=50
    )
    temperature: Decimal = Decimal(str(settings.DEFAULT_STORAGE_TEMPERATURE_C))
    # One entry per tank, cycling when shorter than ``tanks``.
    tank_sample_types: list[SampleType] = Field(default_factory=list)
