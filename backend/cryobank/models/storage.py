"""Cryostorage topology: Tank, Canister, Goblet and Slot nodes in one table."""

import uuid
from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from cryobank.models.base import BaseModel
from cryobank.models.enums import LocationType, SampleType


class CryoLocation(BaseModel):
    __tablename__ = "cryo_location"

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    location_type: Mapped[LocationType] = mapped_column(nullable=False)
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cryo_location.id"), nullable=True
    )
    # Dedicated specimen kind for the tank subtree, if any.
    sample_type: Mapped[SampleType | None] = mapped_column(nullable=True)
    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    temperature: Mapped[Decimal | None] = mapped_column(
        Numeric(6, 2), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(default=True, server_default="true")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_cryo_location_parent", "parent_id"),
        Index("ix_cryo_location_type", "location_type"),
        Index("ix_cryo_location_code", "code"),
    )
