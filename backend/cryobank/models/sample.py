"""Sample and status history models."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from cryobank.models.base import BaseModel, JSONType, LedgerModel
from cryobank.models.enums import SampleStatus, SampleType


class Sample(BaseModel):
    __tablename__ = "sample"

    sample_code: Mapped[str] = mapped_column(
        String(40), unique=True, nullable=False
    )
    # Owned by the external patient directory; not a foreign key here.
    patient_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    treatment_cycle_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    sample_type: Mapped[SampleType] = mapped_column(nullable=False)
    status: Mapped[SampleStatus] = mapped_column(nullable=False)
    collection_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    storage_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expiry_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Fields of the quality variant selected by sample_type.
    quality: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    is_available: Mapped[bool] = mapped_column(default=True, server_default="true")
    can_frozen: Mapped[bool] = mapped_column(default=False, server_default="false")
    can_fertilize: Mapped[bool] = mapped_column(default=False, server_default="false")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )

    __table_args__ = (
        Index("ix_sample_code", "sample_code"),
        Index("ix_sample_patient", "patient_id"),
        Index("ix_sample_patient_type", "patient_id", "sample_type"),
        Index("ix_sample_cycle", "treatment_cycle_id"),
        Index("ix_sample_status", "status"),
    )


class SampleStatusHistory(LedgerModel):
    __tablename__ = "sample_status_history"

    sample_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    previous_status: Mapped[SampleStatus | None] = mapped_column(nullable=True)
    new_status: Mapped[SampleStatus] = mapped_column(nullable=False)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    changed_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_sample_status_history_sample", "sample_id"),
        Index("ix_sample_status_history_changed_at", "changed_at"),
    )
