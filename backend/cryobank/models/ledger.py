"""Chain-of-custody ledgers: cryo imports and cryo exports (append-only)."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from cryobank.models.base import LedgerModel


class CryoImportRecord(LedgerModel):
    __tablename__ = "cryo_import"

    sample_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sample.id"), nullable=False
    )
    slot_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cryo_location.id"), nullable=False
    )
    import_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    imported_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    witnessed_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    temperature: Mapped[Decimal | None] = mapped_column(
        Numeric(6, 2), nullable=True
    )
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "imported_by <> witnessed_by", name="ck_cryo_import_distinct_witness"
        ),
        Index("ix_cryo_import_slot_created", "slot_id", "created_at"),
        Index("ix_cryo_import_sample_created", "sample_id", "created_at"),
    )


class CryoExportRecord(LedgerModel):
    __tablename__ = "cryo_export"

    sample_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sample.id"), nullable=False
    )
    # Slot the sample left, when it had one.
    slot_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cryo_location.id"), nullable=True
    )
    export_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    exported_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    witnessed_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    destination: Mapped[str | None] = mapped_column(String(200), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_thawed: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    thawing_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    thawing_result: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "exported_by <> witnessed_by", name="ck_cryo_export_distinct_witness"
        ),
        Index("ix_cryo_export_sample", "sample_id"),
    )
