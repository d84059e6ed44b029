"""Initial schema - samples, cryo locations, custody ledgers, audit log.

Revision ID: 001
Revises: None
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- Audit ---

    op.create_table(
        "audit_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("old_values", postgresql.JSONB, nullable=True),
        sa.Column("new_values", postgresql.JSONB, nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("additional_context", postgresql.JSONB, nullable=True),
    )
    op.create_index("ix_audit_log_entity", "audit_log", ["entity_type", "entity_id"])
    op.create_index("ix_audit_log_user_id", "audit_log", ["user_id"])
    op.create_index("ix_audit_log_timestamp", "audit_log", ["timestamp"])
    op.create_index("ix_audit_log_action", "audit_log", ["action"])

    # --- Storage topology ---

    op.create_table(
        "cryo_location",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("code", sa.String(100), nullable=False),
        sa.Column("location_type", sa.String(20), nullable=False),
        sa.Column("parent_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("cryo_location.id"), nullable=True),
        sa.Column("sample_type", sa.String(20), nullable=True),
        sa.Column("capacity", sa.Integer, nullable=True),
        sa.Column("temperature", sa.Numeric(6, 2), nullable=True),
        sa.Column("is_active", sa.Boolean, server_default="true", nullable=False),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("is_deleted", sa.Boolean, server_default="false", nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_cryo_location_parent", "cryo_location", ["parent_id"])
    op.create_index("ix_cryo_location_type", "cryo_location", ["location_type"])
    op.create_index("ix_cryo_location_code", "cryo_location", ["code"])

    # --- Sample ---

    op.create_table(
        "sample",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("sample_code", sa.String(40), unique=True, nullable=False),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("treatment_cycle_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("sample_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("collection_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("storage_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quality", postgresql.JSONB, server_default="{}", nullable=False),
        sa.Column("is_available", sa.Boolean, server_default="true", nullable=False),
        sa.Column("can_frozen", sa.Boolean, server_default="false", nullable=False),
        sa.Column("can_fertilize", sa.Boolean, server_default="false", nullable=False),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("is_deleted", sa.Boolean, server_default="false", nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_sample_code", "sample", ["sample_code"])
    op.create_index("ix_sample_patient", "sample", ["patient_id"])
    op.create_index("ix_sample_patient_type", "sample", ["patient_id", "sample_type"])
    op.create_index("ix_sample_cycle", "sample", ["treatment_cycle_id"])
    op.create_index("ix_sample_status", "sample", ["status"])

    # --- Sample Status History ---

    op.create_table(
        "sample_status_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("sample_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("previous_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("changed_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_sample_status_history_sample", "sample_status_history", ["sample_id"])
    op.create_index("ix_sample_status_history_changed_at", "sample_status_history", ["changed_at"])

    # --- Chain of custody ---

    op.create_table(
        "cryo_import",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("sample_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("sample.id"), nullable=False),
        sa.Column("slot_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("cryo_location.id"), nullable=False),
        sa.Column("import_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("imported_by", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("witnessed_by", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("temperature", sa.Numeric(6, 2), nullable=True),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("imported_by <> witnessed_by", name="ck_cryo_import_distinct_witness"),
    )
    op.create_index("ix_cryo_import_slot_created", "cryo_import", ["slot_id", "created_at"])
    op.create_index("ix_cryo_import_sample_created", "cryo_import", ["sample_id", "created_at"])

    op.create_table(
        "cryo_export",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("sample_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("sample.id"), nullable=False),
        sa.Column("slot_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("cryo_location.id"), nullable=True),
        sa.Column("export_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("exported_by", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("witnessed_by", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("destination", sa.String(200), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("is_thawed", sa.Boolean, server_default="false", nullable=False),
        sa.Column("thawing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("thawing_result", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("exported_by <> witnessed_by", name="ck_cryo_export_distinct_witness"),
    )
    op.create_index("ix_cryo_export_sample", "cryo_export", ["sample_id"])


def downgrade() -> None:
    op.drop_table("cryo_export")
    op.drop_table("cryo_import")
    op.drop_table("sample_status_history")
    op.drop_table("sample")
    op.drop_table("cryo_location")
    op.drop_table("audit_log")
