"""Audit trail lookup for a single entity."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cryobank.database import get_db
from cryobank.services.audit import AuditService

router = APIRouter(prefix="/audit-logs", tags=["audit-logs"])


@router.get("", response_model=dict)
async def list_entity_audit_logs(
    db: Annotated[AsyncSession, Depends(get_db)],
    entity_type: str,
    entity_id: uuid.UUID,
):
    """Every audit entry for one entity, oldest first.

    ``entity_type`` is one of sample, cryo_location, cryo_import or
    cryo_export.
    """
    entries = await AuditService(db).entries_for(entity_type, entity_id)
    data = [
        {
            "id": str(log.id),
            "user_id": str(log.user_id) if log.user_id else None,
            "action": log.action.value,
            "entity_type": log.entity_type,
            "entity_id": str(log.entity_id) if log.entity_id else None,
            "old_values": log.old_values,
            "new_values": log.new_values,
            "timestamp": log.timestamp.isoformat(),
            "additional_context": log.additional_context,
        }
        for log in entries
    ]
    return {"success": True, "data": data, "meta": {"total": len(data)}}
