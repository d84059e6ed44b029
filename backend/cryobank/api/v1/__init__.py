"""API v1 router that aggregates all sub-routers."""

from fastapi import APIRouter

from cryobank.api.v1.audit_logs import router as audit_logs_router
from cryobank.api.v1.cryo_imports import router as cryo_imports_router
from cryobank.api.v1.cryo_locations import router as cryo_locations_router
from cryobank.api.v1.directory import router as directory_router
from cryobank.api.v1.samples import router as samples_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(samples_router)
api_router.include_router(cryo_locations_router)
api_router.include_router(cryo_imports_router)
api_router.include_router(directory_router)
api_router.include_router(audit_logs_router)
