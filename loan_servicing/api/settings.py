"""
Company settings endpoints (staff only)
"""

from fastapi import APIRouter, Depends

from ..access import Identity
from .deps import (
    RequestContext, ServicingSystem, current_identity, get_request_context,
    get_system, require_csrf
)
from .schemas import CompanySettingsRequest


router = APIRouter()


@router.get("/company")
async def get_company_settings(
    identity: Identity = Depends(current_identity),
    system: ServicingSystem = Depends(get_system)
):
    system.access_gate.require_staff(identity)
    return system.settings_manager.get_settings().to_dict()


@router.put("/company")
async def update_company_settings(
    request: CompanySettingsRequest,
    identity: Identity = Depends(require_csrf),
    context: RequestContext = Depends(get_request_context),
    system: ServicingSystem = Depends(get_system)
):
    """Replace company settings; the cached org config is invalidated"""
    system.access_gate.require_staff(identity)
    updated = system.settings_manager.update(
        request.to_settings(),
        performed_by=identity.name,
        performed_by_id=identity.id,
        request_id=context.request_id,
        ip_address=context.ip_address,
    )
    return updated.to_dict()
