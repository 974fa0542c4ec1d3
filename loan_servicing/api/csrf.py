"""
CSRF token issuance
"""

from fastapi import APIRouter, Depends

from ..access import Identity
from .deps import ServicingSystem, current_identity, get_system


router = APIRouter()


@router.get("")
async def issue_csrf_token(
    identity: Identity = Depends(current_identity),
    system: ServicingSystem = Depends(get_system)
):
    """Mint a token bound to the caller's session"""
    return {"csrfToken": system.csrf_guard.issue_token(identity.session)}
