"""
Audit log endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..access import Identity
from .deps import ServicingSystem, current_identity, get_system


router = APIRouter()


@router.get("")
async def list_audit_entries(
    loan_id: Optional[str] = Query(None, alias="loanId"),
    category: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    identity: Identity = Depends(current_identity),
    system: ServicingSystem = Depends(get_system)
):
    """
    Loan-scoped history for anyone with access to the loan; the global
    listing is staff only.
    """
    if loan_id:
        system.access_gate.require_loan_access(identity, loan_id)
        entries = system.audit_trail.get_loan_entries(loan_id, category=category, limit=limit)
    else:
        system.access_gate.require_staff(identity)
        entries = system.audit_trail.get_all_entries(limit=limit)
    return {"entries": [entry.to_api() for entry in entries], "count": len(entries)}


@router.get("/integrity")
async def verify_audit_integrity(
    identity: Identity = Depends(current_identity),
    system: ServicingSystem = Depends(get_system)
):
    """Hash-chain verification (staff only)"""
    system.access_gate.require_staff(identity)
    return system.audit_trail.verify_integrity()
