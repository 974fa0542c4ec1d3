"""
Loan endpoints
"""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from ..access import Identity
from ..errors import NotFoundError
from ..loans import LoanUpdate
from .deps import (
    RequestContext, ServicingSystem, current_identity, get_request_context,
    get_system, require_csrf
)
from .schemas import PayoffRequest


router = APIRouter()


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    identity: Identity = Depends(current_identity),
    system: ServicingSystem = Depends(get_system)
):
    """Loan details; access is checked before existence"""
    system.access_gate.require_loan_access(identity, loan_id)
    loan = system.loan_manager.get_loan(loan_id)
    if loan is None:
        raise NotFoundError("Loan", loan_id)
    return loan.to_api()


@router.api_route("/{loan_id}", methods=["PATCH", "PUT"])
async def update_loan(
    loan_id: str,
    changes: Dict[str, Any] = Body(...),
    identity: Identity = Depends(require_csrf),
    context: RequestContext = Depends(get_request_context),
    system: ServicingSystem = Depends(get_system)
):
    """Partial update of servicer-editable fields (staff only)"""
    system.access_gate.require_staff(identity)
    update = LoanUpdate.from_dict(changes)
    loan = system.loan_manager.update_loan(
        loan_id, update, performed_by=identity.name,
        request_id=context.request_id, ip_address=context.ip_address,
    )
    return loan.to_api()


@router.post("/{loan_id}/documents/payoff")
async def generate_payoff_statement(
    loan_id: str,
    request: PayoffRequest,
    identity: Identity = Depends(require_csrf),
    context: RequestContext = Depends(get_request_context),
    system: ServicingSystem = Depends(get_system)
):
    """Payoff quote through goodThroughDate"""
    system.access_gate.require_loan_access(identity, loan_id)
    breakdown = system.payoff_service.generate(
        loan_id,
        request.goodThroughDate,
        performed_by=identity.name,
        request_id=context.request_id,
        ip_address=context.ip_address,
    )
    return {"loanId": loan_id, "payoff": breakdown.to_api()}
