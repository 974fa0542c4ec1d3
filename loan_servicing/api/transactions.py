"""
Transaction endpoints
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, Query
from fastapi.responses import JSONResponse

from ..access import Identity
from ..transactions import calculate_transaction_totals
from ..storage import to_storable
from .deps import (
    RequestContext, ServicingSystem, current_identity, get_request_context,
    get_system, require_csrf
)


router = APIRouter()


@router.get("")
async def list_transactions(
    loan_id: str = Query(..., alias="loanId"),
    identity: Identity = Depends(current_identity),
    system: ServicingSystem = Depends(get_system)
):
    """Transactions for a loan, newest first, with totals"""
    system.access_gate.require_loan_access(identity, loan_id)
    transactions = system.ledger.get_loan_transactions(loan_id)
    return {
        "transactions": [txn.to_api() for txn in transactions],
        "totals": to_storable(calculate_transaction_totals(transactions)),
    }


@router.post("")
async def create_transaction(
    payload: Dict[str, Any] = Body(...),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    identity: Identity = Depends(require_csrf),
    context: RequestContext = Depends(get_request_context),
    system: ServicingSystem = Depends(get_system)
):
    """
    Record a transaction (staff only). 201 when created; 200 with the original
    transaction when the Idempotency-Key was already used.
    """
    system.access_gate.require_staff(identity)
    result = system.ledger.create_transaction(
        idempotency_key,
        payload,
        performed_by=identity.name,
        request_id=context.request_id,
        ip_address=context.ip_address,
    )
    return JSONResponse(
        status_code=result.status_code,
        content={"transaction": result.transaction.to_api(), "created": result.created},
    )
