"""
Authentication throttling endpoints

Login itself belongs to the external identity provider; it calls in here to
consume one authentication attempt for the client address.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..rate_limit import RateLimitCategory, client_ip
from .deps import ServicingSystem, get_system


router = APIRouter()


@router.post("/login-attempts")
async def consume_login_attempt(
    request: Request,
    system: ServicingSystem = Depends(get_system)
):
    """Count one login attempt; 429 with Retry-After once the window is exhausted"""
    result = system.rate_limiter.check(client_ip(request.headers), RateLimitCategory.AUTH)
    if not result.allowed:
        retry_after = result.retry_after(system.rate_limiter.clock())
        return JSONResponse(
            status_code=429,
            content=result.to_response(),
            headers={"Retry-After": str(retry_after)},
        )
    return result.to_response()
