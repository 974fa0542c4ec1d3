"""
Service assembly and request dependencies
"""

import uuid
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..access import Identity, LoanAccessGate
from ..audit import AuditTrail
from ..config import ServicingConfig
from ..csrf import CSRF_HEADER_NAME, CsrfGuard
from ..errors import AuthenticationRequiredError
from ..loans import LoanManager
from ..org_config import CompanySettingsManager, CompanySettingsStore, OrgConfigCache
from ..payoff import PayoffStatementService, resolve_timezone
from ..rate_limit import RateLimitCategory, RateLimiter, client_ip, create_rate_limiter
from ..storage import StorageInterface, create_storage
from ..transactions import TransactionLedger


class ServicingSystem:
    """Servicing components wired from one configuration"""

    def __init__(
        self,
        config: ServicingConfig,
        storage: Optional[StorageInterface] = None,
        rate_limiter: Optional[RateLimiter] = None
    ):
        self.config = config
        self.storage = storage or create_storage(config.database_url)

        self.audit_trail = AuditTrail(self.storage)
        self.loan_manager = LoanManager(self.storage, self.audit_trail)
        self.ledger = TransactionLedger(self.storage, self.loan_manager, self.audit_trail)

        self.settings_store = CompanySettingsStore(self.storage)
        self.config_cache = OrgConfigCache(
            self.settings_store.load_org_config, ttl_seconds=config.org_config_ttl_seconds
        )
        self.settings_manager = CompanySettingsManager(
            self.settings_store, self.config_cache, self.audit_trail
        )

        self.timezone = resolve_timezone(config.organization_timezone)
        self.payoff_service = PayoffStatementService(
            self.loan_manager, self.config_cache, self.audit_trail, self.timezone
        )

        self.access_gate = LoanAccessGate(self.loan_manager)
        self.csrf_guard = CsrfGuard(config.csrf_secret)
        self.rate_limiter = rate_limiter or create_rate_limiter(config)

    def close(self) -> None:
        self.storage.close()


def get_system(request: Request) -> ServicingSystem:
    return request.app.state.system


@dataclass(frozen=True)
class RequestContext:
    request_id: str
    ip_address: str


def get_request_context(request: Request) -> RequestContext:
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    ip_address = client_ip(request.headers)
    if ip_address == "unknown" and request.client:
        ip_address = request.client.host
    return RequestContext(request_id=request_id, ip_address=ip_address)


bearer_scheme = HTTPBearer(auto_error=False)


def decode_identity(token: str, config: ServicingConfig) -> Identity:
    """
    Verify a bearer token from the identity provider

    Raises:
        AuthenticationRequiredError: bad signature, expired, or missing claims
    """
    try:
        claims = jwt.decode(
            token,
            config.jwt_secret,
            algorithms=[config.jwt_algorithm],
            audience=config.jwt_audience,
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationRequiredError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationRequiredError("Invalid token")
    return Identity.from_claims(claims)


def current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    system: ServicingSystem = Depends(get_system)
) -> Identity:
    """Authenticated caller; also consumes one general API request for them"""
    if credentials is None:
        raise AuthenticationRequiredError()
    identity = decode_identity(credentials.credentials, system.config)
    system.rate_limiter.enforce(identity.id, RateLimitCategory.API)
    return identity


def require_csrf(
    request: Request,
    identity: Identity = Depends(current_identity),
    system: ServicingSystem = Depends(get_system)
) -> Identity:
    """Authenticated caller whose state-changing request carries a valid CSRF token"""
    system.csrf_guard.enforce(request.method, request.headers.get(CSRF_HEADER_NAME), identity.session)
    return identity

