"""
Access Control Module

Role and ownership checks for loan-scoped resources. Staff roles have blanket
access; borrowers may only reach loans they own; anything else is denied.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from .errors import ForbiddenError
from .logging_config import get_logger, log_action


class Role(Enum):
    """Roles issued by the external identity provider"""
    BORROWER = "borrower"
    SERVICER = "servicer"
    ADMIN = "admin"


STAFF_ROLES = frozenset({Role.SERVICER, Role.ADMIN})


def parse_role(role: Union[Role, str, None]) -> Optional[Role]:
    """Return the Role for a raw claim value, or None when it is not a known role"""
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        return None


@dataclass(frozen=True)
class Identity:
    """
    Verified caller identity, fixed for the lifetime of a request.

    ``role`` keeps the raw claim so that an unrecognized role reaches the
    gate and is denied there.
    """
    id: str
    role: str
    name: str = ""
    session_id: Optional[str] = None

    @property
    def session(self) -> str:
        """Session the CSRF token is bound to (the user id unless the provider sets one)"""
        return self.session_id or self.id

    @property
    def is_staff(self) -> bool:
        return parse_role(self.role) in STAFF_ROLES

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> 'Identity':
        """Build an identity from verified token claims (sub, role, name, sid)"""
        return cls(
            id=str(claims["sub"]),
            role=str(claims.get("role", "")),
            name=str(claims.get("name") or claims["sub"]),
            session_id=claims.get("sid"),
        )


class LoanAccessGate:
    """
    Decides whether a caller may touch a loan.

    ``ownership`` is any object exposing ``is_owned_by(user_id, loan_id)``;
    the loan manager fills that role in production.
    """

    def __init__(self, ownership):
        self.ownership = ownership
        self.logger = get_logger("servicing.access")

    def can_access_loan(self, user_id: str, loan_id: str, role: Union[Role, str]) -> bool:
        parsed = parse_role(role)
        if parsed in STAFF_ROLES:
            return True
        if parsed is Role.BORROWER:
            return self.ownership.is_owned_by(user_id, loan_id)
        return False

    def require_loan_access(self, identity: Identity, loan_id: str) -> None:
        """
        Raises:
            ForbiddenError: caller may not access the loan. Raised the same way
                whether or not the loan exists.
        """
        if not self.can_access_loan(identity.id, loan_id, identity.role):
            log_action(
                self.logger, "warning", "Loan access denied",
                user_id=identity.id, action="loan_access_denied",
                resource=f"loan:{loan_id}", loan_id=loan_id,
                extra={"role": identity.role}
            )
            raise ForbiddenError()

    def require_staff(self, identity: Identity) -> None:
        """Raises ForbiddenError unless the caller is a servicer or admin"""
        if not identity.is_staff:
            log_action(
                self.logger, "warning", "Staff-only operation denied",
                user_id=identity.id, action="staff_access_denied",
                extra={"role": identity.role}
            )
            raise ForbiddenError()
