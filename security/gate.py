"""Request-time access checks over an already established session."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .credentials import Role
from .sessions import (
    AuthState,
    AuthenticatedNoSecondFactor,
    AuthenticatedWithSecondFactor,
    PasswordVerifiedNoSecondFactor,
    authenticated_principal,
)


class Destination(str, Enum):
    LOGIN = "login"
    VERIFY_SECOND_FACTOR = "verify_second_factor"
    ENROLL = "enroll"
    ADMIN_AREA = "admin_area"
    TECHNICIAN_AREA = "technician_area"
    USER_AREA = "user_area"


def destination_for(role: Role) -> Destination:
    if role is Role.ADMIN:
        return Destination.ADMIN_AREA
    if role is Role.TECHNICIAN:
        return Destination.TECHNICIAN_AREA
    return Destination.USER_AREA


@dataclass(frozen=True)
class Decision:
    allowed: bool
    redirect_to: Optional[Destination] = None
    status: Optional[int] = None

    @property
    def rejected(self) -> bool:
        return self.status is not None


ALLOW = Decision(True)


def redirect(destination: Destination) -> Decision:
    return Decision(False, redirect_to=destination)


def reject(status: int = 403) -> Decision:
    return Decision(False, status=status)


def require_authenticated(state: AuthState) -> Decision:
    if isinstance(state, AuthenticatedWithSecondFactor):
        return ALLOW
    if isinstance(state, PasswordVerifiedNoSecondFactor):
        # Enrollment is mandatory: same policy as the login transition
        return redirect(Destination.ENROLL)
    if isinstance(state, AuthenticatedNoSecondFactor):
        return redirect(Destination.VERIFY_SECOND_FACTOR)
    return redirect(Destination.LOGIN)


def require_enrollable(state: AuthState) -> Decision:
    if isinstance(state, (PasswordVerifiedNoSecondFactor, AuthenticatedWithSecondFactor)):
        return ALLOW
    if isinstance(state, AuthenticatedNoSecondFactor):
        return redirect(Destination.VERIFY_SECOND_FACTOR)
    return redirect(Destination.LOGIN)


def require_role(state: AuthState, *roles: Role) -> Decision:
    decision = require_authenticated(state)
    if not decision.allowed:
        return decision
    if authenticated_principal(state).role not in roles:
        return reject(403)
    return ALLOW
