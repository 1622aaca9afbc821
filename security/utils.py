from functools import wraps
from flask import abort, current_app, g, redirect, url_for
from flask_login import UserMixin

from .credentials import Role
from .gate import Destination, require_authenticated, require_enrollable, require_role
from .sessions import AuthenticatedWithSecondFactor, authenticated_principal


class SessionUser(UserMixin):
    """current_user built from the authenticated half of the session."""

    def __init__(self, principal, fully_authenticated):
        self.id = principal.id
        self.name = principal.name
        self.role = principal.role
        self.totp_enabled = principal.totp_enabled
        self.fully_authenticated = fully_authenticated

    @property
    def is_admin(self):
        return self.role is Role.ADMIN

    @classmethod
    def from_state(cls, state):
        principal = authenticated_principal(state)
        if principal is None:
            return None
        return cls(principal, isinstance(state, AuthenticatedWithSecondFactor))


def redirect_to(destination: Destination):
    endpoint = current_app.config["SECURITY_DESTINATIONS"].get(destination.value)
    if endpoint and endpoint in current_app.view_functions:
        return redirect(url_for(endpoint))
    return redirect("/")


def _guard(check):
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            decision = check(g.auth.state)
            if decision.rejected:
                return abort(decision.status)
            if not decision.allowed:
                return redirect_to(decision.redirect_to)
            return f(*args, **kwargs)
        return wrapper
    return decorator


auth_required = _guard(require_authenticated)
enrollment_required = _guard(require_enrollable)


def roles_required(*roles):
    return _guard(lambda state: require_role(state, *roles))


admin_required = roles_required(Role.ADMIN)
