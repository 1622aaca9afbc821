"""Authentication state machine.

Drives a browser session from anonymous to fully authenticated:

    Anonymous --password, no TOTP--> PasswordVerifiedNoSecondFactor --enroll-->
    Anonymous --password, TOTP-----> PasswordVerifiedPendingSecondFactor --code-->
        AuthenticatedWithSecondFactor

Every entry point takes the request's :class:`SessionContext` explicitly and
returns the :class:`Destination` the caller should redirect to, or raises one
of the errors in :mod:`security.errors`.
"""
import logging
import time

from . import passwords
from . import totp
from .audit import AuditAction
from .email import enrollment_notice
from .errors import CredentialError, SecondFactorError, PersistenceError
from .gate import Destination, destination_for, require_enrollable
from .sessions import (
    AuthenticatedNoSecondFactor,
    AuthenticatedWithSecondFactor,
    PasswordVerifiedNoSecondFactor,
    PasswordVerifiedPendingSecondFactor,
    PendingPrincipal,
    SessionContext,
    SessionPrincipal,
    authenticated_principal,
)

logger = logging.getLogger(__name__)

_NO_PENDING = object()
_BAD_CODE = object()


class AuthMachine:
    def __init__(self, credentials, audit=None, mailer=None, issuer="Soporte TI",
                 skew_window=1, clock=time.time):
        self.credentials = credentials
        self.audit = audit
        self.mailer = mailer
        self.issuer = issuer
        self.skew_window = skew_window
        self.clock = clock

    def _verify(self, secret, code):
        return totp.verify_code(secret, code, skew_window=self.skew_window, at=int(self.clock()))

    # ------------- Password step -------------

    def login(self, ctx: SessionContext, email: str, password: str) -> Destination:
        principal = self.credentials.find_by_email(email)
        if principal is None:
            logger.info("Login rechazado: usuario inexistente")
            raise CredentialError(CredentialError.UNKNOWN_PRINCIPAL)
        if not principal.password_hash:
            logger.error("El usuario %s no tiene contraseña configurada", principal.id)
            raise CredentialError(CredentialError.MISSING_HASH)
        if not passwords.verify(password, principal.password_hash):
            logger.info("Login rechazado: contraseña incorrecta para usuario %s", principal.id)
            raise CredentialError(CredentialError.BAD_PASSWORD)

        if principal.has_second_factor:
            ctx.rotate(PasswordVerifiedPendingSecondFactor(PendingPrincipal.from_principal(principal)))
            return Destination.VERIFY_SECOND_FACTOR

        # No TOTP yet: authenticated but confined to the enrollment flow
        ctx.rotate(PasswordVerifiedNoSecondFactor(
            SessionPrincipal.from_principal(principal, totp_enabled=False)))
        return Destination.ENROLL

    # ------------- Second factor step -------------

    def verify_second_factor(self, ctx: SessionContext, code: str) -> Destination:
        # A session that owes a code but has no pending snapshot verifies
        # against the stored secret; read it before entering the atomic update.
        stored_secret = None
        if isinstance(ctx.state, AuthenticatedNoSecondFactor):
            principal = self.credentials.find_by_id(ctx.state.principal.id)
            if principal is not None and principal.has_second_factor:
                stored_secret = principal.totp_secret

        def complete(state):
            if isinstance(state, PasswordVerifiedPendingSecondFactor):
                secret = state.pending.totp_secret
                pending = state.pending
                snapshot = SessionPrincipal(id=pending.id, name=pending.name,
                                            role=pending.role, totp_enabled=True)
            elif isinstance(state, AuthenticatedNoSecondFactor) and stored_secret:
                secret = stored_secret
                snapshot = state.principal
            else:
                return state, _NO_PENDING
            if not self._verify(secret, code):
                return state, _BAD_CODE
            return AuthenticatedWithSecondFactor(snapshot), snapshot

        outcome = ctx.transition(complete)
        if outcome is _NO_PENDING:
            raise SecondFactorError(SecondFactorError.NO_PENDING)
        if outcome is _BAD_CODE:
            logger.info("Código 2FA incorrecto")
            raise SecondFactorError(SecondFactorError.INVALID_CODE)

        try:
            self.credentials.touch_last_access(outcome.id)
        except (PersistenceError, LookupError):
            logger.warning("No se pudo actualizar el último acceso del usuario %s", outcome.id)

        ctx.rotate(ctx.state)
        return destination_for(outcome.role)

    # ------------- Enrollment -------------

    def _enrollable(self, ctx):
        if not require_enrollable(ctx.state).allowed:
            raise SecondFactorError(SecondFactorError.NO_PENDING)
        current = authenticated_principal(ctx.state)
        principal = self.credentials.find_by_id(current.id)
        if principal is None:
            # Account removed while the session was alive
            ctx.destroy()
            raise SecondFactorError(SecondFactorError.NO_PENDING)
        return principal

    def start_enrollment(self, ctx: SessionContext) -> totp.EnrollmentChallenge:
        principal = self._enrollable(ctx)
        return totp.generate_secret(principal.email, issuer=self.issuer)

    def challenge_for(self, ctx: SessionContext, secret: str) -> totp.EnrollmentChallenge:
        """Rebuild the challenge for a candidate secret already shown to the user."""
        principal = self._enrollable(ctx)
        return totp.EnrollmentChallenge(
            secret=secret, provisioning_uri=totp.provisioning_uri(secret, principal.email, self.issuer))

    def complete_enrollment(self, ctx: SessionContext, secret: str, code: str) -> Destination:
        principal = self._enrollable(ctx)
        if not self._verify(secret, code):
            challenge = totp.EnrollmentChallenge(
                secret=secret, provisioning_uri=totp.provisioning_uri(secret, principal.email, self.issuer))
            raise SecondFactorError(SecondFactorError.INVALID_CODE, challenge=challenge)

        rotating = isinstance(ctx.state, AuthenticatedWithSecondFactor)
        try:
            self.credentials.update_totp(principal.id, secret, True)
        except LookupError:
            # Account removed between the check and the write
            ctx.destroy()
            raise SecondFactorError(SecondFactorError.NO_PENDING)

        if self.audit is not None:
            self.audit.record_for(
                ctx.client, principal.id,
                AuditAction.ROTATE_2FA if rotating else AuditAction.ENABLE_2FA,
                "usuarios", principal.id,
                before={"twofa_enabled": principal.totp_enabled},
                after={"twofa_enabled": True},
            )
        if self.mailer is not None:
            subject, body = enrollment_notice(principal.name, self.issuer)
            try:
                self.mailer.send_notification(principal.email, subject, body)
            except Exception:
                logger.exception("Falló la notificación de 2FA para el usuario %s", principal.id)

        snapshot = SessionPrincipal.from_principal(principal, totp_enabled=True)

        def elevate(state):
            # Only the same principal, still enrolling; a logout in between wins
            current = authenticated_principal(state)
            if (not isinstance(state, (PasswordVerifiedNoSecondFactor, AuthenticatedWithSecondFactor))
                    or current.id != principal.id):
                return state, _NO_PENDING
            return AuthenticatedWithSecondFactor(snapshot), snapshot

        if ctx.transition(elevate) is _NO_PENDING:
            raise SecondFactorError(SecondFactorError.NO_PENDING)
        ctx.rotate(ctx.state)

        return destination_for(principal.role)

    # ------------- Logout -------------

    def logout(self, ctx: SessionContext) -> Destination:
        ctx.destroy()
        return Destination.LOGIN

    def current_destination(self, ctx: SessionContext) -> Destination:
        """Where a browser in this session belongs right now."""
        state = ctx.state
        if isinstance(state, AuthenticatedWithSecondFactor):
            return destination_for(state.principal.role)
        if isinstance(state, PasswordVerifiedNoSecondFactor):
            return Destination.ENROLL
        if isinstance(state, (PasswordVerifiedPendingSecondFactor, AuthenticatedNoSecondFactor)):
            return Destination.VERIFY_SECOND_FACTOR
        return Destination.LOGIN


