"""Error taxonomy of the authentication core.

Every error carries a user-facing ``message`` that is safe to flash; the
``reason`` is for logs and tests only.
"""


class SecurityError(Exception):
    status_code = 400
    default_message = "Error de seguridad."

    def __init__(self, reason=None, message=None):
        self.reason = reason
        self.message = message or self.default_message
        super().__init__(reason or self.message)


class CredentialError(SecurityError):
    UNKNOWN_PRINCIPAL = "unknown_principal"
    BAD_PASSWORD = "bad_password"
    MISSING_HASH = "missing_hash"

    status_code = 401
    # Unknown email and wrong password share one message on purpose
    default_message = "Usuario o contraseña incorrectos."

    def __init__(self, reason, message=None):
        if reason == self.MISSING_HASH and message is None:
            message = "Error interno: el usuario no tiene contraseña configurada."
        super().__init__(reason, message)
        if reason == self.MISSING_HASH:
            self.status_code = 500


class SecondFactorError(SecurityError):
    INVALID_CODE = "invalid_code"
    NO_PENDING = "no_pending"

    status_code = 401

    def __init__(self, reason, message=None, challenge=None):
        if message is None:
            message = {
                self.INVALID_CODE: "Código incorrecto. Intente nuevamente.",
                self.NO_PENDING: "La verificación expiró. Inicie sesión nuevamente.",
            }.get(reason, "Código 2FA inválido.")
        super().__init__(reason, message)
        # Enrollment keeps the candidate secret so the user can retry against it
        self.challenge = challenge


class AuthorizationError(SecurityError):
    status_code = 403
    default_message = "Acceso denegado."


class PersistenceError(SecurityError):
    status_code = 500
    default_message = "Error interno del servidor."
