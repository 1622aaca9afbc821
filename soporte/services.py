# /soporte/services.py
# Operaciones administrativas sobre cuentas: eliminar usuarios, reiniciar 2FA,
# cambiar contraseña y alta por consola. Cada cambio confirmado se audita.

import logging

from security import passwords
from security.audit import AuditAction
from security.credentials import Role
from security.errors import CredentialError

logger = logging.getLogger(__name__)

ENTITY = "usuarios"


class AdministrationError(Exception):
    SELF_DELETE = "auto_eliminar"
    LAST_ADMIN = "ultimo_admin"
    NOT_FOUND = "no_encontrado"

    MESSAGES = {
        SELF_DELETE: "No podés eliminar tu propio usuario.",
        LAST_ADMIN: "No se puede eliminar el último administrador.",
        NOT_FOUND: "Usuario no encontrado.",
    }

    def __init__(self, reason):
        self.reason = reason
        self.message = self.MESSAGES.get(reason, "Operación no permitida.")
        super().__init__(reason)


def remove_user(credentials, audit, actor_id, target_id, client):
    """Delete a principal unless it is the actor or the last administrator."""
    if int(actor_id) == int(target_id):
        raise AdministrationError(AdministrationError.SELF_DELETE)

    target = credentials.find_by_id(target_id)
    if target is None:
        raise AdministrationError(AdministrationError.NOT_FOUND)

    # Si es admin, validar contra el conteo vivo que NO sea el último
    if target.role is Role.ADMIN and credentials.count_with_role(Role.ADMIN) <= 1:
        raise AdministrationError(AdministrationError.LAST_ADMIN)

    if not credentials.delete(target.id):
        raise AdministrationError(AdministrationError.NOT_FOUND)

    audit.record_for(client, actor_id, AuditAction.DELETE_USER, ENTITY, target.id,
                     before=target.audit_snapshot(), after=None)
    logger.info("Usuario %s eliminado por %s", target.id, actor_id)
    return target


def reset_second_factor(credentials, audit, actor_id, target_id, client):
    target = credentials.find_by_id(target_id)
    if target is None:
        raise AdministrationError(AdministrationError.NOT_FOUND)
    try:
        credentials.clear_totp(target.id)
    except LookupError:
        raise AdministrationError(AdministrationError.NOT_FOUND)
    audit.record_for(client, actor_id, AuditAction.RESET_2FA, ENTITY, target.id,
                     before={"twofa_enabled": target.totp_enabled},
                     after={"twofa_enabled": False})
    return target


def change_password(credentials, audit, principal_id, current, new, client):
    principal = credentials.find_by_id(principal_id)
    if principal is None:
        raise AdministrationError(AdministrationError.NOT_FOUND)
    if not passwords.verify(current, principal.password_hash):
        raise CredentialError(CredentialError.BAD_PASSWORD, "La contraseña actual no es correcta.")
    try:
        credentials.set_password_hash(principal.id, passwords.hash_password(new))
    except LookupError:
        raise AdministrationError(AdministrationError.NOT_FOUND)
    audit.record_for(client, principal.id, AuditAction.CHANGE_PASSWORD, ENTITY, principal.id,
                     before={"password": "anterior"}, after={"password": "actualizada"})


def provision_user(credentials, audit, name, email, password, role):
    """Alta de un usuario desde consola; el actor queda nulo."""
    principal = credentials.create(name, email, passwords.hash_password(password), Role.parse(role))
    audit.record(None, AuditAction.CREATE_USER, ENTITY, principal.id,
                 before=None, after=principal.audit_snapshot(), source_address="cli")
    return principal
