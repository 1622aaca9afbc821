import logging

from werkzeug.security import generate_password_hash, check_password_hash

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return generate_password_hash(password, method="pbkdf2:sha256")


def verify(submitted: str, stored_hash: str) -> bool:
    """Compare a submitted password against a stored salted hash."""
    if not stored_hash or submitted is None:
        return False
    try:
        return check_password_hash(stored_hash, submitted)
    except ValueError:
        # Unknown hash method in the stored value
        logger.warning("Hash de contraseña con formato no soportado")
        return False
