import logging
from flask_mail import Message

logger = logging.getLogger(__name__)


class FlaskMailer:
    """Notification mails; a failed send is logged and never propagates."""

    def __init__(self, app=None):
        self.app = app

    def send_notification(self, address: str, subject: str, body: str) -> bool:
        from . import mail
        try:
            msg = Message(subject=subject, recipients=[address], body=body)
            if self.app is not None:
                with self.app.app_context():
                    mail.send(msg)
            else:
                mail.send(msg)
            return True
        except Exception:
            logger.exception("No se pudo enviar la notificación '%s'", subject)
            return False


def enrollment_notice(name: str, issuer: str):
    subject = f"2FA activado en {issuer}"
    body = (f"Hola {name},\n\n"
            f"La autenticación en dos pasos (2FA) fue activada para tu cuenta en {issuer}.\n\n"
            "Si no fuiste vos, contactá a un administrador.")
    return subject, body
