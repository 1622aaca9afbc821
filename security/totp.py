"""TOTP provisioning and verification.

Secrets are standard 32-character base32 strings (160 bits), codes are six
digits over 30 second steps with SHA-1, so any authenticator app can enroll
from the provisioning URI.
"""
import io
import base64
import binascii
import datetime as dt
from dataclasses import dataclass
from typing import Optional, Union

import pyotp
import qrcode

DIGITS = 6
INTERVAL = 30


@dataclass(frozen=True)
class EnrollmentChallenge:
    secret: str
    provisioning_uri: str


def provisioning_uri(secret: str, label: str, issuer: str) -> str:
    return pyotp.TOTP(secret, digits=DIGITS, interval=INTERVAL).provisioning_uri(
        name=label, issuer_name=issuer)


def generate_secret(label: str, issuer: str = "Soporte TI") -> EnrollmentChallenge:
    secret = pyotp.random_base32()
    return EnrollmentChallenge(secret=secret, provisioning_uri=provisioning_uri(secret, label, issuer))


def normalize_code(code) -> str:
    return "".join(str(code or "").split())


def verify_code(secret: str, code, skew_window: int = 1,
                at: Optional[Union[int, float, dt.datetime]] = None) -> bool:
    """Accept the code for the current step or ``skew_window`` steps either side."""
    code = normalize_code(code)
    if not secret or len(code) != DIGITS or not code.isdigit():
        return False
    totp = pyotp.TOTP(secret, digits=DIGITS, interval=INTERVAL)
    for_time = at if at is not None else dt.datetime.now()
    if isinstance(for_time, float):
        for_time = int(for_time)
    try:
        return totp.verify(code, for_time=for_time, valid_window=skew_window)
    except (binascii.Error, ValueError):
        return False


def qr_data_uri(uri: str) -> str:
    # QR as data URI
    img = qrcode.make(uri)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
