from __future__ import annotations

import base64
import hashlib
import hmac
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO
from typing import Callable, Optional, Protocol
from urllib.parse import quote, urlencode

import qrcode

from officegate.logging import get_logger
from officegate.service.errors import (
    MfaAlreadyEnabledError,
    MfaInvalidCodeError,
    MfaNotEnabledError,
    MfaNotEnrolledError,
)
from officegate.storage.models import User

logger = get_logger(__name__)

TOTP_INTERVAL_SECONDS = 30
TOTP_DIGITS = 6
SECRET_BYTES = 20


class MfaStore(Protocol):
    def set_user_mfa(
        self,
        user_id: str,
        *,
        secret: Optional[str],
        enabled: bool,
        enabled_at: Optional[datetime] = None,
    ) -> User: ...


@dataclass
class MfaEnrollment:
    secret: str
    otpauth_uri: str
    qr_code: str


@dataclass
class MfaStatus:
    enabled: bool
    activated_at: Optional[datetime] = None
    pending: bool = False


def generate_secret(num_bytes: int = SECRET_BYTES) -> str:
    """Random base32 secret for manual entry into an authenticator app."""
    return base64.b32encode(os.urandom(num_bytes)).decode("ascii").rstrip("=")


def generate_code(
    secret: str,
    timestamp: float,
    *,
    interval: int = TOTP_INTERVAL_SECONDS,
    digits: int = TOTP_DIGITS,
) -> str:
    """RFC 6238 code with HMAC-SHA1, the default every authenticator app uses.

    Returns an empty string when ``secret`` is not valid base32.
    """
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def render_qr_data_uri(payload: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


class TotpEngine:
    """Enrollment lifecycle and code checks for the TOTP second factor.

    States run disabled -> pending enrollment -> enabled -> disabled. Checks
    accept the previous, current and next 30 second step and keep no record
    of consumed steps, so a code can be replayed inside its window.
    """

    def __init__(
        self,
        store: MfaStore,
        *,
        issuer: str,
        window: int = 1,
        interval: int = TOTP_INTERVAL_SECONDS,
        digits: int = TOTP_DIGITS,
        time_source: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.window = window
        self.interval = interval
        self.digits = digits
        self._time = time_source or time.time
        self.logger = logger

    def provisioning_uri(self, secret: str, account: str) -> str:
        label = quote(f"{self.issuer}:{account}", safe=":@")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{query}"

    def check_code(self, secret: str, code: str, *, at: Optional[float] = None) -> bool:
        candidate = (code or "").strip()
        if len(candidate) != self.digits or not candidate.isdigit():
            return False
        now = self._time() if at is None else at
        for offset in range(-self.window, self.window + 1):
            generated = generate_code(
                secret, now + offset * self.interval, interval=self.interval, digits=self.digits
            )
            if generated and hmac.compare_digest(generated, candidate):
                return True
        return False

    def begin_enrollment(self, user: User) -> MfaEnrollment:
        """Store a fresh pending secret, replacing any earlier unconfirmed one."""
        if user.mfa_enabled:
            raise MfaAlreadyEnabledError()
        secret = generate_secret()
        self.store.set_user_mfa(user.id, secret=secret, enabled=False)
        uri = self.provisioning_uri(secret, user.email)
        self.logger.info("mfa_enrollment_started", user_id=user.id)
        return MfaEnrollment(secret=secret, otpauth_uri=uri, qr_code=render_qr_data_uri(uri))

    def cancel_enrollment(self, user: User) -> User:
        if user.mfa_enabled:
            raise MfaAlreadyEnabledError()
        if not user.mfa_secret:
            return user
        self.logger.info("mfa_enrollment_cancelled", user_id=user.id)
        return self.store.set_user_mfa(user.id, secret=None, enabled=False)

    def confirm_enrollment(self, user: User, code: str, *, at: Optional[float] = None) -> User:
        if not user.mfa_secret:
            raise MfaNotEnrolledError()
        if user.mfa_enabled:
            raise MfaAlreadyEnabledError()
        if not self.check_code(user.mfa_secret, code, at=at):
            self.logger.warning("mfa_enrollment_code_rejected", user_id=user.id)
            raise MfaInvalidCodeError()
        now = self._time() if at is None else at
        updated = self.store.set_user_mfa(
            user.id,
            secret=user.mfa_secret,
            enabled=True,
            enabled_at=datetime.fromtimestamp(now, tz=timezone.utc),
        )
        self.logger.info("mfa_enabled", user_id=user.id)
        return updated

    def verify_login(self, user: User, code: str, *, at: Optional[float] = None) -> None:
        if not user.mfa_enabled or not user.mfa_secret:
            raise MfaNotEnabledError()
        if not self.check_code(user.mfa_secret, code, at=at):
            self.logger.warning("mfa_login_code_rejected", user_id=user.id)
            raise MfaInvalidCodeError()

    def disable(self, user: User, code: str, *, at: Optional[float] = None) -> User:
        """Turn the second factor off; requires a currently valid code."""
        if not user.mfa_enabled or not user.mfa_secret:
            raise MfaNotEnabledError()
        if not self.check_code(user.mfa_secret, code, at=at):
            self.logger.warning("mfa_disable_code_rejected", user_id=user.id)
            raise MfaInvalidCodeError()
        updated = self.store.set_user_mfa(user.id, secret=None, enabled=False, enabled_at=None)
        self.logger.info("mfa_disabled", user_id=user.id)
        return updated

    @staticmethod
    def status(user: User) -> MfaStatus:
        return MfaStatus(
            enabled=user.mfa_enabled,
            activated_at=user.mfa_enabled_at if user.mfa_enabled else None,
            pending=user.has_pending_mfa_secret,
        )
