from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol

from officegate.logging import get_logger
from officegate.service.errors import AuthenticationError, InvalidRefreshTokenError
from officegate.service.roles import Role, parse_role
from officegate.storage.models import Session, User, token_reference

logger = get_logger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"
MFA_PENDING_TOKEN = "mfa_pending"


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_session(self, session: Session) -> Session: ...

    def find_live_session(
        self,
        user_id: str,
        *,
        refresh_token_ref: Optional[str] = None,
        access_token_ref: Optional[str] = None,
    ) -> Optional[Session]: ...

    def rotate_session(
        self,
        session_id: str,
        *,
        expected_refresh_ref: str,
        access_token_ref: str,
        refresh_token_ref: str,
        expires_at: datetime,
    ) -> Optional[Session]: ...

    def terminate_session(
        self, user_id: str, access_token_ref: str, *, at: Optional[datetime] = None
    ) -> int: ...

    def terminate_user_sessions(self, user_id: str, *, at: Optional[datetime] = None) -> int: ...

    def list_sessions(self, user_id: str, *, include_terminated: bool = False) -> List[Session]: ...


@dataclass
class Principal:
    """The authenticated identity attached to a request."""

    user_id: str
    email: str
    role: Role


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class JwtCodec:
    """HS256 compact JWS signing and verification bound to one secret."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway: timedelta = timedelta(seconds=0),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway
        self._clock = clock or _utcnow

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, claims: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        payload = {"iss": self.issuer, "aud": self.audience, **claims}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, token_type: str) -> Optional[dict[str, Any]]:
        """Return verified claims, or None for any signature, claim or expiry failure."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        # Pin the algorithm so a forged header cannot downgrade verification
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return None
        if payload.get("token_type") != token_type or not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp() - self.leeway.total_seconds():
            return None
        return payload


class TokenIssuer:
    """Mints token pairs bound to session rows and manages their lifecycle.

    Access and refresh tokens are signed with independent secrets. Request
    authentication only checks the access token's signature and expiry; the
    session registry is consulted for refresh and logout, so a terminated
    session's access token stays usable until it expires.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(hours=24),
        refresh_ttl: timedelta = timedelta(days=7),
        session_ttl: timedelta = timedelta(hours=24),
        mfa_challenge_ttl: timedelta = timedelta(minutes=5),
        leeway: timedelta = timedelta(seconds=0),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.session_ttl = session_ttl
        self.mfa_challenge_ttl = mfa_challenge_ttl
        self._clock = clock or _utcnow
        self.access_codec = JwtCodec(
            access_secret, issuer=issuer, audience=audience, leeway=leeway, clock=self._clock
        )
        self.refresh_codec = JwtCodec(
            refresh_secret, issuer=issuer, audience=audience, leeway=leeway, clock=self._clock
        )
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def _mint(self, user: User) -> TokenPair:
        now = self._now()
        access_token = self.access_codec.encode(
            {
                "sub": user.id,
                "email": user.email,
                "role": user.role,
                "token_type": ACCESS_TOKEN,
                "jti": str(uuid.uuid4()),
                "iat": int(now.timestamp()),
                "exp": int((now + self.access_ttl).timestamp()),
            }
        )
        refresh_token = self.refresh_codec.encode(
            {
                "sub": user.id,
                "token_type": REFRESH_TOKEN,
                "jti": str(uuid.uuid4()),
                "iat": int(now.timestamp()),
                "exp": int((now + self.refresh_ttl).timestamp()),
            }
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    def issue(
        self,
        user: User,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[Session, TokenPair]:
        """Create one new session row and the token pair bound to it."""
        tokens = self._mint(user)
        session = self.store.create_session(
            Session.new(
                user.id,
                tokens.access_token,
                tokens.refresh_token,
                ttl_minutes=int(self.session_ttl.total_seconds() // 60),
                ip_addr=ip_addr,
                user_agent=user_agent,
                now=self._now(),
            )
        )
        self.logger.info("session_created", user_id=user.id, session_id=session.id)
        return session, tokens

    def refresh(self, refresh_token: str) -> tuple[User, Session, TokenPair]:
        """Rotate both tokens on the session the refresh token belongs to.

        Every failure raises the same ``InvalidRefreshTokenError`` so callers
        cannot tell a forged token from a revoked one.
        """
        claims = self.refresh_codec.decode(refresh_token, token_type=REFRESH_TOKEN)
        if not claims:
            self.logger.warning("refresh_rejected", reason="invalid_token")
            raise InvalidRefreshTokenError()
        user_id = str(claims["sub"])
        presented_ref = token_reference(refresh_token)
        session = self.store.find_live_session(user_id, refresh_token_ref=presented_ref)
        if not session:
            self.logger.warning("refresh_rejected", reason="no_live_session", user_id=user_id)
            raise InvalidRefreshTokenError()
        user = self.store.get_user(user_id)
        if not user or not user.can_hold_session(self._now()):
            self.logger.warning("refresh_rejected", reason="user_not_eligible", user_id=user_id)
            raise InvalidRefreshTokenError()
        tokens = self._mint(user)
        rotated = self.store.rotate_session(
            session.id,
            expected_refresh_ref=presented_ref,
            access_token_ref=token_reference(tokens.access_token),
            refresh_token_ref=token_reference(tokens.refresh_token),
            expires_at=self._now() + self.session_ttl,
        )
        if not rotated:
            # Another refresh with the same token won the conditional update
            self.logger.warning("refresh_rejected", reason="rotation_lost", session_id=session.id)
            raise InvalidRefreshTokenError()
        self.logger.info("session_rotated", user_id=user_id, session_id=rotated.id)
        return user, rotated, tokens

    def logout(self, user_id: str, access_token: str) -> int:
        """Terminate the live session bound to ``access_token``; idempotent."""
        count = self.store.terminate_session(
            user_id, token_reference(access_token), at=self._now()
        )
        self.logger.info("session_terminated", user_id=user_id, terminated=count)
        return count

    def logout_all(self, user_id: str) -> int:
        count = self.store.terminate_user_sessions(user_id, at=self._now())
        self.logger.info("user_sessions_terminated", user_id=user_id, terminated=count)
        return count

    def authenticate(self, token: Optional[str]) -> Principal:
        """Stateless access-token check; raises ``AuthenticationError``."""
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.access_codec.decode(token, token_type=ACCESS_TOKEN)
        if not claims:
            raise AuthenticationError("invalid or expired access token")
        role = parse_role(claims.get("role"))
        if role is None:
            self.logger.warning("access_token_unknown_role", user_id=claims.get("sub"))
            raise AuthenticationError("invalid or expired access token")
        return Principal(user_id=str(claims["sub"]), email=str(claims.get("email", "")), role=role)

    def issue_mfa_challenge(self, user: User) -> str:
        """Short-lived token proving the password step passed for ``user``."""
        now = self._now()
        return self.access_codec.encode(
            {
                "sub": user.id,
                "token_type": MFA_PENDING_TOKEN,
                "jti": str(uuid.uuid4()),
                "iat": int(now.timestamp()),
                "exp": int((now + self.mfa_challenge_ttl).timestamp()),
            }
        )

    def verify_mfa_challenge(self, token: str) -> Optional[str]:
        claims = self.access_codec.decode(token, token_type=MFA_PENDING_TOKEN)
        return str(claims["sub"]) if claims else None
