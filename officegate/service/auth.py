from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Protocol, Union

from officegate.config import Settings
from officegate.logging import get_logger
from officegate.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    MfaRequiredError,
    NotFoundError,
)
from officegate.service.passwords import PasswordEngine
from officegate.service.roles import Role, authorize as role_authorize
from officegate.service.tokens import Principal, TokenIssuer, TokenPair, extract_bearer
from officegate.service.totp import MfaEnrollment, MfaStatus, TotpEngine
from officegate.storage.errors import ConstraintViolation
from officegate.storage.models import Session, User, UserStatus

logger = get_logger(__name__)


class AuthStore(Protocol):
    """The slice of the credential store the auth flows need."""

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "client",
        status: UserStatus = UserStatus.PENDING,
        name: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_user_status(self, user_id: str, status: UserStatus) -> User: ...


@dataclass
class AuthResult:
    user: User
    session: Session
    tokens: TokenPair


class AuthService:
    """Login, registration and session flows built from the auth engines.

    A login runs the password engine, then the TOTP engine when the user has
    a second factor, and only then asks the token issuer for a session.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        passwords: Optional[PasswordEngine] = None,
        totp: Optional[TotpEngine] = None,
        tokens: Optional[TokenIssuer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.passwords = passwords or PasswordEngine(
            store,
            max_attempts=settings.max_login_attempts,
            lockout=timedelta(minutes=settings.lockout_minutes),
            clock=self._clock,
        )
        self.totp = totp or TotpEngine(
            store,
            issuer=settings.mfa_issuer,
            window=settings.totp_window_steps,
            time_source=lambda: self._clock().timestamp(),
        )
        self.tokens = tokens or TokenIssuer(
            store,
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            session_ttl=timedelta(minutes=settings.session_ttl_minutes),
            mfa_challenge_ttl=timedelta(minutes=settings.mfa_challenge_ttl_minutes),
            leeway=timedelta(seconds=settings.clock_skew_leeway_seconds),
            clock=self._clock,
        )
        self.logger = logger

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    async def register(
        self,
        email: str,
        password: str,
        name: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Create a pending client account and sign it in."""
        if self.store.get_user_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        try:
            user = self.store.create_user(
                email,
                self.passwords.hash_password(password),
                role=Role.CLIENT.value,
                status=UserStatus.PENDING,
                name=name,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        session, tokens = self.tokens.issue(user, ip_addr=ip_addr, user_agent=user_agent)
        return AuthResult(user=user, session=session, tokens=tokens)

    async def login(
        self,
        email: str,
        password: str,
        mfa_code: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Verify credentials and open a session.

        Raises ``MfaRequiredError`` carrying a challenge token when the user
        has a second factor and no ``mfa_code`` was supplied; finish with
        ``complete_mfa_login``.
        """
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("login_unknown_email")
            raise InvalidCredentialsError()
        user = self.passwords.verify(user, password)
        if user.mfa_enabled:
            if not mfa_code:
                challenge = self.tokens.issue_mfa_challenge(user)
                self.logger.info("login_mfa_pending", user_id=user.id)
                raise MfaRequiredError(
                    "two-factor verification required",
                    detail={
                        "mfa_token": challenge,
                        "expires_in": int(self.tokens.mfa_challenge_ttl.total_seconds()),
                    },
                )
            self.totp.verify_login(user, mfa_code)
        session, tokens = self.tokens.issue(user, ip_addr=ip_addr, user_agent=user_agent)
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return AuthResult(user=user, session=session, tokens=tokens)

    async def complete_mfa_login(
        self,
        mfa_token: str,
        code: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user_id = self.tokens.verify_mfa_challenge(mfa_token)
        user = self.store.get_user(user_id) if user_id else None
        if not user or not user.can_hold_session(self._clock()):
            raise MfaRequiredError("two-factor challenge expired; sign in again")
        self.totp.verify_login(user, code)
        session, tokens = self.tokens.issue(user, ip_addr=ip_addr, user_agent=user_agent)
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id, mfa=True)
        return AuthResult(user=user, session=session, tokens=tokens)

    async def refresh(self, refresh_token: str) -> AuthResult:
        user, session, tokens = self.tokens.refresh(refresh_token)
        return AuthResult(user=user, session=session, tokens=tokens)

    async def logout(self, principal: Principal, access_token: str) -> int:
        return self.tokens.logout(principal.user_id, access_token)

    async def logout_all(self, principal: Principal) -> int:
        return self.tokens.logout_all(principal.user_id)

    def authenticate(self, authorization: Optional[str]) -> Principal:
        """Resolve an ``Authorization`` header value to a principal."""
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        return self.tokens.authenticate(token)

    @staticmethod
    def authorize(principal: Principal, required_roles: Iterable[Union[str, Role]]) -> bool:
        return role_authorize(principal.role, required_roles)

    def profile(self, principal: Principal) -> User:
        return self._require_user(principal.user_id)

    async def deactivate_user(self, user_id: str) -> User:
        """Mark the account inactive and end all of its sessions."""
        self._require_user(user_id)
        user = self.store.set_user_status(user_id, UserStatus.INACTIVE)
        terminated = self.tokens.logout_all(user_id)
        self.logger.info("user_deactivated", user_id=user_id, terminated=terminated)
        return user

    # second factor
    async def begin_mfa_enrollment(self, principal: Principal) -> MfaEnrollment:
        return self.totp.begin_enrollment(self._require_user(principal.user_id))

    async def cancel_mfa_enrollment(self, principal: Principal) -> MfaStatus:
        user = self.totp.cancel_enrollment(self._require_user(principal.user_id))
        return self.totp.status(user)

    async def confirm_mfa_enrollment(self, principal: Principal, code: str) -> MfaStatus:
        user = self.totp.confirm_enrollment(self._require_user(principal.user_id), code)
        return self.totp.status(user)

    async def disable_mfa(self, principal: Principal, code: str) -> MfaStatus:
        user = self.totp.disable(self._require_user(principal.user_id), code)
        return self.totp.status(user)

    def mfa_status(self, principal: Principal) -> MfaStatus:
        return self.totp.status(self._require_user(principal.user_id))
