from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from officegate.logging import get_logger
from officegate.service.errors import AccountLockedError, InvalidCredentialsError
from officegate.storage.models import User, UserStatus

logger = get_logger(__name__)


class LockoutStore(Protocol):
    def update_user_counters(
        self,
        user_id: str,
        *,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
        status: Optional[UserStatus] = None,
        last_login_at: Optional[datetime] = None,
    ) -> User: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PasswordEngine:
    """Argon2id password verification with a consecutive-failure lockout.

    Counter updates are plain read-modify-write calls against the store.
    Concurrent attempts on one account may miscount by a small margin.
    """

    def __init__(
        self,
        store: LockoutStore,
        *,
        max_attempts: int = 5,
        lockout: timedelta = timedelta(minutes=30),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout = lockout
        self._clock = clock or _utcnow
        self._hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def hash_password(self, password: str) -> str:
        return self._hasher.hash(password)

    def lockout_remaining_minutes(self, user: User) -> int:
        """Whole minutes left on an active lockout, 0 when none is active."""
        if not user.locked_until:
            return 0
        remaining = (user.locked_until - self._now()).total_seconds()
        if remaining <= 0:
            return 0
        return max(1, math.ceil(remaining / 60))

    def _matches(self, user: User, password: str) -> bool:
        try:
            return self._hasher.verify(user.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable", user_id=user.id)
            return False

    def verify(self, user: User, password: str) -> User:
        """Check ``password`` for ``user`` and update the lockout counters.

        Returns the updated user on success. Raises ``AccountLockedError``
        while a lockout is active without touching the counter, and
        ``InvalidCredentialsError`` for inactive accounts or a wrong password.
        """
        remaining = self.lockout_remaining_minutes(user)
        if remaining:
            self.logger.warning(
                "login_rejected_locked", user_id=user.id, retry_after_minutes=remaining
            )
            raise AccountLockedError(remaining)

        if user.status == UserStatus.INACTIVE:
            self.logger.warning("login_rejected_inactive", user_id=user.id)
            raise InvalidCredentialsError()

        if not self._matches(user, password):
            self._record_failure(user)
            raise InvalidCredentialsError()

        return self._record_success(user)

    def _record_failure(self, user: User) -> User:
        attempts = user.failed_login_attempts + 1
        if attempts >= self.max_attempts:
            locked_until = self._now() + self.lockout
            self.logger.warning(
                "account_locked",
                user_id=user.id,
                failed_login_attempts=attempts,
                locked_until=locked_until.isoformat(),
            )
            return self.store.update_user_counters(
                user.id,
                failed_login_attempts=attempts,
                locked_until=locked_until,
                status=UserStatus.LOCKED,
            )
        self.logger.info("login_failed", user_id=user.id, failed_login_attempts=attempts)
        return self.store.update_user_counters(
            user.id,
            failed_login_attempts=attempts,
            locked_until=user.locked_until,
        )

    def _record_success(self, user: User) -> User:
        # An expired lock is lifted by the first correct password
        status = UserStatus.ACTIVE if user.status == UserStatus.LOCKED else None
        updated = self.store.update_user_counters(
            user.id,
            failed_login_attempts=0,
            locked_until=None,
            status=status,
            last_login_at=self._now(),
        )
        self.logger.info("password_verified", user_id=user.id)
        return updated
