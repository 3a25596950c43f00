from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def token_reference(token: str) -> str:
    """Digest stored in place of a raw token on session rows."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class UserStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    LOCKED = "locked"


# Statuses allowed to hold or renew a session
LOGIN_STATUSES = frozenset({UserStatus.PENDING, UserStatus.ACTIVE})


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    role: str = "client"
    status: UserStatus = UserStatus.PENDING
    name: Optional[str] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    mfa_secret: Optional[str] = None
    mfa_enabled: bool = False
    mfa_enabled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def has_pending_mfa_secret(self) -> bool:
        return bool(self.mfa_secret) and not self.mfa_enabled

    def can_hold_session(self, now: datetime) -> bool:
        """Pending or active, or locked with the lockout already expired."""
        if self.status in LOGIN_STATUSES:
            return True
        if self.status == UserStatus.LOCKED:
            return self.locked_until is None or self.locked_until <= now
        return False


@dataclass
class Session:
    id: str
    user_id: str
    access_token_ref: str
    refresh_token_ref: str
    created_at: datetime
    expires_at: datetime
    terminated_at: Optional[datetime] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.terminated_at is None

    @classmethod
    def new(
        cls,
        user_id: str,
        access_token: str,
        refresh_token: str,
        ttl_minutes: int = 60 * 24,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        *,
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            access_token_ref=token_reference(access_token),
            refresh_token_ref=token_reference(refresh_token),
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )


@dataclass
class Office:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Company:
    id: str
    office_id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OfficeMembership:
    user_id: str
    office_id: str
    office_role: str
    active: bool = True


@dataclass
class CompanyMembership:
    user_id: str
    company_id: str
    active: bool = True
