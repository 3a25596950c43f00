from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from officegate.logging import get_logger
from officegate.storage.common import (
    build_mfa_cipher,
    decrypt_secret,
    encrypt_secret,
    generate_uuid,
    normalize_email,
    normalize_ip_address,
)
from officegate.storage.errors import ConstraintViolation, RecordNotFound
from officegate.storage.models import (
    Company,
    CompanyMembership,
    Office,
    OfficeMembership,
    Session,
    User,
    UserStatus,
    utcnow,
)


class MemoryStore:
    """In-process credential store with a JSON snapshot under ``fs_root``.

    Every read returns a copy so callers never mutate stored rows outside the
    lock; TOTP secrets are kept Fernet-encrypted and decrypted on the way out.
    """

    def __init__(
        self, fs_root: str = "/tmp/officegate", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.offices: Dict[str, Office] = {}
        self.companies: Dict[str, Company] = {}
        # user_id -> membership; a user staffs at most one office
        self.office_members: Dict[str, OfficeMembership] = {}
        self.company_members: Dict[Tuple[str, str], CompanyMembership] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key, self.fs_root)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        self._state_path()

    def _public_user(self, user: User) -> User:
        return replace(user, mfa_secret=decrypt_secret(self._mfa_cipher, user.mfa_secret))

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return user

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "client",
        status: UserStatus = UserStatus.PENDING,
        name: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                email=normalized,
                password_hash=password_hash,
                role=role,
                status=UserStatus(status),
                name=name,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._public_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._public_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return self._public_user(user) if user else None

    def update_user_counters(
        self,
        user_id: str,
        *,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
        status: Optional[UserStatus] = None,
        last_login_at: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            user.failed_login_attempts = failed_login_attempts
            user.locked_until = locked_until
            if status is not None:
                user.status = UserStatus(status)
            if last_login_at is not None:
                user.last_login_at = last_login_at
            self._persist_state()
            return self._public_user(user)

    def set_user_status(self, user_id: str, status: UserStatus) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            user.status = UserStatus(status)
            self._persist_state()
            return self._public_user(user)

    def set_user_role(self, user_id: str, role: str) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            user.role = role
            self._persist_state()
            return self._public_user(user)

    def set_user_mfa(
        self,
        user_id: str,
        *,
        secret: Optional[str],
        enabled: bool,
        enabled_at: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            user.mfa_secret = encrypt_secret(self._mfa_cipher, secret)
            user.mfa_enabled = enabled
            user.mfa_enabled_at = enabled_at
            self._persist_state()
            return self._public_user(user)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            self._require_user(session.user_id)
            for existing in self.sessions.values():
                if (
                    existing.is_live
                    and existing.user_id == session.user_id
                    and existing.access_token_ref == session.access_token_ref
                ):
                    raise ConstraintViolation(
                        "live session already bound to this access token",
                        {"user_id": session.user_id},
                    )
            stored = replace(session, ip_addr=normalize_ip_address(session.ip_addr))
            self.sessions[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def find_live_session(
        self,
        user_id: str,
        *,
        refresh_token_ref: Optional[str] = None,
        access_token_ref: Optional[str] = None,
    ) -> Optional[Session]:
        if refresh_token_ref is None and access_token_ref is None:
            raise ValueError("a token reference is required")
        with self._data_lock:
            for session in self.sessions.values():
                if session.user_id != user_id or not session.is_live:
                    continue
                if refresh_token_ref is not None and session.refresh_token_ref != refresh_token_ref:
                    continue
                if access_token_ref is not None and session.access_token_ref != access_token_ref:
                    continue
                return replace(session)
            return None

    def rotate_session(
        self,
        session_id: str,
        *,
        expected_refresh_ref: str,
        access_token_ref: str,
        refresh_token_ref: str,
        expires_at: datetime,
    ) -> Optional[Session]:
        """Swap token references only if the presented refresh reference still matches."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if (
                not session
                or not session.is_live
                or session.refresh_token_ref != expected_refresh_ref
            ):
                return None
            session.access_token_ref = access_token_ref
            session.refresh_token_ref = refresh_token_ref
            session.expires_at = expires_at
            self._persist_state()
            return replace(session)

    def terminate_session(
        self, user_id: str, access_token_ref: str, *, at: Optional[datetime] = None
    ) -> int:
        ended = at or utcnow()
        with self._data_lock:
            count = 0
            for session in self.sessions.values():
                if (
                    session.user_id == user_id
                    and session.is_live
                    and session.access_token_ref == access_token_ref
                ):
                    session.terminated_at = ended
                    count += 1
            if count:
                self._persist_state()
            return count

    def terminate_user_sessions(self, user_id: str, *, at: Optional[datetime] = None) -> int:
        ended = at or utcnow()
        with self._data_lock:
            count = 0
            for session in self.sessions.values():
                if session.user_id == user_id and session.is_live:
                    session.terminated_at = ended
                    count += 1
            if count:
                self._persist_state()
            return count

    def list_sessions(self, user_id: str, *, include_terminated: bool = False) -> List[Session]:
        with self._data_lock:
            results = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (include_terminated or s.is_live)
            ]
            return sorted(results, key=lambda s: s.created_at)

    # offices / companies / memberships
    def create_office(self, name: str) -> Office:
        with self._data_lock:
            office = Office(id=generate_uuid(), name=name)
            self.offices[office.id] = office
            self._persist_state()
            return replace(office)

    def create_company(self, office_id: str, name: str) -> Company:
        with self._data_lock:
            if office_id not in self.offices:
                raise ConstraintViolation("office does not exist", {"office_id": office_id})
            company = Company(id=generate_uuid(), office_id=office_id, name=name)
            self.companies[company.id] = company
            self._persist_state()
            return replace(company)

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._data_lock:
            company = self.companies.get(company_id)
            return replace(company) if company else None

    def add_office_member(
        self, user_id: str, office_id: str, office_role: str, *, active: bool = True
    ) -> OfficeMembership:
        with self._data_lock:
            self._require_user(user_id)
            if office_id not in self.offices:
                raise ConstraintViolation("office does not exist", {"office_id": office_id})
            membership = OfficeMembership(
                user_id=user_id, office_id=office_id, office_role=office_role, active=active
            )
            self.office_members[user_id] = membership
            self._persist_state()
            return replace(membership)

    def get_office_membership(self, user_id: str) -> Optional[OfficeMembership]:
        with self._data_lock:
            membership = self.office_members.get(user_id)
            return replace(membership) if membership else None

    def link_company_member(
        self, user_id: str, company_id: str, *, active: bool = True
    ) -> CompanyMembership:
        with self._data_lock:
            self._require_user(user_id)
            if company_id not in self.companies:
                raise ConstraintViolation("company does not exist", {"company_id": company_id})
            membership = CompanyMembership(user_id=user_id, company_id=company_id, active=active)
            self.company_members[(user_id, company_id)] = membership
            self._persist_state()
            return replace(membership)

    def get_company_membership(self, user_id: str, company_id: str) -> Optional[CompanyMembership]:
        with self._data_lock:
            membership = self.company_members.get((user_id, company_id))
            return replace(membership) if membership else None

    def list_company_ids_for_office(self, office_id: str) -> List[str]:
        with self._data_lock:
            return sorted(c.id for c in self.companies.values() if c.office_id == office_id)

    def list_company_ids_for_member(self, user_id: str, *, active_only: bool = True) -> List[str]:
        with self._data_lock:
            return sorted(
                m.company_id
                for (member_id, _), m in self.company_members.items()
                if member_id == user_id and (m.active or not active_only)
            )

    # persistence
    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "role": user.role,
            "status": user.status.value,
            "name": user.name,
            "failed_login_attempts": user.failed_login_attempts,
            "locked_until": self._dt(user.locked_until),
            "last_login_at": self._dt(user.last_login_at),
            # already encrypted in memory
            "mfa_secret": user.mfa_secret,
            "mfa_enabled": user.mfa_enabled,
            "mfa_enabled_at": self._dt(user.mfa_enabled_at),
            "created_at": self._dt(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            role=data.get("role", "client"),
            status=UserStatus(data.get("status", UserStatus.PENDING.value)),
            name=data.get("name"),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            locked_until=self._parse_dt(data.get("locked_until")),
            last_login_at=self._parse_dt(data.get("last_login_at")),
            mfa_secret=data.get("mfa_secret"),
            mfa_enabled=bool(data.get("mfa_enabled", False)),
            mfa_enabled_at=self._parse_dt(data.get("mfa_enabled_at")),
            created_at=self._parse_dt(data.get("created_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "access_token_ref": session.access_token_ref,
            "refresh_token_ref": session.refresh_token_ref,
            "created_at": self._dt(session.created_at),
            "expires_at": self._dt(session.expires_at),
            "terminated_at": self._dt(session.terminated_at),
            "ip_addr": session.ip_addr,
            "user_agent": session.user_agent,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            access_token_ref=data["access_token_ref"],
            refresh_token_ref=data["refresh_token_ref"],
            created_at=self._parse_dt(data["created_at"]),
            expires_at=self._parse_dt(data["expires_at"]),
            terminated_at=self._parse_dt(data.get("terminated_at")),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
        )

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "offices": [
                {"id": o.id, "name": o.name, "created_at": self._dt(o.created_at)}
                for o in self.offices.values()
            ],
            "companies": [
                {
                    "id": c.id,
                    "office_id": c.office_id,
                    "name": c.name,
                    "created_at": self._dt(c.created_at),
                }
                for c in self.companies.values()
            ],
            "office_members": [
                {
                    "user_id": m.user_id,
                    "office_id": m.office_id,
                    "office_role": m.office_role,
                    "active": m.active,
                }
                for m in self.office_members.values()
            ],
            "company_members": [
                {"user_id": m.user_id, "company_id": m.company_id, "active": m.active}
                for m in self.company_members.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.offices = {
            o["id"]: Office(
                id=o["id"], name=o["name"], created_at=self._parse_dt(o.get("created_at")) or utcnow()
            )
            for o in data.get("offices", [])
        }
        self.companies = {
            c["id"]: Company(
                id=c["id"],
                office_id=c["office_id"],
                name=c["name"],
                created_at=self._parse_dt(c.get("created_at")) or utcnow(),
            )
            for c in data.get("companies", [])
        }
        self.office_members = {
            m["user_id"]: OfficeMembership(**m) for m in data.get("office_members", [])
        }
        self.company_members = {
            (m["user_id"], m["company_id"]): CompanyMembership(**m)
            for m in data.get("company_members", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            companies=len(self.companies),
        )
        return True
