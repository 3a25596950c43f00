from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from officegate.logging import get_logger
from officegate.storage.common import (
    build_mfa_cipher,
    decrypt_secret,
    encrypt_secret,
    generate_uuid,
    normalize_email,
    normalize_ip_address,
    safe_row_value,
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

_USER_COLUMNS = (
    "id, email, password_hash, role, status, name, failed_login_attempts, locked_until, "
    "last_login_at, mfa_secret, mfa_enabled, mfa_enabled_at, created_at"
)
_SESSION_COLUMNS = (
    "id, user_id, access_token_ref, refresh_token_ref, created_at, expires_at, "
    "terminated_at, ip_addr, user_agent"
)

REQUIRED_TABLES = (
    "app_user",
    "office",
    "company",
    "office_member",
    "company_member",
    "auth_session",
)


class PostgresStore:
    """Postgres-backed credential store.

    Each operation is a single statement on a pooled connection; the
    conditional session rotation relies on the row lock taken by UPDATE so
    that only one of two concurrent refreshes can match the old reference.
    """

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key, self.fs_root)
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Refuse to serve requests against a database missing the auth tables."""
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # row mapping
    def _user_from_row(self, row: Any) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row["role"],
            status=UserStatus(row["status"]),
            name=safe_row_value(row, "name"),
            failed_login_attempts=safe_row_value(row, "failed_login_attempts", 0) or 0,
            locked_until=safe_row_value(row, "locked_until"),
            last_login_at=safe_row_value(row, "last_login_at"),
            mfa_secret=decrypt_secret(self._mfa_cipher, safe_row_value(row, "mfa_secret")),
            mfa_enabled=bool(safe_row_value(row, "mfa_enabled", False)),
            mfa_enabled_at=safe_row_value(row, "mfa_enabled_at"),
            created_at=safe_row_value(row, "created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Any) -> Session:
        raw_ip = safe_row_value(row, "ip_addr")
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            access_token_ref=row["access_token_ref"],
            refresh_token_ref=row["refresh_token_ref"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            terminated_at=safe_row_value(row, "terminated_at"),
            ip_addr=str(raw_ip) if raw_ip is not None else None,
            user_agent=safe_row_value(row, "user_agent"),
        )

    def _update_user(self, user_id: str, sql: str, params: tuple) -> User:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        if not row:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return self._user_from_row(row)

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
        user_id = generate_uuid()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (id, email, password_hash, role, status, name)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        password_hash,
                        role,
                        UserStatus(status).value,
                        name,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_counters(
        self,
        user_id: str,
        *,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
        status: Optional[UserStatus] = None,
        last_login_at: Optional[datetime] = None,
    ) -> User:
        return self._update_user(
            user_id,
            f"""
            UPDATE app_user
            SET failed_login_attempts = %s,
                locked_until = %s,
                status = COALESCE(%s, status),
                last_login_at = COALESCE(%s, last_login_at),
                updated_at = now()
            WHERE id = %s
            RETURNING {_USER_COLUMNS}
            """,
            (
                failed_login_attempts,
                locked_until,
                UserStatus(status).value if status is not None else None,
                last_login_at,
                user_id,
            ),
        )

    def set_user_status(self, user_id: str, status: UserStatus) -> User:
        return self._update_user(
            user_id,
            f"UPDATE app_user SET status = %s, updated_at = now() WHERE id = %s RETURNING {_USER_COLUMNS}",
            (UserStatus(status).value, user_id),
        )

    def set_user_role(self, user_id: str, role: str) -> User:
        return self._update_user(
            user_id,
            f"UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING {_USER_COLUMNS}",
            (role, user_id),
        )

    def set_user_mfa(
        self,
        user_id: str,
        *,
        secret: Optional[str],
        enabled: bool,
        enabled_at: Optional[datetime] = None,
    ) -> User:
        return self._update_user(
            user_id,
            f"""
            UPDATE app_user
            SET mfa_secret = %s, mfa_enabled = %s, mfa_enabled_at = %s, updated_at = now()
            WHERE id = %s
            RETURNING {_USER_COLUMNS}
            """,
            (encrypt_secret(self._mfa_cipher, secret), enabled, enabled_at, user_id),
        )

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO auth_session (
                        id, user_id, access_token_ref, refresh_token_ref,
                        created_at, expires_at, ip_addr, user_agent
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.access_token_ref,
                        session.refresh_token_ref,
                        session.created_at,
                        session.expires_at,
                        normalize_ip_address(session.ip_addr),
                        session.user_agent,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "live session already bound to this access token",
                {"user_id": session.user_id},
            )
        except errors.ForeignKeyViolation:
            raise RecordNotFound("user not found", {"user_id": session.user_id})
        return self._session_from_row(row)

    def find_live_session(
        self,
        user_id: str,
        *,
        refresh_token_ref: Optional[str] = None,
        access_token_ref: Optional[str] = None,
    ) -> Optional[Session]:
        if refresh_token_ref is None and access_token_ref is None:
            raise ValueError("a token reference is required")
        clauses = ["user_id = %s", "terminated_at IS NULL"]
        params: list[Any] = [user_id]
        if refresh_token_ref is not None:
            clauses.append("refresh_token_ref = %s")
            params.append(refresh_token_ref)
        if access_token_ref is not None:
            clauses.append("access_token_ref = %s")
            params.append(access_token_ref)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE {' AND '.join(clauses)} LIMIT 1",
                tuple(params),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session(
        self,
        session_id: str,
        *,
        expected_refresh_ref: str,
        access_token_ref: str,
        refresh_token_ref: str,
        expires_at: datetime,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE auth_session
                SET access_token_ref = %s, refresh_token_ref = %s, expires_at = %s
                WHERE id = %s AND refresh_token_ref = %s AND terminated_at IS NULL
                RETURNING {_SESSION_COLUMNS}
                """,
                (access_token_ref, refresh_token_ref, expires_at, session_id, expected_refresh_ref),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def terminate_session(
        self, user_id: str, access_token_ref: str, *, at: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET terminated_at = %s
                WHERE user_id = %s AND access_token_ref = %s AND terminated_at IS NULL
                """,
                (at or utcnow(), user_id, access_token_ref),
            )
            return cur.rowcount

    def terminate_user_sessions(self, user_id: str, *, at: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET terminated_at = %s WHERE user_id = %s AND terminated_at IS NULL",
                (at or utcnow(), user_id),
            )
            return cur.rowcount

    def list_sessions(self, user_id: str, *, include_terminated: bool = False) -> List[Session]:
        sql = f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE user_id = %s"
        if not include_terminated:
            sql += " AND terminated_at IS NULL"
        sql += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(sql, (user_id,)).fetchall()
        return [self._session_from_row(row) for row in rows]

    # offices / companies / memberships
    def create_office(self, name: str) -> Office:
        office_id = generate_uuid()
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO office (id, name) VALUES (%s, %s) RETURNING id, name, created_at",
                (office_id, name),
            ).fetchone()
        return Office(id=row["id"], name=row["name"], created_at=row["created_at"])

    def create_company(self, office_id: str, name: str) -> Company:
        company_id = generate_uuid()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO company (id, office_id, name) VALUES (%s, %s, %s)
                    RETURNING id, office_id, name, created_at
                    """,
                    (company_id, office_id, name),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("office does not exist", {"office_id": office_id})
        return Company(
            id=row["id"], office_id=row["office_id"], name=row["name"], created_at=row["created_at"]
        )

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, office_id, name, created_at FROM company WHERE id = %s",
                (company_id,),
            ).fetchone()
        if not row:
            return None
        return Company(
            id=row["id"], office_id=row["office_id"], name=row["name"], created_at=row["created_at"]
        )

    def add_office_member(
        self, user_id: str, office_id: str, office_role: str, *, active: bool = True
    ) -> OfficeMembership:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO office_member (user_id, office_id, office_role, active)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET office_id = EXCLUDED.office_id,
                        office_role = EXCLUDED.office_role,
                        active = EXCLUDED.active
                    """,
                    (user_id, office_id, office_role, active),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or office does not exist", {"user_id": user_id, "office_id": office_id}
            )
        return OfficeMembership(
            user_id=user_id, office_id=office_id, office_role=office_role, active=active
        )

    def get_office_membership(self, user_id: str) -> Optional[OfficeMembership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT user_id, office_id, office_role, active FROM office_member WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return OfficeMembership(**row) if row else None

    def link_company_member(
        self, user_id: str, company_id: str, *, active: bool = True
    ) -> CompanyMembership:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO company_member (user_id, company_id, active)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id, company_id) DO UPDATE SET active = EXCLUDED.active
                    """,
                    (user_id, company_id, active),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or company does not exist", {"user_id": user_id, "company_id": company_id}
            )
        return CompanyMembership(user_id=user_id, company_id=company_id, active=active)

    def get_company_membership(self, user_id: str, company_id: str) -> Optional[CompanyMembership]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT user_id, company_id, active FROM company_member
                WHERE user_id = %s AND company_id = %s
                """,
                (user_id, company_id),
            ).fetchone()
        return CompanyMembership(**row) if row else None

    def list_company_ids_for_office(self, office_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM company WHERE office_id = %s ORDER BY id", (office_id,)
            ).fetchall()
        return [row["id"] for row in rows]

    def list_company_ids_for_member(self, user_id: str, *, active_only: bool = True) -> List[str]:
        sql = "SELECT company_id FROM company_member WHERE user_id = %s"
        if active_only:
            sql += " AND active"
        sql += " ORDER BY company_id"
        with self._connect() as conn:
            rows = conn.execute(sql, (user_id,)).fetchall()
        return [row["company_id"] for row in rows]
