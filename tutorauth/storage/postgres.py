from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tutorauth.logging import get_logger
from tutorauth.storage.common import (
    MAX_SESSIONS_PER_USER,
    SESSION_MAX_AGE,
    UNUSED_OTP_RETENTION,
    USED_OTP_RETENTION,
)
from tutorauth.storage.errors import ConstraintViolation, StoreUnavailable
from tutorauth.storage.models import OtpPurpose, OtpRecord, Session, User

_USER_COLUMNS = (
    "id, email, username, password_hash, role, first_name, last_name, level, "
    "email_verified, created_at, last_login"
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    username TEXT,
    password_hash TEXT,
    role TEXT NOT NULL DEFAULT 'user',
    first_name TEXT,
    last_name TEXT,
    level TEXT,
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_login TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS users_username_lower_idx ON users (LOWER(username));

CREATE TABLE IF NOT EXISTS user_sessions (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    session_token TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS user_sessions_user_created_idx
    ON user_sessions (user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS user_sessions_token_idx ON user_sessions (session_token);

CREATE TABLE IF NOT EXISTS otp_verifications (
    id UUID PRIMARY KEY,
    identifier TEXT NOT NULL,
    purpose TEXT NOT NULL,
    otp_hash TEXT NOT NULL,
    otp_salt TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at TIMESTAMPTZ NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 5,
    used BOOLEAN NOT NULL DEFAULT FALSE,
    used_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS otp_identifier_purpose_idx
    ON otp_verifications (identifier, purpose, used, created_at DESC);
"""


class PostgresStore:
    """Postgres-backed store for users, sessions and one-time codes."""

    def __init__(self, dsn: str, *, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            raise StoreUnavailable("postgres", "connection pool timeout") from exc
        except errors.OperationalError as exc:
            raise StoreUnavailable("postgres", str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            password_hash=row.get("password_hash"),
            role=row.get("role") or "user",
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            level=row.get("level"),
            email_verified=bool(row.get("email_verified")),
            created_at=row["created_at"],
            last_login=row.get("last_login"),
        )

    @staticmethod
    def _row_to_otp(row: Dict[str, Any]) -> OtpRecord:
        return OtpRecord(
            id=str(row["id"]),
            recipient=row["identifier"],
            purpose=OtpPurpose(row["purpose"]),
            code_hash=row["otp_hash"],
            salt=row["otp_salt"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            used=row["used"],
            used_at=row.get("used_at"),
        )

    # users
    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        password_hash: Optional[str] = None,
        role: str = "user",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email_verified: bool = False,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (id, email, username, password_hash, role, first_name, last_name, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user_id,
                        email,
                        username,
                        password_hash,
                        role,
                        first_name,
                        last_name,
                        email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE LOWER(username) = LOWER(%s)",
                (username,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_last_login(self, user_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET last_login = %s WHERE id = %s", (when, user_id)
            )

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )
            return cur.rowcount > 0

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET role = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
                (role, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_sessions (id, user_id, session_token, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.session_token,
                        session.created_at,
                        session.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session user missing", {"user_id": session.user_id}
            ) from exc
        return session

    def revoke_session_token(self, session_token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_sessions WHERE session_token = %s", (session_token,)
            )
            return cur.rowcount > 0

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM user_sessions WHERE user_id = %s RETURNING id", (user_id,)
            ).fetchall()
        return len(rows)

    def prune_user_sessions(self, user_id: str, keep: int = MAX_SESSIONS_PER_USER) -> int:
        """Delete all but the ``keep`` newest live sessions in one statement."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                WITH ranked_sessions AS (
                    SELECT id,
                           ROW_NUMBER() OVER (PARTITION BY user_id ORDER BY created_at DESC) AS session_rank
                    FROM user_sessions
                    WHERE user_id = %s AND expires_at >= NOW()
                )
                DELETE FROM user_sessions
                WHERE id IN (SELECT id FROM ranked_sessions WHERE session_rank > %s)
                RETURNING id
                """,
                (user_id, keep),
            ).fetchall()
        return len(rows)

    def purge_sessions(self, now: datetime) -> dict[str, int]:
        with self._connect() as conn:
            expired = conn.execute(
                "DELETE FROM user_sessions WHERE expires_at < %s RETURNING id", (now,)
            ).fetchall()
            aged = conn.execute(
                "DELETE FROM user_sessions WHERE created_at < %s RETURNING id",
                (now - SESSION_MAX_AGE,),
            ).fetchall()
            excess = conn.execute(
                """
                WITH ranked_sessions AS (
                    SELECT id,
                           ROW_NUMBER() OVER (PARTITION BY user_id ORDER BY created_at DESC) AS session_rank
                    FROM user_sessions
                    WHERE expires_at >= %s
                )
                DELETE FROM user_sessions
                WHERE id IN (SELECT id FROM ranked_sessions WHERE session_rank > %s)
                RETURNING id
                """,
                (now, MAX_SESSIONS_PER_USER),
            ).fetchall()
            stale_otps = conn.execute(
                """
                DELETE FROM otp_verifications
                WHERE (used = TRUE AND expires_at < %s)
                   OR (used = FALSE AND expires_at < %s)
                RETURNING id
                """,
                (now - USED_OTP_RETENTION, now - UNUSED_OTP_RETENTION),
            ).fetchall()
        return {
            "expired_sessions": len(expired),
            "old_sessions": len(aged),
            "excess_sessions": len(excess),
            "stale_otps": len(stale_otps),
        }

    # one-time codes
    def create_otp(self, record: OtpRecord) -> OtpRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO otp_verifications
                    (id, identifier, purpose, otp_hash, otp_salt, created_at, expires_at, attempts, max_attempts, used)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.recipient,
                    record.purpose.value,
                    record.code_hash,
                    record.salt,
                    record.created_at,
                    record.expires_at,
                    record.attempts,
                    record.max_attempts,
                    record.used,
                ),
            )
        return record

    def get_latest_unused_otp(
        self, recipient: str, purpose: OtpPurpose
    ) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_verifications
                WHERE identifier = %s AND purpose = %s AND used = FALSE
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (recipient, purpose.value),
            ).fetchone()
        return self._row_to_otp(row) if row else None

    def delete_unused_otps(self, recipient: str, purpose: OtpPurpose) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                DELETE FROM otp_verifications
                WHERE identifier = %s AND purpose = %s AND used = FALSE
                RETURNING id
                """,
                (recipient, purpose.value),
            ).fetchall()
        return len(rows)

    def increment_otp_attempts(self, otp_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE otp_verifications SET attempts = attempts + 1 WHERE id = %s RETURNING attempts",
                (otp_id,),
            ).fetchone()
        return int(row["attempts"]) if row else 0

    def mark_otp_used(self, otp_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE otp_verifications SET used = TRUE, used_at = %s WHERE id = %s",
                (when, otp_id),
            )

    def delete_otp(self, otp_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM otp_verifications WHERE id = %s", (otp_id,))
