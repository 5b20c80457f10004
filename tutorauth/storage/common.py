"""Contracts and helpers shared between the memory and postgres stores.

Both backends implement :class:`CredentialStore`; the service layer only
depends on this protocol so tests can run entirely in memory.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Protocol

from tutorauth.storage.models import OtpPurpose, OtpRecord, Session, User

# Live sessions kept per user by the rotation sweep
MAX_SESSIONS_PER_USER = 3
# Sessions older than this are purged even if their token has not expired
SESSION_MAX_AGE = timedelta(days=7)
# Used codes are kept briefly for audit, unused ones a little longer
USED_OTP_RETENTION = timedelta(hours=24)
UNUSED_OTP_RETENTION = timedelta(days=7)


class CredentialStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def update_last_login(self, user_id: str, when: datetime) -> None: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> bool: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def create_session(self, session: Session) -> Session: ...

    def revoke_session_token(self, session_token: str) -> bool: ...

    def revoke_user_sessions(self, user_id: str) -> int: ...

    def prune_user_sessions(
        self, user_id: str, keep: int = MAX_SESSIONS_PER_USER
    ) -> int: ...

    def purge_sessions(self, now: datetime) -> dict[str, int]: ...

    def create_otp(self, record: OtpRecord) -> OtpRecord: ...

    def get_latest_unused_otp(
        self, recipient: str, purpose: OtpPurpose
    ) -> Optional[OtpRecord]: ...

    def delete_unused_otps(self, recipient: str, purpose: OtpPurpose) -> int: ...

    def increment_otp_attempts(self, otp_id: str) -> int: ...

    def mark_otp_used(self, otp_id: str, when: datetime) -> None: ...

    def delete_otp(self, otp_id: str) -> None: ...


def sessions_beyond_cap(
    sessions: Iterable[Session], keep: int, now: datetime
) -> List[Session]:
    """Return live sessions ranked past ``keep`` by newest creation time.

    Expired sessions are neither kept nor counted; they age out on their own.
    """
    live = [s for s in sessions if s.expires_at >= now]
    live.sort(key=lambda s: s.created_at, reverse=True)
    return live[keep:]


def otp_is_stale(record: OtpRecord, now: datetime) -> bool:
    if record.used:
        return record.expires_at < now - USED_OTP_RETENTION
    return record.expires_at < now - UNUSED_OTP_RETENTION
