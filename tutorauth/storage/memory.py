from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from tutorauth.logging import get_logger
from tutorauth.storage.common import (
    MAX_SESSIONS_PER_USER,
    SESSION_MAX_AGE,
    otp_is_stale,
    sessions_beyond_cap,
)
from tutorauth.storage.errors import ConstraintViolation
from tutorauth.storage.models import OtpPurpose, OtpRecord, Session, User, utcnow


class MemoryStore:
    """In-memory credential store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.otps: Dict[str, OtpRecord] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()

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
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username and self._find_username(username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                password_hash=password_hash,
                role=role,
                first_name=first_name,
                last_name=last_name,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            return replace(user)

    def _find_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        return next(
            (u for u in self.users.values() if u.username and u.username.lower() == lowered),
            None,
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_username(username)
            return replace(user) if user else None

    def update_last_login(self, user_id: str, when: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login = when

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            return True

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return replace(user)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = replace(session)
            return session

    def revoke_session_token(self, session_token: str) -> bool:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.session_token == session_token]
            for sid in stale:
                self.sessions.pop(sid, None)
            return bool(stale)

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            owned = [sid for sid, s in self.sessions.items() if s.user_id == user_id]
            for sid in owned:
                self.sessions.pop(sid, None)
            return len(owned)

    def prune_user_sessions(self, user_id: str, keep: int = MAX_SESSIONS_PER_USER) -> int:
        now = utcnow()
        with self._data_lock:
            owned = [s for s in self.sessions.values() if s.user_id == user_id]
            excess = sessions_beyond_cap(owned, keep, now)
            for sess in excess:
                self.sessions.pop(sess.id, None)
            return len(excess)

    def purge_sessions(self, now: datetime) -> dict[str, int]:
        with self._data_lock:
            expired = [sid for sid, s in self.sessions.items() if s.expires_at < now]
            for sid in expired:
                self.sessions.pop(sid, None)
            aged = [
                sid
                for sid, s in self.sessions.items()
                if s.created_at < now - SESSION_MAX_AGE
            ]
            for sid in aged:
                self.sessions.pop(sid, None)
            excess = 0
            for user_id in {s.user_id for s in self.sessions.values()}:
                owned = [s for s in self.sessions.values() if s.user_id == user_id]
                for sess in sessions_beyond_cap(owned, MAX_SESSIONS_PER_USER, now):
                    self.sessions.pop(sess.id, None)
                    excess += 1
            stale_otps = [oid for oid, r in self.otps.items() if otp_is_stale(r, now)]
            for oid in stale_otps:
                self.otps.pop(oid, None)
        return {
            "expired_sessions": len(expired),
            "old_sessions": len(aged),
            "excess_sessions": excess,
            "stale_otps": len(stale_otps),
        }

    # one-time codes
    def create_otp(self, record: OtpRecord) -> OtpRecord:
        with self._data_lock:
            self.otps[record.id] = replace(record)
            return record

    def get_latest_unused_otp(self, recipient: str, purpose: OtpPurpose) -> Optional[OtpRecord]:
        with self._data_lock:
            candidates = [
                r
                for r in self.otps.values()
                if r.recipient == recipient and r.purpose == purpose and not r.used
            ]
            if not candidates:
                return None
            newest = max(candidates, key=lambda r: r.created_at)
            return replace(newest)

    def delete_unused_otps(self, recipient: str, purpose: OtpPurpose) -> int:
        with self._data_lock:
            stale = [
                oid
                for oid, r in self.otps.items()
                if r.recipient == recipient and r.purpose == purpose and not r.used
            ]
            for oid in stale:
                self.otps.pop(oid, None)
            return len(stale)

    def increment_otp_attempts(self, otp_id: str) -> int:
        with self._data_lock:
            record = self.otps.get(otp_id)
            if not record:
                return 0
            record.attempts += 1
            return record.attempts

    def mark_otp_used(self, otp_id: str, when: datetime) -> None:
        with self._data_lock:
            record = self.otps.get(otp_id)
            if record:
                record.used = True
                record.used_at = when

    def delete_otp(self, otp_id: str) -> None:
        with self._data_lock:
            self.otps.pop(otp_id, None)

    # Inspection helpers for tests; not part of CredentialStore
    def get_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.session_token == session_token),
                None,
            )
            return replace(sess) if sess else None

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            owned = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        owned.sort(key=lambda s: s.created_at, reverse=True)
        return owned

    def count_unused_otps(self, recipient: str, purpose: OtpPurpose) -> int:
        with self._data_lock:
            return sum(
                1
                for r in self.otps.values()
                if r.recipient == recipient and r.purpose == purpose and not r.used
            )
