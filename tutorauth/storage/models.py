from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OtpPurpose(str, Enum):
    """What a one-time code authorizes."""

    LOGIN = "login"
    SIGNUP = "signup"
    PASSWORD_RESET = "password_reset"


# Minutes a freshly issued code stays valid
OTP_TTL_MINUTES = {
    OtpPurpose.SIGNUP: 5,
    OtpPurpose.LOGIN: 10,
    OtpPurpose.PASSWORD_RESET: 10,
}
OTP_MAX_ATTEMPTS = 5


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    password_hash: Optional[str] = None
    role: str = "user"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    level: Optional[str] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def public_profile(self) -> Dict[str, Any]:
        """Fields safe to return to the owning client."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "level": self.level,
            "role": self.role,
            "email_verified": self.email_verified,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_login": self.last_login.isoformat() if self.last_login else None,
        }


@dataclass
class Session:
    id: str
    user_id: str
    session_token: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls,
        user_id: str,
        session_token: str,
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            session_token=session_token,
            created_at=now,
            expires_at=now + ttl,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utcnow())


@dataclass
class OtpRecord:
    id: str
    recipient: str
    purpose: OtpPurpose
    code_hash: str
    salt: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = OTP_MAX_ATTEMPTS
    used: bool = False
    used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        recipient: str,
        purpose: OtpPurpose,
        code_hash: str,
        salt: str,
        *,
        now: Optional[datetime] = None,
    ) -> "OtpRecord":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            recipient=recipient,
            purpose=purpose,
            code_hash=code_hash,
            salt=salt,
            created_at=now,
            expires_at=now + timedelta(minutes=OTP_TTL_MINUTES[purpose]),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts
