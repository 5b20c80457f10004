"""One-time verification codes for login, signup and password reset.

Codes are six digits, stored only as ``HMAC-SHA256(key=salt, msg=code)``
with a per-record random salt. At most one unused code exists per
``(recipient, purpose)``: issuing a new code supersedes older ones.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Optional

from tutorauth.logging import get_logger, redact_email
from tutorauth.service.email import EmailService
from tutorauth.service.errors import DependencyError, OtpError, ValidationError
from tutorauth.storage.common import CredentialStore
from tutorauth.storage.models import OtpPurpose, OtpRecord, utcnow

logger = get_logger(__name__)

OTP_DIGITS = 6

_FAILURE_MESSAGES = {
    "not_found": "OTP not found or expired. Please request a new verification code.",
    "expired": "Verification code has expired. Please request a new one.",
    "attempts_exhausted": "Too many failed attempts. Please request a new verification code.",
}


def generate_code() -> str:
    return str(secrets.randbelow(10**OTP_DIGITS)).zfill(OTP_DIGITS)


def hash_code(code: str, salt: str) -> str:
    return hmac.new(salt.encode("utf-8"), code.encode("utf-8"), hashlib.sha256).hexdigest()


def normalize_recipient(recipient: str) -> str:
    return recipient.strip().lower()


@dataclass(frozen=True)
class OtpResult:
    success: bool
    reason: Optional[str] = None
    attempts_remaining: Optional[int] = None
    record_id: Optional[str] = None

    def to_error(self) -> OtpError:
        if self.reason == "incorrect_code":
            remaining = self.attempts_remaining or 0
            return OtpError(
                f"Invalid OTP. {remaining} attempts remaining.",
                "incorrect_code",
                attempts_remaining=remaining,
            )
        reason = self.reason or "not_found"
        return OtpError(_FAILURE_MESSAGES[reason], reason)


class OtpManager:
    def __init__(self, store: CredentialStore, email: EmailService) -> None:
        self.store = store
        self.email = email

    def send(self, recipient: str, purpose: OtpPurpose) -> OtpRecord:
        """Issue a fresh code for the pair and deliver it by email."""

        recipient = normalize_recipient(recipient)
        existing = self.store.get_user_by_email(recipient)
        if purpose == OtpPurpose.SIGNUP and existing:
            raise ValidationError("Account already exists with this email")
        if purpose in (OtpPurpose.LOGIN, OtpPurpose.PASSWORD_RESET) and not existing:
            raise ValidationError("No account found with this email")

        superseded = self.store.delete_unused_otps(recipient, purpose)
        code = generate_code()
        salt = secrets.token_hex(16)
        record = self.store.create_otp(
            OtpRecord.new(recipient, purpose, hash_code(code, salt), salt)
        )
        logger.info(
            "otp_issued",
            recipient=redact_email(recipient),
            purpose=purpose.value,
            superseded=superseded,
            expires_at=record.expires_at.isoformat(),
        )

        if not self.email.send_otp(recipient, code, purpose):
            raise DependencyError(
                "Failed to send verification email", detail={"purpose": purpose.value}
            )
        return record

    def verify(
        self, recipient: str, purpose: OtpPurpose, code: str, *, consume: bool = True
    ) -> OtpResult:
        recipient = normalize_recipient(recipient)
        record = self.store.get_latest_unused_otp(recipient, purpose)
        if record is None:
            return OtpResult(False, "not_found")

        now = utcnow()
        if record.is_expired(now):
            self.store.delete_otp(record.id)
            logger.info("otp_expired", purpose=purpose.value, otp_id=record.id)
            return OtpResult(False, "expired", record_id=record.id)

        if record.exhausted:
            self.store.delete_otp(record.id)
            logger.warning("otp_attempts_exhausted", purpose=purpose.value, otp_id=record.id)
            return OtpResult(False, "attempts_exhausted", 0, record.id)

        if not hmac.compare_digest(hash_code(code.strip(), record.salt), record.code_hash):
            attempts = self.store.increment_otp_attempts(record.id)
            remaining = max(0, record.max_attempts - attempts)
            logger.warning(
                "otp_incorrect_code",
                purpose=purpose.value,
                otp_id=record.id,
                attempts_remaining=remaining,
            )
            return OtpResult(False, "incorrect_code", remaining, record.id)

        if consume:
            self.store.mark_otp_used(record.id, now)
        logger.info("otp_verified", purpose=purpose.value, otp_id=record.id, consumed=consume)
        return OtpResult(True, record_id=record.id)

    def consume(self, record_id: str) -> None:
        self.store.mark_otp_used(record_id, utcnow())

    def verify_or_raise(
        self, recipient: str, purpose: OtpPurpose, code: str, *, consume: bool = True
    ) -> OtpResult:
        result = self.verify(recipient, purpose, code, consume=consume)
        if not result.success:
            raise result.to_error()
        return result
