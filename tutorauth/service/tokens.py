from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta
from typing import Any, Optional

from fastapi import Response

from tutorauth.config import Settings
from tutorauth.logging import get_logger
from tutorauth.service.errors import ConfigurationError
from tutorauth.storage.common import MAX_SESSIONS_PER_USER, CredentialStore
from tutorauth.storage.models import Session, User, utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_TTL = timedelta(hours=24)
SESSION_TOKEN_TTL = timedelta(days=7)
ADMIN_TOKEN_TTL = timedelta(hours=8)

ACCESS_COOKIE = "access_token"
SESSION_COOKIE = "session_token"
ADMIN_COOKIE = "admin_token"

_COOKIE_MAX_AGE = {
    ACCESS_COOKIE: int(ACCESS_TOKEN_TTL.total_seconds()),
    SESSION_COOKIE: int(SESSION_TOKEN_TTL.total_seconds()),
    ADMIN_COOKIE: int(ADMIN_TOKEN_TTL.total_seconds()),
}


class TokenIssuer:
    """Signs HS256 tokens and owns the session rows that back them."""

    def __init__(self, settings: Settings, store: Optional[CredentialStore] = None) -> None:
        self.settings = settings
        self.store = store

    def _secret(self) -> bytes:
        if not self.settings.jwt_secret:
            raise ConfigurationError("JWT_SECRET is not configured")
        return self.settings.jwt_secret.encode()

    def _require_store(self) -> CredentialStore:
        if self.store is None:
            raise ConfigurationError("credential store is not configured")
        return self.store

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], ttl: timedelta) -> str:
        now = int(time.time())
        claims = {
            **payload,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access_token(self, user_id: str, email: str, role: str) -> str:
        return self._encode_jwt(
            {"userId": user_id, "email": email, "role": role, "type": "access"},
            ACCESS_TOKEN_TTL,
        )

    def issue_session_token(self, user_id: str) -> str:
        return self._encode_jwt({"userId": user_id, "type": "session"}, SESSION_TOKEN_TTL)

    def issue_admin_token(self, email: str) -> str:
        return self._encode_jwt(
            {"email": email, "role": "admin", "type": "admin"}, ADMIN_TOKEN_TTL
        )

    def decode(self, token: Optional[str], expected_type: str) -> Optional[dict[str, Any]]:
        """Return verified claims, or ``None`` for any invalid or foreign token.

        A missing signing secret is a configuration fault, not an invalid
        token, so it raises instead of returning ``None``.
        """

        if not token:
            return None
        # Fail loudly on a missing secret before touching the token
        self._secret()
        # Well-formed tokens are base64url; anything else cannot be signed or compared
        if not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        if payload.get("type") != expected_type:
            logger.info(
                "jwt_type_mismatch", expected=expected_type, actual=payload.get("type")
            )
            return None
        return payload

    def issue_login_tokens(self, user: User) -> dict[str, str]:
        """Access and session tokens for a login, plus the admin token for admins."""
        tokens = {
            ACCESS_COOKIE: self.issue_access_token(user.id, user.email, user.role),
            SESSION_COOKIE: self.issue_session_token(user.id),
        }
        if user.is_admin:
            tokens[ADMIN_COOKIE] = self.issue_admin_token(user.email)
        return tokens

    def create_session(self, user: User, session_token: Optional[str] = None) -> Session:
        """Persist a session row whose expiry matches the session token."""
        token = session_token or self.issue_session_token(user.id)
        session = Session.new(user.id, token, SESSION_TOKEN_TTL)
        return self._require_store().create_session(session)

    def rotate_sessions(self, user_id: str, keep: int = MAX_SESSIONS_PER_USER) -> int:
        removed = self._require_store().prune_user_sessions(user_id, keep)
        logger.info("sessions_rotated", user_id=user_id, removed=removed, kept=keep)
        return removed

    def revoke_session_token(self, session_token: str) -> bool:
        revoked = self._require_store().revoke_session_token(session_token)
        logger.info("session_revoked", revoked=revoked)
        return revoked

    def revoke_user_sessions(self, user_id: str) -> int:
        revoked = self._require_store().revoke_user_sessions(user_id)
        logger.info("user_sessions_revoked", user_id=user_id, revoked=revoked)
        return revoked

    def purge_sessions(self) -> dict[str, int]:
        counts = self._require_store().purge_sessions(utcnow())
        logger.info("sessions_purged", **counts)
        return counts

    # cookies
    def cookie_options(self) -> dict[str, Any]:
        production = self.settings.is_production
        options: dict[str, Any] = {
            "httponly": True,
            "secure": production,
            "samesite": "strict" if production else "lax",
            "path": "/",
        }
        if self.settings.cookie_domain and not self.settings.is_local:
            options["domain"] = self.settings.cookie_domain
        return options

    def set_auth_cookies(self, response: Response, tokens: dict[str, str]) -> None:
        options = self.cookie_options()
        for name, value in tokens.items():
            response.set_cookie(name, value, max_age=_COOKIE_MAX_AGE[name], **options)

    def clear_auth_cookies(self, response: Response) -> None:
        options = self.cookie_options()
        for name in (ACCESS_COOKIE, SESSION_COOKIE, ADMIN_COOKIE):
            response.set_cookie(name, "", max_age=0, **options)
