from __future__ import annotations

import functools
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request, Response

from tutorauth.api.error_handling import service_error_response
from tutorauth.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    ResetPasswordRequest,
    RevokeSessionsRequest,
    SendOtpRequest,
    VerifyOtpRequest,
)
from tutorauth.logging import get_logger
from tutorauth.service.background import BackgroundScheduler, run_blocking
from tutorauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from tutorauth.service.login import lockout_message, rate_limited
from tutorauth.service.otp import OtpResult
from tutorauth.service.rate_limit import SEND_OTP, resolve_client_identity
from tutorauth.service.runtime import Runtime, get_runtime
from tutorauth.service.tokens import ACCESS_COOKIE, ADMIN_COOKIE, SESSION_COOKIE
from tutorauth.storage.models import OtpPurpose, User

logger = get_logger(__name__)

router = APIRouter(prefix="/auth")


def _client_identity(request: Request) -> Optional[str]:
    return resolve_client_identity(
        request.headers, request.client.host if request.client else None
    )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> User:
    runtime = get_runtime()
    token = request.cookies.get(ACCESS_COOKIE) or _bearer_token(authorization)
    if not token:
        raise AuthenticationError("No access token provided")
    claims = runtime.tokens.decode(token, "access")
    if not claims or not claims.get("userId"):
        raise AuthenticationError("Invalid or expired token")
    user = await run_blocking(
        runtime.require_store().get_user,
        claims["userId"],
        timeout=runtime.settings.request_timeout_seconds,
    )
    if not user:
        raise AuthenticationError("Invalid or expired token")
    return user


async def get_admin_claims(
    request: Request, authorization: Optional[str] = Header(None)
) -> dict[str, Any]:
    """Admin tokens come from the admin cookie or a bearer header."""
    runtime = get_runtime()
    token = request.cookies.get(ADMIN_COOKIE) or _bearer_token(authorization)
    if not token:
        raise AuthenticationError("Unauthorized - Admin access required")
    claims = runtime.tokens.decode(token, "admin")
    if claims and claims.get("role") == "admin":
        return claims
    if runtime.tokens.decode(token, "access"):
        raise ForbiddenError("Admin access required")
    raise AuthenticationError("Invalid or expired token")


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
):
    """Authenticate with a username or email and a password.

    Sets the access and session cookies (plus the admin cookie for admins)
    and returns the tokens in the body. Failed attempts are recorded after
    the response is sent; ten failures in fifteen minutes lock the client
    address out with a 429.
    """
    runtime = get_runtime()
    scheduler = BackgroundScheduler(background_tasks)
    try:
        outcome = await runtime.login.login(
            body.identifier,
            body.password,
            identity=_client_identity(request),
            scheduler=scheduler,
        )
    except ServiceError as exc:
        # Returned rather than raised so the failed-attempt bookkeeping still runs
        return service_error_response(request, exc)
    runtime.tokens.set_auth_cookies(response, outcome.tokens)
    if outcome.rate_limit is not None:
        response.headers.update(outcome.rate_limit.headers())
    return Envelope(status="ok", data=outcome.body())


@router.post("/send-otp", response_model=Envelope, tags=["auth"])
async def send_otp(body: SendOtpRequest, request: Request, response: Response):
    """Email a six-digit verification code for login, signup or password reset."""
    runtime = get_runtime()
    otp = runtime.require_otp()
    # Own namespace; the login limiter's general counter is informational
    gate = await runtime.limiter.check(
        SEND_OTP,
        _client_identity(request),
        runtime.settings.general_rate_limit_max,
        runtime.settings.general_rate_limit_window_seconds * 1000,
    )
    if not gate.allowed:
        raise rate_limited(
            gate,
            lockout_message(
                gate.retry_after_seconds or 0, prefix="Too many verification code requests"
            ),
        )
    await run_blocking(
        otp.send, body.email, body.type, timeout=runtime.settings.request_timeout_seconds
    )
    response.headers.update(gate.headers())
    return Envelope(status="ok", data={"message": "OTP sent successfully"})


def _require_signup_fields(body: VerifyOtpRequest) -> None:
    if not (body.username and body.first_name and body.last_name and body.password):
        raise ValidationError(
            "First name, last name, username, and password are required for signup"
        )
    if len(body.password) < 8:
        raise ValidationError("Password must be at least 8 characters long")


async def _signup_user(runtime: Runtime, body: VerifyOtpRequest) -> User:
    store = runtime.require_store()
    password_hash = await run_blocking(
        runtime.verifier.hash, body.password, timeout=runtime.settings.request_timeout_seconds
    )
    role = "admin" if body.username.lower() == "admin" else "user"
    user = await run_blocking(
        lambda: store.create_user(
            body.email,
            body.username,
            password_hash=password_hash,
            role=role,
            first_name=body.first_name,
            last_name=body.last_name,
            email_verified=True,
        ),
        timeout=runtime.settings.request_timeout_seconds,
    )
    logger.info("user_signed_up", user_id=user.id, role=role)
    return user


@router.post("/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(
    body: VerifyOtpRequest,
    response: Response,
    background_tasks: BackgroundTasks,
):
    """Verify a code and complete the flow it was issued for.

    ``login`` signs the user in without a password, ``signup`` creates the
    account and signs it in, ``password_reset`` only confirms the code; the
    code stays valid for the reset itself.
    """
    runtime = get_runtime()
    otp = runtime.require_otp()
    store = runtime.require_store()
    timeout = runtime.settings.request_timeout_seconds

    if body.type == OtpPurpose.PASSWORD_RESET:
        await run_blocking(
            functools.partial(
                otp.verify_or_raise, body.email, body.type, body.code, consume=False
            ),
            timeout=timeout,
        )
        return Envelope(
            status="ok",
            data={"message": "OTP verified successfully. You can now reset your password."},
        )

    if body.type == OtpPurpose.SIGNUP:
        _require_signup_fields(body)
        taken = await run_blocking(store.get_user_by_username, body.username, timeout=timeout)
        if taken:
            raise ValidationError("Username is already taken")

    await run_blocking(
        otp.verify_or_raise, body.email, body.type, body.code, timeout=timeout
    )

    if body.type == OtpPurpose.SIGNUP:
        user = await _signup_user(runtime, body)
        message = "Account created successfully"
    else:
        user = await run_blocking(store.get_user_by_email, body.email, timeout=timeout)
        if not user:
            # Same answer as a code that was never issued
            raise OtpResult(False, "not_found").to_error()
        message = "Login successful"

    outcome = await runtime.login.complete_login(user, BackgroundScheduler(background_tasks))
    runtime.tokens.set_auth_cookies(response, outcome.tokens)
    return Envelope(status="ok", data=outcome.body(message))


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    """Set a new password using a password-reset code.

    The code is consumed only after the new hash is stored, so a failed
    write leaves it usable for a retry.
    """
    runtime = get_runtime()
    otp = runtime.require_otp()
    store = runtime.require_store()
    timeout = runtime.settings.request_timeout_seconds

    result = await run_blocking(
        functools.partial(
            otp.verify_or_raise, body.email, OtpPurpose.PASSWORD_RESET, body.otp, consume=False
        ),
        timeout=timeout,
    )
    user = await run_blocking(store.get_user_by_email, body.email, timeout=timeout)
    if not user:
        raise NotFoundError("User not found")
    password_hash = await run_blocking(runtime.verifier.hash, body.new_password, timeout=timeout)
    await run_blocking(store.set_password_hash, user.id, password_hash, timeout=timeout)
    await run_blocking(otp.consume, result.record_id, timeout=timeout)
    logger.info("password_reset", user_id=user.id)
    return Envelope(status="ok", data={"message": "Password reset successfully"})


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    """Revoke the current session row and clear every auth cookie."""
    runtime = get_runtime()
    session_token = request.cookies.get(SESSION_COOKIE)
    if session_token and runtime.store is not None:
        try:
            await run_blocking(
                runtime.tokens.revoke_session_token,
                session_token,
                timeout=runtime.settings.request_timeout_seconds,
            )
        except Exception as exc:
            # Cookies are cleared regardless; the row ages out with the purge
            logger.warning(
                "logout_revoke_failed", error_type=type(exc).__name__, error=str(exc)
            )
    runtime.tokens.clear_auth_cookies(response)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data={"user": user.public_profile()})


@router.post("/sessions/cleanup", response_model=Envelope, tags=["admin"])
async def cleanup_sessions(claims: dict = Depends(get_admin_claims)):
    """Purge expired, aged and excess sessions and stale one-time codes."""
    runtime = get_runtime()
    counts = await run_blocking(
        runtime.tokens.purge_sessions, timeout=runtime.settings.request_timeout_seconds
    )
    logger.info("session_cleanup_manual", **counts)
    return Envelope(
        status="ok", data={"message": "Session cleanup completed", "deleted": counts}
    )


@router.post("/change-password", response_model=Envelope, tags=["auth"])
async def change_password(body: ChangePasswordRequest, user: User = Depends(get_current_user)):
    """Replace the signed-in user's password after confirming the current one."""
    runtime = get_runtime()
    store = runtime.require_store()
    timeout = runtime.settings.request_timeout_seconds

    matches = await run_blocking(
        runtime.verifier.verify, body.current_password, user.password_hash, timeout=timeout
    )
    if not matches:
        raise AuthenticationError("Current password is incorrect")
    password_hash = await run_blocking(runtime.verifier.hash, body.new_password, timeout=timeout)
    if not await run_blocking(store.set_password_hash, user.id, password_hash, timeout=timeout):
        raise NotFoundError("User not found")
    logger.info("password_changed", user_id=user.id)
    return Envelope(status="ok", data={"message": "Password changed successfully"})


@router.post("/admin/revoke-sessions", response_model=Envelope, tags=["admin"])
async def revoke_user_sessions(
    body: RevokeSessionsRequest, claims: dict = Depends(get_admin_claims)
):
    """Sign a user out everywhere by deleting every session row they own.

    Access tokens already issued stay valid until they expire.
    """
    runtime = get_runtime()
    store = runtime.require_store()
    timeout = runtime.settings.request_timeout_seconds

    user = await run_blocking(store.get_user, body.user_id, timeout=timeout)
    if not user:
        raise NotFoundError("User not found")
    deleted = await run_blocking(runtime.tokens.revoke_user_sessions, user.id, timeout=timeout)
    return Envelope(
        status="ok",
        data={
            "message": f"All sessions for user {user.email} have been revoked",
            "deleted_sessions": deleted,
            "user": {"id": user.id, "email": user.email, "username": user.username},
        },
    )
