from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse

from refinergate.api.schemas import (
    AuthResponse,
    CheckoutSessionRequest,
    ForgotPasswordRequest,
    OtpRequest,
    OtpResetRequest,
    OtpVerifyRequest,
    ResetPasswordRequest,
    SigninRequest,
    SignupRequest,
    UserProfile,
    VerifyResetTokenRequest,
)
from refinergate.logging import email_fingerprint, get_logger
from refinergate.service.billing import SIGNATURE_HEADER
from refinergate.service.oauth import STATE_COOKIE, STATE_TTL_SECONDS, redirect_target
from refinergate.service.runtime import Runtime, check_rate_limit, get_runtime
from refinergate.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

RATE_LIMIT_WINDOW_SECONDS = 60


def _http_error(
    code: str,
    message: str,
    status_code: int,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "success": False,
        "error": {"code": code, "message": message},
    }
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.headers())


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Enforce a token-bucket limit; raises a 429 envelope when exhausted."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        raise _http_error(
            "rate_limited",
            "Too many requests. Please try again later.",
            status_code=429,
            headers={**info.headers(), "Retry-After": str(max(1, reset_seconds))},
        )
    return info


def _rate_key(prefix: str, email: Optional[str]) -> str:
    if not isinstance(email, str) or not email.strip():
        return f"{prefix}:anonymous"
    return f"{prefix}:{email_fingerprint(email.strip().lower())}"


def _oauth_redirect_uri(runtime: Runtime) -> str:
    configured = runtime.settings.oauth_redirect_uri
    if configured:
        return configured
    return f"{runtime.settings.app_base_url.rstrip('/')}/api/auth/google/callback"


def _auth_payload(user: User, token: str, message: str) -> dict:
    return AuthResponse(
        user=UserProfile(**user.public_profile()),
        token=token,
        message=message,
    ).model_dump(by_alias=True)


def _set_session_cookie(runtime: Runtime, response: Response, token: str) -> None:
    response.set_cookie(value=token, **runtime.sessions.cookie_settings())


# Password reset (emailed link)


@router.post("/auth/forgot-password", tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, response: Response):
    """Issue a reset link.

    The response is identical whether or not the account exists, unless the
    deployment exposes reset tokens for local development.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        _rate_key("reset:request", body.email),
        runtime.settings.reset_rate_limit_per_minute,
        response=response,
    )
    return await runtime.resets.request_reset(body.email)


@router.post("/auth/verify-reset-token", tags=["auth"])
async def verify_reset_token(body: VerifyResetTokenRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        _rate_key("reset:verify", body.email),
        runtime.settings.reset_rate_limit_per_minute * 2,
        response=response,
    )
    return await runtime.resets.verify_token(body.token, body.email)


@router.post("/auth/reset-password", tags=["auth"])
async def reset_password(body: ResetPasswordRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        _rate_key("reset:confirm", body.email),
        runtime.settings.reset_rate_limit_per_minute,
        response=response,
    )
    return await runtime.resets.consume_token(body.token, body.email, body.new_password)


# Password reset (OTP relayed to the backend)


@router.post("/auth/request-password-reset", tags=["auth"])
async def request_password_reset_otp(body: OtpRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        _rate_key("otp:request", body.email),
        runtime.settings.otp_rate_limit_per_minute,
        response=response,
    )
    return await runtime.otp.request_otp(body.email)


@router.post("/auth/verify-otp", tags=["auth"])
async def verify_otp(body: OtpVerifyRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        _rate_key("otp:verify", body.email),
        runtime.settings.otp_rate_limit_per_minute,
        response=response,
    )
    return await runtime.otp.verify_otp(body.email, body.otp)


@router.post("/auth/reset-password-otp", tags=["auth"])
async def reset_password_otp(body: OtpResetRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        _rate_key("otp:reset", body.email),
        runtime.settings.otp_rate_limit_per_minute,
        response=response,
    )
    return await runtime.otp.reset_with_otp(body.email, body.temp_token, body.new_password)


# Google OAuth


@router.get("/auth/google", tags=["auth"])
async def google_oauth_start(
    state: Optional[str] = Query(None, max_length=256),
):
    """Redirect the browser to Google's consent screen."""
    runtime = get_runtime()
    url, issued_state = runtime.oauth.begin(state, redirect_uri=_oauth_redirect_uri(runtime))
    response = RedirectResponse(url, status_code=302)
    response.set_cookie(
        STATE_COOKIE,
        issued_state,
        max_age=STATE_TTL_SECONDS,
        path="/",
        httponly=True,
        samesite="lax",
        secure=runtime.deployment.is_production,
    )
    return response


@router.get("/auth/google/callback", tags=["auth"])
async def google_oauth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
):
    """Finish the authorization-code flow and redirect back to the app."""
    runtime = get_runtime()
    result = await runtime.oauth.complete(
        code=code,
        state=state,
        error=error,
        stored_state=request.cookies.get(STATE_COOKIE),
        redirect_uri=_oauth_redirect_uri(runtime),
    )
    logger.info("oauth_callback_finished", provider="google", outcome=result.outcome.value)
    response = RedirectResponse(
        redirect_target(result, runtime.settings.app_base_url), status_code=302
    )
    response.delete_cookie(
        STATE_COOKIE,
        path="/",
        httponly=True,
        samesite="lax",
        secure=runtime.deployment.is_production,
    )
    if result.succeeded and result.token:
        _set_session_cookie(runtime, response, result.token)
    return response


# Email/password accounts


@router.post("/auth/signup", tags=["auth"])
async def signup(body: SignupRequest, response: Response):
    runtime = get_runtime()
    user, token = await runtime.accounts.sign_up(
        body.email, body.password, body.first_name, body.last_name
    )
    _set_session_cookie(runtime, response, token)
    return _auth_payload(user, token, "Account created successfully")


@router.post("/auth/signin", tags=["auth"])
async def signin(body: SigninRequest, response: Response):
    runtime = get_runtime()
    user, token = await runtime.accounts.sign_in(body.email, body.password)
    _set_session_cookie(runtime, response, token)
    return _auth_payload(user, token, "Signed in successfully")


@router.post("/auth/logout", tags=["auth"])
async def logout(response: Response):
    runtime = get_runtime()
    response.delete_cookie(
        runtime.sessions.cookie_name,
        path="/",
        samesite="lax",
        secure=runtime.deployment.is_production,
    )
    return {"ok": True}


# Billing


@router.post("/stripe/webhook", tags=["billing"])
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
):
    runtime = get_runtime()
    payload = await request.body()
    return await runtime.billing.handle(payload, stripe_signature)


@router.post("/stripe/create-checkout-session", tags=["billing"])
async def create_checkout_session(body: CheckoutSessionRequest):
    runtime = get_runtime()
    return await runtime.checkout.create_session(
        body.price_id,
        customer_email=body.customer_email,
        metadata=body.metadata,
    )
