from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from fruitables.api.schemas import (
    AuthResponse,
    ConfirmOtpRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginUserRequest,
    LogoutRequest,
    MessageResponse,
    PrincipalResponse,
    RegisterUserRequest,
    ResetPasswordRequest,
    SendOtpRequest,
    TokenDetails,
)
from fruitables.logging import get_logger
from fruitables.service.auth import OperationResult, ResultCode
from fruitables.service.errors import AuthenticationError, ForbiddenError
from fruitables.service.runtime import get_runtime
from fruitables.service.tokens import TokenPolicy
from fruitables.storage.models import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth")

SESSION_EXPIRED_MESSAGE = "Your session expired..kindly login"
FORBIDDEN_MESSAGE = "You do not have permission to access this resource !!"

_RESULT_STATUS = {
    ResultCode.REGISTERED: 201,
    ResultCode.DUPLICATE_USERNAME: 409,
    ResultCode.DUPLICATE_EMAIL: 409,
    ResultCode.ADMIN_LIMIT: 409,
    ResultCode.LOGGED_IN: 200,
    ResultCode.USER_NOT_FOUND: 404,
    ResultCode.ROLE_MISMATCH: 400,
    ResultCode.WRONG_PASSWORD: 400,
    ResultCode.LOGGED_OUT: 200,
    ResultCode.EMAIL_NOT_FOUND: 404,
    ResultCode.SERVICE_UNAVAILABLE: 503,
    ResultCode.PERSIST_FAILED: 400,
    ResultCode.EMAIL_SENT: 200,
    ResultCode.INVALID_USER: 404,
    ResultCode.INVALID_CODE: 400,
    ResultCode.CODE_MISMATCH: 400,
    ResultCode.PASSWORD_NOT_UPDATED: 500,
    ResultCode.PASSWORD_UPDATED: 200,
    ResultCode.OTP_SENT: 200,
    ResultCode.OTP_NOT_FOUND: 404,
    ResultCode.OTP_MISMATCH: 400,
    ResultCode.OTP_VERIFIED: 200,
}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def status_for(result: OperationResult) -> int:
    return _RESULT_STATUS[result.code]


def _raise_for_failure(result: OperationResult) -> None:
    if not result.success:
        raise _http_error(result.code.value, result.message, status_code=status_for(result))


def _message(result: OperationResult) -> MessageResponse:
    return MessageResponse(message=result.message, code=result.code.value)


def _auth_response(result: OperationResult) -> AuthResponse:
    tokens: TokenPair = result.data
    return AuthResponse(
        message=result.message,
        code=result.code.value,
        tokens=TokenDetails(**tokens.as_dict()),
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> dict:
    """Resolve the bearer access token to its claims.

    The token must verify and still be the stored access token for its email,
    so a logout takes effect immediately.
    """
    runtime = get_runtime()
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError(SESSION_EXPIRED_MESSAGE)
    token = token.strip()
    claims = runtime.issuer.decode(token, expected_type=TokenPolicy.ACCESS)
    if not claims:
        raise AuthenticationError(SESSION_EXPIRED_MESSAGE)
    stored = await runtime.store.find_access_token_by_email(claims["email"])
    if stored is None or not hmac.compare_digest(
        stored.token.encode(), token.encode("utf-8", "surrogatepass")
    ):
        logger.info("bearer_token_superseded", role=claims.get("role"))
        raise AuthenticationError(SESSION_EXPIRED_MESSAGE)
    return claims


async def require_admin(principal: dict = Depends(get_principal)) -> dict:
    if principal.get("role") != "admin":
        raise ForbiddenError(FORBIDDEN_MESSAGE)
    return principal


@router.post("/register-user", response_model=Envelope, status_code=201, tags=["auth"])
async def register_user(body: RegisterUserRequest):
    """Create a user or admin account.

    Raises:
        409: Name or email already taken, or the admin cap is reached
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.username, body.email, body.password, body.role
    )
    _raise_for_failure(result)
    return Envelope(status="ok", data=_message(result))


@router.post("/login-user", response_model=Envelope, tags=["auth"])
async def login_user(body: LoginUserRequest):
    """Authenticate by username, password and role; returns access and refresh tokens.

    Valid stored tokens are reused rather than re-minted.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.username, body.password, body.role)
    _raise_for_failure(result)
    return Envelope(status="ok", data=_auth_response(result))


@router.delete("/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    result = await runtime.auth.logout(body.email)
    return Envelope(status="ok", data=_message(result))


@router.post("/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    result = await runtime.auth.start_password_reset(body.email, body.role)
    _raise_for_failure(result)
    return Envelope(status="ok", data=_message(result))


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    result = await runtime.auth.complete_password_reset(
        body.user_id, body.code, body.password
    )
    _raise_for_failure(result)
    return Envelope(status="ok", data=_message(result))


@router.post("/send-OTP-details", response_model=Envelope, tags=["auth"])
async def send_otp_details(body: SendOtpRequest):
    runtime = get_runtime()
    result = await runtime.auth.start_otp_login(body.email, body.role)
    _raise_for_failure(result)
    return Envelope(status="ok", data=_message(result))


@router.post("/confirm-OTP-details", response_model=Envelope, tags=["auth"])
async def confirm_otp_details(body: ConfirmOtpRequest):
    """Validate an emailed OTP and sign the user in with fresh tokens."""
    runtime = get_runtime()
    result = await runtime.auth.confirm_otp(body.email, body.otp)
    _raise_for_failure(result)
    return Envelope(status="ok", data=_auth_response(result))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: dict = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            username=principal["name"],
            email=principal["email"],
            role=principal["role"],
            expires_at=datetime.fromtimestamp(principal["exp"], tz=timezone.utc),
        ),
    )


@router.get("/admin/ping", response_model=Envelope, tags=["auth"])
async def admin_ping(principal: dict = Depends(require_admin)):
    return Envelope(status="ok", data={"message": "pong", "username": principal["name"]})
