from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header

from synodic.api.schemas import (
    AuthResponse,
    ChatRequest,
    ChatResponse,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    HealthResponse,
    MessageResponse,
    ResetPasswordRequest,
    SigninRequest,
    SignupRequest,
    VerifyResponse,
)
from synodic.service.errors import UnauthenticatedError
from synodic.service.runtime import Runtime, get_runtime
from synodic.service.tokens import TokenClaims

router = APIRouter(prefix="/api")

FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a reset code has been sent."
RESET_PASSWORD_MESSAGE = "Password has been reset. You can now sign in."
MISSING_TOKEN_MESSAGE = "Authentication required"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_claims(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> TokenClaims:
    token = _bearer_token(authorization)
    if not token:
        raise UnauthenticatedError(MISSING_TOKEN_MESSAGE)
    return runtime.auth.authenticate(token)


@router.post("/auth/signup", response_model=AuthResponse, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, runtime: Runtime = Depends(get_runtime)):
    """Create an account and sign it in.

    Raises:
        400: missing field, short password or an email that is already registered
    """
    user, token = await runtime.auth.signup(body.name, body.email, body.password)
    return {"token": token, "user": user.public()}


@router.post("/auth/signin", response_model=AuthResponse, tags=["auth"])
async def signin(body: SigninRequest, runtime: Runtime = Depends(get_runtime)):
    """Exchange email and password for a session token.

    ``rememberMe`` selects the long-lived token.
    """
    user, token = await runtime.auth.signin(
        body.email, body.password, remember_me=body.remember_me
    )
    return {"token": token, "user": user.public()}


@router.get("/auth/verify", response_model=VerifyResponse, tags=["auth"])
async def verify(
    claims: TokenClaims = Depends(get_claims),
    runtime: Runtime = Depends(get_runtime),
):
    user = runtime.auth.current_user(claims)
    return {"user": user.public()}


@router.post(
    "/auth/forgot-password",
    response_model=ForgotPasswordResponse,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def forgot_password(body: ForgotPasswordRequest, runtime: Runtime = Depends(get_runtime)):
    """Start a password reset.

    The response is identical for known and unknown emails. Outside
    production the code is echoed back as ``devCode`` so the flow can be
    exercised without a mail server.
    """
    code = await runtime.auth.request_password_reset(body.email)
    response = {"message": FORGOT_PASSWORD_MESSAGE}
    if not runtime.settings.is_production:
        response["dev_code"] = code
    return response


@router.post("/auth/reset-password", response_model=MessageResponse, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.reset_password(body.email, body.code, body.new_password)
    return {"message": RESET_PASSWORD_MESSAGE}


@router.post("/chat", response_model=ChatResponse, tags=["chat"])
async def chat(
    body: ChatRequest,
    claims: TokenClaims = Depends(get_claims),
    runtime: Runtime = Depends(get_runtime),
):
    """Send one message plus recent history to the configured AI provider."""
    history = [item.to_turn() for item in body.history]
    reply = await runtime.chat.handle(body.message, history, claims.user_id)
    return {"response": reply, "provider": runtime.chat.provider_name}


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health(runtime: Runtime = Depends(get_runtime)):
    return {
        "status": "ok",
        "provider": runtime.settings.ai_provider.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ping", tags=["system"])
async def ping():
    return {"status": "ok"}
