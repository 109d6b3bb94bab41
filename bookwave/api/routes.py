from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request

from bookwave.api.schemas import (
    EmailCodeRequest,
    EmailRegisterRequest,
    EmailVerifyRequest,
    Envelope,
    IdTokenLoginRequest,
    LoginRequest,
    PasswordResetConfirmRequest,
    PendingTokenRequest,
    PhoneCodeRequest,
    PhoneStartRequest,
    PhoneVerifyRequest,
    TermsAcceptRequest,
)
from bookwave.service.runtime import get_runtime
from bookwave.storage.models import SessionContext

router = APIRouter(prefix="/v1")


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


def _session(request: Request) -> SessionContext:
    session = getattr(request.state, "session", None)
    if session is None:
        raise _http_error("unauthorized", "unauthorized", status_code=401)
    return session


def _pending_token(request: Request, explicit: Optional[str]) -> Optional[str]:
    """Body value wins; otherwise the bearer presented with the request."""
    return explicit or getattr(request.state, "bearer", None)


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    result = await runtime.sessions.login_with_password(body.email, body.password)
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/id-token", response_model=Envelope, tags=["auth"])
async def login_with_id_token(body: IdTokenLoginRequest):
    runtime = get_runtime()
    result = await runtime.sessions.login_with_provider(body.provider, body.id_token)
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/phone/start", response_model=Envelope, tags=["auth"])
async def start_phone_login(body: PhoneStartRequest):
    runtime = get_runtime()
    data = await runtime.sessions.start_phone_login(
        body.phone,
        body.machine_code,
        language=body.language,
        accept_terms=body.accept_terms,
    )
    return Envelope(status="ok", data=data)


@router.post("/auth/phone/request-code", response_model=Envelope, tags=["auth"])
async def request_phone_code(body: PhoneCodeRequest, request: Request):
    runtime = get_runtime()
    code_expires_at = await runtime.phone.request_code(
        _pending_token(request, body.pending_token), body.phone, body.machine_code
    )
    return Envelope(status="ok", data={"code_expires_at": _iso(code_expires_at)})


@router.post("/auth/phone/verify-code", response_model=Envelope, tags=["auth"])
async def verify_phone_code(body: PhoneVerifyRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.sessions.verify_phone_code(
        _pending_token(request, body.pending_token), body.code, body.machine_code
    )
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/email/request-code", response_model=Envelope, tags=["auth"])
async def request_email_code(body: EmailCodeRequest):
    runtime = get_runtime()
    ticket = await runtime.email.request_code(body.email)
    return Envelope(
        status="ok",
        data={
            "pending_token": ticket.pending_token,
            "expires_at": _iso(ticket.expires_at),
            "code_expires_at": _iso(ticket.code_expires_at),
        },
    )


@router.post("/auth/email/resend-code", response_model=Envelope, tags=["auth"])
async def resend_email_code(body: PendingTokenRequest, request: Request):
    runtime = get_runtime()
    code_expires_at = await runtime.email.resend_code(_pending_token(request, body.pending_token))
    return Envelope(status="ok", data={"code_expires_at": _iso(code_expires_at)})


@router.post("/auth/email/verify-code", response_model=Envelope, tags=["auth"])
async def verify_email_code(body: EmailVerifyRequest, request: Request):
    runtime = get_runtime()
    register_token, expires_at = await runtime.email.verify_code(
        _pending_token(request, body.pending_token), body.code
    )
    return Envelope(
        status="ok", data={"register_token": register_token, "expires_at": _iso(expires_at)}
    )


@router.post("/auth/email/register", response_model=Envelope, tags=["auth"])
async def register_with_email(body: EmailRegisterRequest):
    runtime = get_runtime()
    result = await runtime.sessions.register_with_email(body.register_token, body.password, body.name)
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/email/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: EmailCodeRequest):
    runtime = get_runtime()
    ticket = await runtime.email.request_reset(body.email)
    return Envelope(
        status="ok",
        data={"pending_token": ticket.pending_token, "expires_at": _iso(ticket.expires_at)},
    )


@router.post("/auth/email/reset/verify", response_model=Envelope, tags=["auth"])
async def verify_password_reset(body: EmailVerifyRequest, request: Request):
    runtime = get_runtime()
    reset_token, expires_at = await runtime.email.verify_reset(
        _pending_token(request, body.pending_token), body.code
    )
    return Envelope(status="ok", data={"reset_token": reset_token, "expires_at": _iso(expires_at)})


@router.post("/auth/email/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirmRequest):
    runtime = get_runtime()
    revoked = await runtime.sessions.confirm_password_reset(body.reset_token, body.new_password)
    return Envelope(status="ok", data={"password_reset": True, "sessions_revoked": revoked})


@router.post("/auth/terms/accept", response_model=Envelope, tags=["auth"])
async def accept_terms(body: TermsAcceptRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.sessions.accept_terms(
        _pending_token(request, body.pending_token), language=body.language, genre=body.genre
    )
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/token/refresh", response_model=Envelope, tags=["auth"])
async def refresh_token(request: Request):
    session = _session(request)
    runtime = get_runtime()
    result = await runtime.sessions.refresh_session_token(session.token)
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request):
    token = getattr(request.state, "bearer", None)
    if not token:
        raise _http_error("unauthorized", "unauthorized", status_code=401)
    runtime = get_runtime()
    removed = await runtime.sessions.logout(token)
    return Envelope(status="ok", data={"logged_out": removed})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(request: Request):
    session = _session(request)
    runtime = get_runtime()
    profile = await runtime.profiles.require(session.user_id)
    return Envelope(
        status="ok",
        data={
            "user": await runtime.profiles.describe(profile),
            "session": {
                "token_id": session.token_id,
                "provider": session.provider,
                "provider_sub": session.provider_sub,
                "expires_at": _iso(session.expires_at),
                "permission": session.permission,
            },
        },
    )


@router.get("/auth/duplicates/stats", response_model=Envelope, tags=["auth"])
async def duplicate_stats(request: Request):
    _session(request)
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={"guard": runtime.duplicates.stats(), "rejections": runtime.duplicate_stats.summary()},
    )
