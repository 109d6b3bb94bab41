from __future__ import annotations

from typing import Awaitable, Callable, Optional, Tuple

from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from bookwave.api.error_handling import _error_response
from bookwave.logging import get_logger
from bookwave.service.duplicates import RequestFingerprint
from bookwave.service.errors import DuplicateRequestError
from bookwave.service.runtime import Runtime, get_runtime
from bookwave.service.tokens import extract_bearer

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

ROUTE_PUBLIC = "public"
ROUTE_AUTH_FLOW = "auth_flow"
ROUTE_PROTECTED = "protected"

# Reachable before any session exists; no duplicate guard, no bearer
PUBLIC_PATHS = frozenset({
    "/healthz",
    "/openapi.json",
    "/docs",
    "/v1/auth/id-token",
    "/v1/auth/login",
    "/v1/auth/phone/start",
    "/v1/auth/email/request-code",
    "/v1/auth/email/resend-code",
    "/v1/auth/email/reset/request",
})

# Guarded, bearer optional, restricted tokens accepted
AUTH_FLOW_PATHS = frozenset({
    "/v1/auth/phone/request-code",
    "/v1/auth/phone/verify-code",
    "/v1/auth/terms/accept",
    "/v1/auth/email/verify-code",
    "/v1/auth/email/register",
    "/v1/auth/email/reset/verify",
    "/v1/auth/email/reset/confirm",
    "/v1/auth/logout",
})


def classify_route(path: str) -> str:
    normalized = path.rstrip("/") or "/"
    if normalized in PUBLIC_PATHS:
        return ROUTE_PUBLIC
    if normalized in AUTH_FLOW_PATHS:
        return ROUTE_AUTH_FLOW
    return ROUTE_PROTECTED


def resolve_bearer(request: Request, cookie_name: str = "session_token") -> Optional[str]:
    """Bearer token from the Authorization header, then query string, then cookie."""
    token = extract_bearer(request.headers.get("authorization"))
    if token:
        return token
    for name in ("token", "access_token"):
        token = extract_bearer(request.query_params.get(name))
        if token:
            return token
    return extract_bearer(request.cookies.get(cookie_name))


async def _buffer_body(receive: Receive) -> Tuple[bytes, Receive]:
    """Read the full request body and return a receive that replays it."""
    chunks = []
    trailing: Optional[Message] = None
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            trailing = message
            break
        chunks.append(message.get("body", b""))
        if not message.get("more_body", False):
            break
    body = b"".join(chunks)
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        if trailing is not None:
            return trailing
        return await receive()

    return body, replay


class SessionMiddleware:
    """Resolve opaque bearer tokens and guard mutating requests against duplicates.

    The guard runs before the token lookup. Its release is idempotent and
    fires when the final response body chunk goes out, or in ``finally``
    when the app raises or the client disconnects. Any unexpected failure
    while authenticating answers 401.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        runtime_provider: Callable[[], Runtime] = get_runtime,
    ) -> None:
        self.app = app
        self.runtime_provider = runtime_provider

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        route_class = classify_route(scope["path"])
        method = scope["method"].upper()
        if route_class == ROUTE_PUBLIC or method == "OPTIONS":
            await self.app(scope, receive, send)
            return

        release: Optional[Callable[[], Awaitable[None]]] = None
        try:
            runtime = self.runtime_provider()
            request = Request(scope)
            token = resolve_bearer(request, runtime.settings.session_cookie_name)

            if method not in SAFE_METHODS:
                body, receive = await _buffer_body(receive)
                fingerprint = RequestFingerprint(
                    method=method,
                    path=scope["path"],
                    body=body.decode("utf-8", errors="replace"),
                    query=scope.get("query_string", b"").decode("latin-1"),
                    token=token or "",
                    user_agent=request.headers.get("user-agent", ""),
                    client_ip=request.client.host if request.client else "",
                )
                release = await runtime.duplicates.acquire(fingerprint)
                if release is None:
                    await self._record_duplicate(runtime, fingerprint, token)
                    rejected = DuplicateRequestError("duplicate request")
                    response = _error_response(
                        rejected.status_code, rejected.message, code=rejected.error_code
                    )
                    await response(scope, receive, send)
                    return

            session = await runtime.sessions.resolve(token) if token else None
            if route_class == ROUTE_PROTECTED:
                if session is None:
                    await self._finish_early(release, scope, receive, send, 401, "unauthorized")
                    return
                if not session.permission:
                    await self._finish_early(release, scope, receive, send, 403, "forbidden")
                    return
        except Exception as exc:
            logger.error(
                "session_middleware_failed",
                path=scope["path"],
                method=method,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._finish_early(release, scope, receive, send, 401, "unauthorized")
            return

        state = scope.setdefault("state", {})
        state["session"] = session
        state["bearer"] = token

        if release is None:
            await self.app(scope, receive, send)
            return

        async def send_wrapper(message: Message) -> None:
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                await release()

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            await release()

    async def _finish_early(
        self,
        release: Optional[Callable[[], Awaitable[None]]],
        scope: Scope,
        receive: Receive,
        send: Send,
        status_code: int,
        message: str,
    ) -> None:
        try:
            response = _error_response(status_code, message)
            await response(scope, receive, send)
        finally:
            if release is not None:
                await release()

    async def _record_duplicate(
        self, runtime: Runtime, fingerprint: RequestFingerprint, token: Optional[str]
    ) -> None:
        user_id = None
        if token:
            session = await runtime.sessions.resolve(token)
            user_id = session.user_id if session else None
        runtime.duplicate_stats.record(
            fingerprint.digest(), fingerprint.method, fingerprint.path, user_id
        )
