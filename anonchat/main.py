import json
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from anonchat import audit
from anonchat.auth import join_conversation, login_admin
from anonchat.chat import ACTIONS, ChatContext, dispatch
from anonchat.config import settings
from anonchat.csrf import (
    PURPOSE_ADMIN_LOGIN,
    PURPOSE_CHAT,
    PURPOSE_JOIN,
    PURPOSE_LOGOUT,
    PURPOSES,
    issue_token,
    validate_token,
)
from anonchat.errors import (
    AnonChatError,
    AuthenticationError,
    AuthorizationError,
    RateLimitError,
    ValidationError,
)
from anonchat.logging_utils import (
    SECURITY_HEADERS,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    log_action_data,
    setup_logging,
)
from anonchat.metrics import get_metrics, get_metrics_content_type, record_chat_action, record_login_outcome
from anonchat.schemas import (
    AdminLoginRequest,
    ApiResponse,
    CsrfOut,
    HealthResponse,
    JoinRequest,
    LogoutRequest,
    SessionOut,
    chat_request_adapter,
    fail,
    ok,
)
from anonchat.sessions import SessionContext, SessionStore, get_session
from anonchat.storage import check_db_health, get_db, init_db


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL, settings.SECURITY_LOG_DIR)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables and a fresh session store
    - Shutdown: drop in-memory sessions
    """
    init_db()
    app.state.session_store = SessionStore(
        idle_timeout=settings.SESSION_IDLE_TIMEOUT,
        absolute_timeout=settings.SESSION_ABSOLUTE_TIMEOUT,
    )
    yield
    logger.info(f"Shutting down with {len(app.state.session_store)} live sessions")


app = FastAPI(
    title="AnonChat API",
    description="Anonymous two-party support chat with an admin console",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Error Handling
# =============================================================================

def _error_response(status_code: int, message: str, headers=None) -> JSONResponse:
    merged = dict(SECURITY_HEADERS)
    merged.update(headers or {})
    return JSONResponse(status_code=status_code, content=fail(message), headers=merged)


def describe_errors(errors) -> str:
    """Turn pydantic errors into a short field-describing message."""
    if not errors:
        return "Invalid request"
    err = errors[0]
    if err.get("type") in ("union_tag_invalid", "union_tag_not_found"):
        return "action: unsupported action"
    loc = [str(part) for part in err.get("loc", ()) if part != "body" and part not in ACTIONS]
    field = ".".join(loc) or "body"
    return f"{field}: {err.get('msg', 'invalid value')}"


@app.exception_handler(AnonChatError)
async def anonchat_error_handler(request: Request, exc: AnonChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"Request failed: {exc.message}")
    else:
        logger.info(f"Request rejected ({exc.status_code}): {type(exc).__name__}")
    return _error_response(exc.status_code, exc.message, exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, describe_errors(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    audit.file_log(
        "internal_error",
        audit.get_client_info(request),
        {"path": request.url.path, "error": type(exc).__name__},
    )
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


async def _json_object(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("body: invalid JSON")
    if not isinstance(body, dict):
        raise ValidationError("body: expected a JSON object")
    return body


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and every
    table exists, otherwise 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Session Routes
# =============================================================================

@app.get("/api/csrf", response_model=ApiResponse)
async def csrf_token(
    purpose: str = Query(..., description="Form or API the token is for"),
    session: SessionContext = Depends(get_session),
) -> ApiResponse:
    """
    Issue the session's CSRF token for one purpose, starting the session
    if the client has none yet.
    """
    if purpose not in PURPOSES:
        raise ValidationError(f"purpose: must be one of {', '.join(PURPOSES)}")
    return ok(CsrfOut(csrf=issue_token(session, purpose), purpose=purpose))


@app.get("/api/session", response_model=ApiResponse)
async def current_session(session: SessionContext = Depends(get_session)) -> ApiResponse:
    claim = session.claim
    return ok(SessionOut(
        role=claim.role,
        username=getattr(claim, "username", None),
        conversation_id=getattr(claim, "conversation_id", None),
        code=getattr(claim, "code", None),
    ))


@app.post("/api/logout", response_model=ApiResponse)
async def logout(
    request: Request,
    payload: LogoutRequest,
    session: SessionContext = Depends(get_session),
    client: audit.ClientInfo = Depends(audit.get_client_info),
) -> ApiResponse:
    log_action_data(request, "logout")
    if not validate_token(session, payload.csrf, PURPOSE_LOGOUT):
        audit.log_suspicious(client, "logout_csrf_invalid")
        raise AuthorizationError()

    session.end()
    log_action_data(request, "logout", "ok")
    return ok({"logged_out": True})


# =============================================================================
# Authentication Routes
# =============================================================================

@app.post(
    "/api/admin-login",
    response_model=ApiResponse,
    responses={
        401: {"description": "Invalid credentials"},
        403: {"description": "Invalid CSRF token"},
        422: {"description": "Validation error"},
        429: {"description": "Rate limited or account locked"},
    },
)
async def admin_login(
    request: Request,
    payload: AdminLoginRequest,
    session: SessionContext = Depends(get_session),
    client: audit.ClientInfo = Depends(audit.get_client_info),
    db: Session = Depends(get_db),
) -> ApiResponse:
    """
    Administrator login.

    CSRF token (purpose admin-login) -> per-IP rate limit -> account
    lockout -> password check -> session bound to the account.
    """
    log_action_data(request, "admin_login")

    if not validate_token(session, payload.csrf, PURPOSE_ADMIN_LOGIN):
        audit.log_suspicious(client, "admin_csrf_invalid")
        record_login_outcome("csrf_invalid")
        log_action_data(request, "admin_login", "csrf_invalid")
        raise AuthorizationError()

    try:
        redirect = await login_admin(db, session, client, payload)
    except RateLimitError:
        record_login_outcome("rate_limited")
        log_action_data(request, "admin_login", "rate_limited")
        raise
    except AnonChatError as e:
        log_action_data(request, "admin_login", type(e).__name__)
        raise

    log_action_data(request, "admin_login", "success")
    return ok({"redirect": redirect})


@app.post("/api/join", response_model=ApiResponse)
async def join(
    request: Request,
    payload: JoinRequest,
    session: SessionContext = Depends(get_session),
    client: audit.ClientInfo = Depends(audit.get_client_info),
    db: Session = Depends(get_db),
) -> ApiResponse:
    """
    Enter a conversation as the anonymous participant, creating a new
    conversation when no code is given.
    """
    log_action_data(request, "join")

    if not validate_token(session, payload.csrf, PURPOSE_JOIN):
        audit.log_suspicious(client, "join_csrf_invalid")
        raise AuthorizationError()

    result = join_conversation(db, session, client, payload)
    log_action_data(request, "join", "ok", result.conversation_id)
    return ok(result)


# =============================================================================
# Chat Route
# =============================================================================

@app.post("/api/chat", response_model=ApiResponse)
async def chat(
    request: Request,
    response: Response,
    session: SessionContext = Depends(get_session),
    client: audit.ClientInfo = Depends(audit.get_client_info),
    db: Session = Depends(get_db),
) -> ApiResponse:
    """
    Polling chat API. The body's `action` selects one of the chat
    operations; every action carries conversation_id and a chat CSRF token.
    """
    body = await _json_object(request)
    action = body.get("action") if body.get("action") in ACTIONS else "unknown"
    log_action_data(request, action)

    try:
        if not validate_token(session, str(body.get("csrf") or ""), PURPOSE_CHAT):
            audit.log_suspicious(client, "chat_csrf_invalid", {"action": action})
            raise AuthorizationError()

        if session.claim.role == "none":
            raise AuthenticationError()

        try:
            chat_request = chat_request_adapter.validate_python(body)
        except PydanticValidationError as e:
            raise ValidationError(describe_errors(e.errors()))

        log_action_data(request, action, conversation_id=chat_request.conversation_id)
        ctx = ChatContext(db, session.claim, session.store, client)
        data = dispatch(ctx, chat_request)
    except AnonChatError as e:
        record_chat_action(action, type(e).__name__)
        log_action_data(request, action, type(e).__name__)
        raise

    if action == "send_message":
        response.status_code = status.HTTP_201_CREATED

    record_chat_action(action, "ok")
    log_action_data(request, action, "ok", chat_request.conversation_id)
    return ok(data)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
