import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketDisconnect

from messenger.config import settings
from messenger.directory import Directory
from messenger.errors import AuthError, MessengerError, NotFoundError, ValidationError
from messenger.logging_utils import RequestLoggingMiddleware, connection_id_ctx, log_request_data, setup_logging
from messenger.message_log import MessageLog
from messenger.metrics import get_metrics, get_metrics_content_type
from messenger.relay import ConnectionRegistry, ConnectionState, Relay
from messenger.schemas import (
    ChatResponse,
    ChatsListResponse,
    CheckPhoneRequest,
    CheckPhoneResponse,
    ErrorResponse,
    HealthResponse,
    LastMessageResponse,
    MessageResponse,
    MessagesListResponse,
    SearchResponse,
    SearchResultResponse,
    ServiceInfoResponse,
    SessionDebugResponse,
    SetUsernameRequest,
    SetUsernameResponse,
    UserResponse,
    UsersListResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from messenger.sessions import SessionManager
from messenger.storage import MessageRepository, SessionLocal, UserRepository, check_db_health, init_db
from messenger.utils import format_timestamp, utc_now
from messenger.verification import VerificationIssuer, sweep_periodically


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

SERVICE_VERSION = "2.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, load the persisted directory and message log,
      build the in-memory stores, start the challenge expiry sweep
    - Shutdown: stop the sweep
    """
    init_db()

    directory = Directory(UserRepository(SessionLocal))
    directory.load()
    directory.seed(settings.SEED_PHONE_NUMBERS)

    messages = MessageLog(MessageRepository(SessionLocal))
    messages.load()

    sessions = SessionManager()
    verifier = VerificationIssuer(ttl_seconds=settings.CODE_TTL_SECONDS)
    registry = ConnectionRegistry()

    app.state.directory = directory
    app.state.messages = messages
    app.state.sessions = sessions
    app.state.verifier = verifier
    app.state.registry = registry
    app.state.relay = Relay(
        directory=directory,
        sessions=sessions,
        messages=messages,
        registry=registry,
        push_timeout=settings.PUSH_TIMEOUT_SECONDS,
    )

    sweeper = asyncio.create_task(sweep_periodically(verifier, settings.CODE_SWEEP_INTERVAL_SECONDS))
    logger.info(
        "Messenger relay started",
        extra={"users": len(directory), "messages": len(messages)},
    )
    yield
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass


app = FastAPI(
    title="Messenger API",
    description="Session-authenticated real-time message relay",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(MessengerError)
async def messenger_error_handler(request: Request, exc: MessengerError) -> JSONResponse:
    log_request_data(request, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# =============================================================================
# Dependencies
# =============================================================================

def get_directory(request: Request) -> Directory:
    return request.app.state.directory


def get_messages(request: Request) -> MessageLog:
    return request.app.state.messages


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_verifier(request: Request) -> VerificationIssuer:
    return request.app.state.verifier


def authenticate(sessions: SessionManager, session_id: Optional[str]) -> str:
    """Resolve a session token to its phone number or raise AuthError."""
    if not session_id:
        raise AuthError("not authorized")
    phone_number = sessions.resolve(session_id)
    if phone_number is None:
        raise AuthError("invalid session")
    return phone_number


def current_phone(
    request: Request,
    session_id: Annotated[Optional[str], Query(alias="sessionId")] = None,
    sessions: SessionManager = Depends(get_sessions),
) -> str:
    phone_number = authenticate(sessions, session_id)
    log_request_data(request, phone_number=phone_number)
    return phone_number


AUTH_ERRORS = {401: {"model": ErrorResponse, "description": "Missing or invalid session"}}


# =============================================================================
# Service Routes
# =============================================================================

@app.get("/", response_model=ServiceInfoResponse)
async def index() -> ServiceInfoResponse:
    return ServiceInfoResponse(
        message="Messenger API",
        version=SERVICE_VERSION,
        endpoints=[
            "POST /api/auth/check-phone",
            "POST /api/auth/verify-code",
            "POST /api/auth/set-username",
            "GET /api/users",
            "GET /api/users/search",
            "GET /api/chats",
            "GET /api/messages",
            "GET /api/debug/session",
            "GET /health",
            "GET /metrics",
            "WS /ws",
        ],
    )


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok", timestamp=format_timestamp(utc_now()))


@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the database is reachable and
    both tables exist. Otherwise returns 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )
    return HealthResponse(status="ready")


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Auth Routes
# =============================================================================

@app.post(
    "/api/auth/check-phone",
    response_model=CheckPhoneResponse,
    responses={422: {"description": "Validation error"}},
)
async def check_phone(
    body: CheckPhoneRequest,
    request: Request,
    directory: Directory = Depends(get_directory),
    verifier: VerificationIssuer = Depends(get_verifier),
) -> CheckPhoneResponse:
    """
    Start a login for a phone number.

    Unknown numbers are registered on the spot; there is no proof of
    ownership beyond the code printed to the server log.
    """
    identity = directory.get_or_create(body.phone_number)
    verifier.issue(identity.phone_number)
    log_request_data(request, phone_number=identity.phone_number, result="code_issued")

    return CheckPhoneResponse(
        is_new=identity.username is None,
        message="Verification code written to the server console",
    )


@app.post(
    "/api/auth/verify-code",
    response_model=VerifyCodeResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Wrong or expired code"},
        404: {"model": ErrorResponse, "description": "Unknown phone number"},
    },
)
async def verify_code(
    body: VerifyCodeRequest,
    request: Request,
    directory: Directory = Depends(get_directory),
    verifier: VerificationIssuer = Depends(get_verifier),
    sessions: SessionManager = Depends(get_sessions),
) -> VerifyCodeResponse:
    """Exchange a valid one-time code for a session token."""
    identity = directory.find(body.phone_number)
    if identity is None:
        log_request_data(request, phone_number=body.phone_number, result="unknown_number")
        raise NotFoundError("phone number not found")

    if not verifier.verify(body.phone_number, body.code):
        log_request_data(request, phone_number=body.phone_number, result="invalid_code")
        raise AuthError("invalid code")

    token = sessions.create_session(identity.phone_number)
    log_request_data(request, phone_number=identity.phone_number, result="session_created")

    return VerifyCodeResponse(
        session_id=token,
        phone_number=identity.phone_number,
        username=identity.username,
        message="Signed in",
    )


@app.post(
    "/api/auth/set-username",
    response_model=SetUsernameResponse,
    responses={
        **AUTH_ERRORS,
        409: {"model": ErrorResponse, "description": "Username already set or taken"},
    },
)
async def set_username(
    body: SetUsernameRequest,
    request: Request,
    directory: Directory = Depends(get_directory),
    sessions: SessionManager = Depends(get_sessions),
) -> SetUsernameResponse:
    """Claim a username. Each identity may do this exactly once."""
    phone_number = authenticate(sessions, body.session_id)
    username = body.username.strip()
    if not username:
        raise ValidationError("username is required")

    identity = directory.set_username(phone_number, username)
    log_request_data(request, phone_number=phone_number, result="username_set")
    return SetUsernameResponse(username=identity.username)


# =============================================================================
# Directory Routes
# =============================================================================

@app.get("/api/users", response_model=UsersListResponse, responses=AUTH_ERRORS)
async def list_users(
    phone_number: str = Depends(current_phone),
    directory: Directory = Depends(get_directory),
    messages: MessageLog = Depends(get_messages),
) -> UsersListResponse:
    """Every known identity except the caller, with the latest message exchanged."""
    users = [
        UserResponse.from_identity(
            identity,
            LastMessageResponse.for_viewer(
                messages.last_message(phone_number, identity.phone_number), phone_number
            ),
        )
        for identity in directory.all(exclude=phone_number)
    ]
    logger.info(f"GET /api/users: returned {len(users)} users")
    return UsersListResponse(users=users)


@app.get("/api/users/search", response_model=SearchResponse, responses=AUTH_ERRORS)
async def search_users(
    query: Annotated[Optional[str], Query(description="Phone number or username fragment")] = None,
    phone_number: str = Depends(current_phone),
    directory: Directory = Depends(get_directory),
    messages: MessageLog = Depends(get_messages),
) -> SearchResponse:
    """
    Search identities by phone number or username (case-insensitive).

    A phone-like query that matches no known number also yields a
    "new contact" placeholder so the caller can start a conversation.
    """
    results = []
    for entry in directory.search(query or "", exclude=phone_number):
        last_message = None
        if entry.exists:
            last_message = LastMessageResponse.for_viewer(
                messages.last_message(phone_number, entry.phone_number), phone_number
            )
        results.append(SearchResultResponse.from_entry(entry, last_message))

    logger.info(f"GET /api/users/search: returned {len(results)} results")
    return SearchResponse(users=results)


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/api/chats", response_model=ChatsListResponse, responses=AUTH_ERRORS)
async def list_chats(
    phone_number: str = Depends(current_phone),
    directory: Directory = Depends(get_directory),
    messages: MessageLog = Depends(get_messages),
) -> ChatsListResponse:
    """Distinct conversation partners of the caller, in order of first contact."""
    chats = []
    for partner in messages.conversation_partners(phone_number):
        identity = directory.find(partner)
        chats.append(ChatResponse(
            phone_number=partner,
            username=identity.username if identity else None,
            last_message=LastMessageResponse.for_viewer(
                messages.last_message(phone_number, partner), phone_number
            ),
        ))
    return ChatsListResponse(chats=chats)


@app.get(
    "/api/messages",
    response_model=MessagesListResponse,
    responses={
        **AUTH_ERRORS,
        404: {"model": ErrorResponse, "description": "Unknown counterpart"},
    },
)
async def message_history(
    with_phone: Annotated[str, Query(alias="withPhone", min_length=1, description="Counterpart phone number")],
    phone_number: str = Depends(current_phone),
    directory: Directory = Depends(get_directory),
    messages: MessageLog = Depends(get_messages),
) -> MessagesListResponse:
    """Messages between the caller and a counterpart, oldest first."""
    if directory.find(with_phone) is None:
        raise NotFoundError("user not found")

    history = messages.conversation(phone_number, with_phone)
    logger.info(f"GET /api/messages: returned {len(history)} messages")
    return MessagesListResponse(messages=[MessageResponse.from_message(m) for m in history])


@app.get("/api/debug/session", response_model=SessionDebugResponse)
async def debug_session(
    session_id: Annotated[Optional[str], Query(alias="sessionId")] = None,
    sessions: SessionManager = Depends(get_sessions),
) -> SessionDebugResponse:
    """Report whether a token is live. Never lists other sessions."""
    phone_number = sessions.resolve(session_id)
    return SessionDebugResponse(
        session_id=session_id,
        valid=phone_number is not None,
        user_phone=phone_number,
        total_sessions=len(sessions),
    )


# =============================================================================
# WebSocket Relay
# =============================================================================

@app.websocket("/")
@app.websocket("/ws")
async def relay_socket(websocket: WebSocket) -> None:
    """
    Duplex channel. Clients send JSON frames:
        {"type": "register", "sessionId": ...}
        {"type": "sendMessage", "sessionId": ..., "to": ..., "text": ...}
    and receive registered / messageSent / newMessage / error frames.
    """
    relay: Relay = websocket.app.state.relay
    await websocket.accept()
    connection = relay.connect(websocket)
    ctx_token = connection_id_ctx.set(connection.id)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = (message.get("bytes") or b"").decode("utf-8", errors="replace")
            await relay.handle_text(connection, raw)
            if connection.state is ConnectionState.CLOSED:
                break
    except WebSocketDisconnect:
        pass
    finally:
        relay.close(connection)
        connection_id_ctx.reset(ctx_token)
