"""
Connection registry and real-time relay.

Each WebSocket connection moves through UNBOUND -> BOUND -> CLOSED. A
connection becomes BOUND by registering a valid session token; only BOUND
connections may send. A send is processed in a fixed order:

    1. materialize the recipient in the directory
    2. durably append to the message log
    3. acknowledge the sender with the stored message
    4. push the message to the recipient's live connection, if any

The live push is best-effort: an offline recipient or a stale connection is
skipped (bounded by a timeout) and the message stays retrievable from the log.
"""

import asyncio
import enum
import json
import logging
import threading
import uuid
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from messenger.directory import Directory
from messenger.errors import AuthError, MessengerError, ValidationError
from messenger.message_log import Message, MessageLog
from messenger.metrics import record_delivery, websocket_connections
from messenger.schemas import MessageResponse, RegisterFrame, SendMessageFrame
from messenger.sessions import SessionManager

logger = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    CLOSED = "closed"


class Connection:
    """One live WebSocket plus the identity bound to it, if any."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex[:12]
        self.websocket = websocket
        self.state = ConnectionState.UNBOUND
        self.token: Optional[str] = None
        self.phone_number: Optional[str] = None

    @property
    def is_open(self) -> bool:
        if self.state is ConnectionState.CLOSED:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, payload: dict[str, Any]) -> None:
        await self.websocket.send_json(payload)


class ConnectionRegistry:
    """token -> live connection, at most one per token."""

    def __init__(self):
        self._lock = threading.Lock()
        self._connections: dict[str, Connection] = {}

    def bind(self, token: str, connection: Connection) -> Optional[Connection]:
        """Bind a connection to a token. Returns the connection it displaced."""
        with self._lock:
            previous = self._connections.get(token)
            self._connections[token] = connection
        if previous is connection:
            return None
        return previous

    def unbind(self, token: str, connection: Connection) -> bool:
        """Remove the binding, but only if it still points at this connection."""
        with self._lock:
            if self._connections.get(token) is connection:
                del self._connections[token]
                return True
            return False

    def get(self, token: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(token)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)


def _describe(error: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'frame'}: {err['msg']}"
        for err in error.errors()
    )


class Relay:
    def __init__(
        self,
        directory: Directory,
        sessions: SessionManager,
        messages: MessageLog,
        registry: ConnectionRegistry,
        push_timeout: float = 5.0,
    ):
        self._directory = directory
        self._sessions = sessions
        self._messages = messages
        self._registry = registry
        self._push_timeout = push_timeout
        self._frames = {
            "register": (RegisterFrame, self.register),
            "sendMessage": (SendMessageFrame, self.send_message),
        }

    def connect(self, websocket: WebSocket) -> Connection:
        connection = Connection(websocket)
        websocket_connections.inc()
        logger.info("WebSocket connection opened", extra={"connection_id": connection.id})
        return connection

    async def handle_text(self, connection: Connection, raw: str) -> None:
        """Decode one incoming frame and dispatch it, reporting failures as error frames."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_error(connection, "invalid JSON")
            return
        if not isinstance(data, dict):
            await self._send_error(connection, "frame must be a JSON object")
            return

        try:
            await self.handle_frame(connection, data)
        except MessengerError as e:
            logger.warning(f"Frame rejected: {e.message}", extra={"frame_type": data.get("type")})
            await self._send_error(connection, e.message)

    async def handle_frame(self, connection: Connection, data: dict[str, Any]) -> None:
        frame_type = data.get("type")
        if not isinstance(frame_type, str):
            raise ValidationError("frame type must be a string")
        entry = self._frames.get(frame_type)
        if entry is None:
            raise ValidationError(f"unknown frame type: {frame_type}")
        model, handler = entry
        try:
            frame = model.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(_describe(e)) from e
        await handler(connection, frame)

    async def register(self, connection: Connection, frame: RegisterFrame) -> None:
        if connection.state is ConnectionState.CLOSED:
            raise AuthError("connection closed")
        phone_number = self._sessions.resolve(frame.session_id)
        if phone_number is None:
            # The connection keeps whatever state it had.
            raise AuthError("invalid session")

        token = frame.session_id
        if connection.token is not None and connection.token != token:
            self._registry.unbind(connection.token, connection)
        previous = self._registry.bind(token, connection)
        if previous is not None:
            logger.info(
                "Connection replaced for session; previous connection orphaned",
                extra={"phone_number": phone_number, "orphaned_connection_id": previous.id},
            )

        connection.token = token
        connection.phone_number = phone_number
        connection.state = ConnectionState.BOUND
        logger.info("Connection registered", extra={"phone_number": phone_number})
        await self._safe_send(connection, {"type": "registered", "phoneNumber": phone_number})

    async def send_message(self, connection: Connection, frame: SendMessageFrame) -> Message:
        if connection.state is not ConnectionState.BOUND:
            raise AuthError("not authorized")
        if frame.session_id is not None and self._sessions.resolve(frame.session_id) != connection.phone_number:
            raise AuthError("not authorized")

        self._directory.get_or_create(frame.to)
        message = self._messages.append(connection.phone_number, frame.to, frame.text)

        payload = MessageResponse.from_message(message).model_dump(by_alias=True)
        await self._safe_send(connection, {"type": "messageSent", "message": payload})
        await self.deliver(message.recipient, {"type": "newMessage", "message": payload})
        return message

    async def deliver(self, phone_number: str, payload: dict[str, Any]) -> bool:
        """Push a payload to the live connection of an identity, if it has one."""
        token = self._sessions.token_for(phone_number)
        target = self._registry.get(token) if token else None
        if target is None or not target.is_open:
            record_delivery("offline")
            logger.debug("Recipient offline, push skipped", extra={"phone_number": phone_number})
            return False

        delivered = await self._safe_send(target, payload)
        record_delivery("delivered" if delivered else "failed")
        return delivered

    def close(self, connection: Connection) -> None:
        """Move a connection to CLOSED and drop its binding synchronously."""
        if connection.state is ConnectionState.CLOSED:
            return
        if connection.token is not None:
            self._registry.unbind(connection.token, connection)
        connection.state = ConnectionState.CLOSED
        websocket_connections.dec()
        logger.info(
            "WebSocket connection closed",
            extra={"connection_id": connection.id, "phone_number": connection.phone_number},
        )

    async def _send_error(self, connection: Connection, message: str) -> None:
        await self._safe_send(connection, {"type": "error", "message": message})

    async def _safe_send(self, connection: Connection, payload: dict[str, Any]) -> bool:
        if connection.state is ConnectionState.CLOSED:
            return False
        try:
            await asyncio.wait_for(connection.send(payload), timeout=self._push_timeout)
            return True
        except asyncio.TimeoutError:
            # A cancelled send may have left a partial frame on the wire.
            logger.warning("Send timed out, dropping connection", extra={"connection_id": connection.id})
            self.close(connection)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.warning(f"Send failed: {e!r}", extra={"connection_id": connection.id})
        return False
