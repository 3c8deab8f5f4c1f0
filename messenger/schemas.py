"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the HTTP auth routes
- Frame models for the WebSocket protocol
- Response models for API responses and outgoing frames

Wire names are camelCase (phoneNumber, sessionId, isOwn); Python attributes
are snake_case.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from messenger.directory import DirectoryEntry, Identity
from messenger.message_log import Message


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Pydantic Request Models
# =============================================================================

class CheckPhoneRequest(WireModel):
    phone_number: str = Field(..., min_length=1, description="Phone number to verify")


class VerifyCodeRequest(WireModel):
    phone_number: str = Field(..., min_length=1, description="Phone number being verified")
    code: str = Field(..., min_length=1, description="One-time code from the challenge")


class SetUsernameRequest(WireModel):
    """
    Claim a username for the session's identity.

    sessionId is optional at the schema level so a missing token is reported
    as an authorization failure rather than a validation error.
    """
    session_id: Optional[str] = Field(None, description="Session token")
    username: str = Field(..., min_length=1, max_length=64, description="Desired username")


# =============================================================================
# WebSocket Frame Models
# =============================================================================

class RegisterFrame(WireModel):
    type: Literal["register"]
    session_id: Optional[str] = None


class SendMessageFrame(WireModel):
    type: Literal["sendMessage"]
    session_id: Optional[str] = None
    to: str = Field(..., min_length=1, description="Recipient phone number")
    text: str = Field(..., max_length=4096, description="Message text content")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
    timestamp: Optional[str] = Field(None, description="Server time")


class MessageResponse(WireModel):
    """A stored message as sent over the wire."""
    id: str
    from_number: str = Field(..., alias="from", description="Sender phone number")
    to: str = Field(..., description="Recipient phone number")
    text: str
    timestamp: str

    @classmethod
    def from_message(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            from_number=message.sender,
            to=message.recipient,
            text=message.text,
            timestamp=message.timestamp,
        )


class LastMessageResponse(WireModel):
    """Preview of the latest message in a conversation, relative to the viewer."""
    text: str
    timestamp: str
    is_own: bool

    @classmethod
    def for_viewer(cls, message: Optional[Message], viewer: str) -> Optional["LastMessageResponse"]:
        if message is None:
            return None
        return cls(text=message.text, timestamp=message.timestamp, is_own=message.is_own(viewer))


class CheckPhoneResponse(WireModel):
    registered: bool = True
    is_new: bool = Field(..., description="True until the identity has a username")
    message: str


class VerifyCodeResponse(WireModel):
    success: bool = True
    session_id: str
    phone_number: str
    username: Optional[str] = None
    message: str


class SetUsernameResponse(WireModel):
    success: bool = True
    username: str


class UserResponse(WireModel):
    phone_number: str
    username: Optional[str] = None
    last_message: Optional[LastMessageResponse] = None

    @classmethod
    def from_identity(cls, identity: Identity, last_message: Optional[LastMessageResponse]) -> "UserResponse":
        return cls(
            phone_number=identity.phone_number,
            username=identity.username,
            last_message=last_message,
        )


class UsersListResponse(WireModel):
    users: list[UserResponse] = Field(default_factory=list)


class SearchResultResponse(WireModel):
    phone_number: str
    username: Optional[str] = None
    exists: bool
    is_new_contact: bool = False
    last_message: Optional[LastMessageResponse] = None

    @classmethod
    def from_entry(cls, entry: DirectoryEntry, last_message: Optional[LastMessageResponse]) -> "SearchResultResponse":
        return cls(
            phone_number=entry.phone_number,
            username=entry.username,
            exists=entry.exists,
            is_new_contact=entry.is_new_contact,
            last_message=last_message,
        )


class SearchResponse(WireModel):
    users: list[SearchResultResponse] = Field(default_factory=list)


class ChatResponse(WireModel):
    phone_number: str
    username: Optional[str] = None
    last_message: Optional[LastMessageResponse] = None


class ChatsListResponse(WireModel):
    chats: list[ChatResponse] = Field(default_factory=list)


class MessagesListResponse(WireModel):
    messages: list[MessageResponse] = Field(default_factory=list)


class SessionDebugResponse(WireModel):
    session_id: Optional[str] = None
    valid: bool
    user_phone: Optional[str] = None
    total_sessions: int


class ServiceInfoResponse(WireModel):
    message: str
    version: str
    endpoints: list[str]
