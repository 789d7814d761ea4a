"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for login, join, logout
- The chat request variants, a tagged union keyed by `action`
- Response payload models and the {success, data, error} envelope
"""

from datetime import datetime
from typing import Annotated, Any, ClassVar, List, Literal, Optional, Union

from pydantic import BaseModel, Field, StrictBool, TypeAdapter, field_validator

from anonchat.models import CONVERSATION_STATUSES


# =============================================================================
# Envelope
# =============================================================================

class ApiResponse(BaseModel):
    """Envelope shared by every JSON endpoint."""
    success: bool = Field(..., description="Whether the request succeeded")
    data: Optional[Any] = Field(None, description="Payload on success")
    error: Optional[str] = Field(None, description="Error message on failure")


def ok(data: Any) -> ApiResponse:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return ApiResponse(success=True, data=data, error=None)


def fail(message: str) -> dict:
    return {"success": False, "data": None, "error": message}


# =============================================================================
# Auth Request Models
# =============================================================================

class AdminLoginRequest(BaseModel):
    user: str = Field("", max_length=255)
    password: str = Field("", max_length=1024)
    csrf: str = ""

    @field_validator("user")
    @classmethod
    def strip_user(cls, v: str) -> str:
        return v.strip()


class JoinRequest(BaseModel):
    code: Optional[str] = Field(None, max_length=32)
    csrf: str = ""

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().upper()
        return v or None


class LogoutRequest(BaseModel):
    csrf: str = ""


# =============================================================================
# Chat Request Variants
# =============================================================================

# Largest id a signed 64-bit INTEGER column can hold
MAX_ID = 2 ** 63 - 1

# Upper bound on ids per mark_read call
MAX_MARK_READ_IDS = 500

MessageId = Annotated[int, Field(gt=0, le=MAX_ID)]


class ChatAction(BaseModel):
    conversation_id: int = Field(..., gt=0, le=MAX_ID, description="Target conversation")
    csrf: str = ""

    # Admin-only actions override this
    admin_only: ClassVar[bool] = False


class ConversationDetailsAction(ChatAction):
    action: Literal["conversation_details"]


class ListMessagesAction(ChatAction):
    action: Literal["list_messages"]
    after_id: int = Field(0, ge=0, le=MAX_ID, description="Highest message id already seen")


class SendMessageAction(ChatAction):
    action: Literal["send_message"]
    sender: Optional[str] = None
    content: str = ""


class MarkReadAction(ChatAction):
    action: Literal["mark_read"]
    ids: List[MessageId] = Field(default_factory=list, max_length=MAX_MARK_READ_IDS)


class TypingAction(ChatAction):
    action: Literal["typing"]
    typing: StrictBool = False


class AdminSaveReportAction(ChatAction):
    action: Literal["admin_save_report"]
    report: str = ""
    admin_only: ClassVar[bool] = True


class AdminListDeletedAction(ChatAction):
    action: Literal["admin_list_deleted"]
    admin_only: ClassVar[bool] = True


class AdminSetStatusAction(ChatAction):
    action: Literal["admin_set_status"]
    status: str
    admin_only: ClassVar[bool] = True

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in CONVERSATION_STATUSES:
            raise ValueError(f"status must be one of {', '.join(CONVERSATION_STATUSES)}")
        return v


ChatRequest = Annotated[
    Union[
        ConversationDetailsAction,
        ListMessagesAction,
        SendMessageAction,
        MarkReadAction,
        TypingAction,
        AdminSaveReportAction,
        AdminListDeletedAction,
        AdminSetStatusAction,
    ],
    Field(discriminator="action"),
]

chat_request_adapter = TypeAdapter(ChatRequest)


# =============================================================================
# Response Payload Models
# =============================================================================

class MessageOut(BaseModel):
    id: int
    sender: str
    content: str
    file_path: Optional[str] = None
    created_at: datetime
    is_read: bool
    read_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class DeletedMessageOut(BaseModel):
    id: int
    sender: str
    content: str
    created_at: datetime
    deleted_at: datetime

    model_config = {"from_attributes": True}


class ConversationOut(BaseModel):
    id: int
    code: str
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    # Admin-only fields, omitted for participants
    report: Optional[str] = None
    creator_ip: Optional[str] = None

    model_config = {"from_attributes": True}


class MessagesPage(BaseModel):
    messages: List[MessageOut] = Field(default_factory=list)
    mark_read_ids: List[int] = Field(default_factory=list)
    other_typing: bool = False


class CsrfOut(BaseModel):
    csrf: str
    purpose: str


class SessionOut(BaseModel):
    role: Literal["none", "admin", "participant"]
    username: Optional[str] = None
    conversation_id: Optional[int] = None
    code: Optional[str] = None


class JoinOut(BaseModel):
    conversation_id: int
    code: str
    redirect: str


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
