"""
Request, response and record models for the Thread Relay API.

Wire field names follow the chat client's camelCase conventions; the
client also sends the legacy ``user_Id`` / ``thread_Id`` spellings, which
are accepted everywhere an id is read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_core import PydanticCustomError

from threadrelay.core.constants import AUTHOR_ASSISTANT, AUTHORS, ID_PATTERN, get_settings

_USER_ID = AliasChoices("userId", "user_Id", "user_id")
_THREAD_ID = AliasChoices("threadId", "thread_Id", "thread_id")
_IMAGE_URL = AliasChoices("imageUrl", "image_url")


def _check_id(value: str | None, field_name: str) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if not ID_PATTERN.fullmatch(value):
        raise PydanticCustomError("INVALID_ID_FORMAT", "{field} has an invalid format", {"field": field_name})
    return value


def _check_message(value: str) -> str:
    text = value.strip()
    if not text:
        raise PydanticCustomError("FIELD_REQUIRED", "message is required", {"field": "message"})
    limit = get_settings().max_message_length
    if len(text) > limit:
        raise PydanticCustomError("MESSAGE_TOO_LONG", "message exceeds {max} characters", {"max": limit})
    return text


class _RelayRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: str
    image_url: str | None = Field(default=None, validation_alias=_IMAGE_URL)
    language: str | None = None

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str) -> str:
        return _check_message(v)

    @field_validator("image_url")
    @classmethod
    def blank_image_is_none(cls, v: str | None) -> str | None:
        return v.strip() or None if v else None


class CreateThreadRequest(_RelayRequest):
    """Start a conversation. A missing user id makes the caller a guest."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"user_Id": "user_12345", "message": "Hello!", "language": "en"},
        }
    )

    user_id: str | None = Field(default=None, validation_alias=_USER_ID)


class AddMessageRequest(_RelayRequest):
    """Send a follow-up message. ``threadId`` falls back to the user's live conversation."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"userId": "user_12345", "threadId": "thread_abc123", "message": "And then?"},
        }
    )

    user_id: str = Field(validation_alias=_USER_ID)
    thread_id: str | None = Field(default=None, validation_alias=_THREAD_ID)

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str | None:
        return _check_id(v, "userId")

    @field_validator("thread_id")
    @classmethod
    def validate_thread_id(cls, v: str | None) -> str | None:
        return _check_id(v, "threadId")


class FetchMessagesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: str = Field(validation_alias=_USER_ID)
    thread_id: str = Field(validation_alias=_THREAD_ID)

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str | None:
        return _check_id(v, "userId")

    @field_validator("thread_id")
    @classmethod
    def validate_thread_id(cls, v: str) -> str | None:
        return _check_id(v, "threadId")


# =============================================================================
# Internal records
# =============================================================================


@dataclass
class BufferedItem:
    """A message waiting in a batch buffer. ``received_at_ms`` is stamped on enqueue."""

    author: str = AUTHOR_ASSISTANT
    content: str = ""
    image_url: str | None = None
    received_at_ms: int | None = None

    def __post_init__(self) -> None:
        if self.author not in AUTHORS:
            raise ValueError(f"Unknown author: {self.author}")


@dataclass
class MessageRecord:
    """One persisted message, as stored under (conversation_id, seq_id)."""

    conversation_id: str
    seq_id: int
    author: str
    content: str
    image_url: str | None
    created_at: str
    received_at: int

    def to_wire(self) -> dict[str, Any]:
        return {
            "seqId": self.seq_id,
            "author": self.author,
            "content": {"text": self.content, "imageUrl": self.image_url},
            "createdAt": self.created_at,
            "receivedAt": self.received_at,
        }


@dataclass
class ConversationHandle:
    conversation_id: str
    user_id: str
    is_guest: bool = False
    degraded: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Responses
# =============================================================================


class MessageView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    seq_id: int = Field(alias="seqId")
    author: str
    content: dict[str, str | None]
    created_at: str = Field(alias="createdAt")
    received_at: int = Field(alias="receivedAt")


class MessageListResponse(BaseModel):
    """Full message history of one conversation, ordered by sequence."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "messages": [
                    {
                        "seqId": 1,
                        "author": "user",
                        "content": {"text": "Hello!", "imageUrl": None},
                        "createdAt": "15/01/2025 01:30 PM",
                        "receivedAt": 1736937000000,
                    },
                    {
                        "seqId": 2,
                        "author": "assistant",
                        "content": {"text": "Hi", "imageUrl": None},
                        "createdAt": "15/01/2025 01:30 PM",
                        "receivedAt": 1736937000412,
                    },
                ],
                "degraded": False,
            }
        }
    )

    messages: list[MessageView]
    degraded: bool = False


class UploadImageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    key: str
    request_id: str | None = Field(default=None, serialization_alias="requestId")
