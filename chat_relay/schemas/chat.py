from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from bson import ObjectId
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from chat_relay.utils.errors import ValidationError


USER_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"
ATTACHMENT_PREVIEW = "📎 Attachment"
PREVIEW_MAX_LENGTH = 200

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def parse_payload(model: Type[PayloadT], data: Any) -> PayloadT:
    """Validate an inbound event/body, raising the app ValidationError on failure."""
    if not isinstance(data, dict):
        raise ValidationError("Payload must be an object")
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "payload"
        raise ValidationError(f"{field}: {first.get('msg')}") from exc


class SendMessagePayload(BaseModel):
    """Direct-send dialect: {receiverId, content?, attachments?}."""

    model_config = ConfigDict(populate_by_name=True)

    receiver_id: str = Field(validation_alias=AliasChoices("receiverId", "receiver", "receiver_id"), pattern=USER_ID_PATTERN)
    content: str = ""
    attachments: List[str] = Field(default_factory=list)

    @field_validator("content", mode="before")
    @classmethod
    def _none_content(cls, value):
        return "" if value is None else value

    @field_validator("attachments", mode="before")
    @classmethod
    def _none_attachments(cls, value):
        return [] if value is None else value

    @field_validator("attachments")
    @classmethod
    def _non_blank_attachments(cls, value: List[str]) -> List[str]:
        value = [uri.strip() for uri in value]
        if any(not uri for uri in value):
            raise ValueError("attachments must not contain empty entries")
        return value

    @model_validator(mode="after")
    def _content_or_attachments(self):
        self.content = self.content.strip()
        if not self.content and not self.attachments:
            raise ValueError("receiver and either content or attachments is required")
        return self


class NewMessagePayload(BaseModel):
    """Conversation-centric dialect: {conversationId, text}."""

    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(validation_alias=AliasChoices("conversationId", "conversation_id"))
    text: str

    @field_validator("conversation_id")
    @classmethod
    def _object_id(cls, value: str) -> str:
        if not ObjectId.is_valid(value):
            raise ValueError("Invalid conversation ID format")
        return value

    @field_validator("text")
    @classmethod
    def _non_empty_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Conversation ID and text are required")
        return value


class MarkReadPayload(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    message_ids: List[str] = Field(validation_alias=AliasChoices("messageIds", "message_ids"), min_length=1)


class PairHistoryQuery(BaseModel):

    user1: str = Field(pattern=USER_ID_PATTERN)
    user2: str = Field(pattern=USER_ID_PATTERN)


class StartConversationPayload(BaseModel):

    model_config = ConfigDict(populate_by_name=True)

    participant_id: str = Field(validation_alias=AliasChoices("participantId", "participant_id"), pattern=USER_ID_PATTERN)


def make_preview(content: str, attachments: List[str]) -> str:
    if content:
        return content[:PREVIEW_MAX_LENGTH]
    return ATTACHMENT_PREVIEW if attachments else ""


class MessagePublic(BaseModel):
    """
    Wire shape of a Message.

    Carries the legacy mobile keys (sender, receiver, timestamp) and the web
    key (text) next to the canonical ones so both client generations can
    render it.
    """

    id: str = Field(serialization_alias="_id")
    conversation_id: Optional[str] = Field(default=None, serialization_alias="conversationId")
    sender_id: str = Field(serialization_alias="senderId")
    receiver_id: str = Field(serialization_alias="receiverId")
    content: str = ""
    attachments: List[str] = Field(default_factory=list)
    created_at: datetime = Field(serialization_alias="createdAt")
    read: bool = False
    read_at: Optional[datetime] = Field(default=None, serialization_alias="readAt")

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "MessagePublic":
        conversation_id = doc.get("conversation_id")
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(conversation_id) if conversation_id is not None else None,
            sender_id=doc["sender_id"],
            receiver_id=doc["receiver_id"],
            content=doc.get("content", ""),
            attachments=doc.get("attachments", []),
            created_at=doc["created_at"],
            read=doc.get("read", False),
            read_at=doc.get("read_at"),
        )

    def to_wire(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", by_alias=True)
        data["sender"] = data["senderId"]
        data["receiver"] = data["receiverId"]
        data["text"] = data["content"]
        data["timestamp"] = data["createdAt"]
        return data


class ConversationSummary(BaseModel):
    """Inbox row as seen by one participant."""

    conversation_id: str = Field(serialization_alias="conversationId")
    user_id: Optional[str] = Field(default=None, serialization_alias="userId")
    partner_name: str = Field(default="Unknown", serialization_alias="partnerName")
    partner_picture: str = Field(default="", serialization_alias="partnerPicture")
    last_message: Optional[str] = Field(default=None, serialization_alias="lastMessage")
    last_message_sender_id: Optional[str] = Field(default=None, serialization_alias="lastMessageSenderId")
    timestamp: Optional[datetime] = None
    unread: int = 0

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
