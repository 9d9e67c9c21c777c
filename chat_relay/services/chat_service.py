import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.errors import PyMongoError

from chat_relay.repositories.conversation_repository import ConversationRepository
from chat_relay.repositories.device_repository import DeviceRepository
from chat_relay.repositories.message_repository import MessageRepository
from chat_relay.repositories.user_repository import UserRepository
from chat_relay.schemas.chat import (
    ConversationSummary,
    NewMessagePayload,
    SendMessagePayload,
    make_preview,
)
from chat_relay.utils.errors import NotFoundError, StoreError, ValidationError
from chat_relay.utils.notifications import get_push


logger = logging.getLogger(__name__)

UNKNOWN_PARTNER = "Unknown"


@dataclass(frozen=True)
class DeliverMessage:
    """Dialect-independent send command."""

    sender_id: str
    receiver_id: str
    content: str = ""
    attachments: Tuple[str, ...] = field(default_factory=tuple)
    conversation_id: Optional[ObjectId] = None


@dataclass(frozen=True)
class Delivery:

    message: Dict[str, Any]
    conversation: Dict[str, Any]


def counterpart_of(conversation: Dict[str, Any], user_id: str) -> Optional[str]:
    for participant in conversation.get("participants", []):
        if str(participant) != user_id:
            return str(participant)
    return None


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        user_repo: Optional[UserRepository] = None,
        device_repo: Optional[DeviceRepository] = None,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._device_repo = device_repo

    def command_from_direct(self, sender_id: str, payload: SendMessagePayload) -> DeliverMessage:
        return DeliverMessage(
            sender_id=sender_id,
            receiver_id=payload.receiver_id,
            content=payload.content,
            attachments=tuple(payload.attachments),
        )

    async def command_from_conversation(self, sender_id: str, payload: NewMessagePayload) -> DeliverMessage:
        conversation = await self._get_participant_conversation(ObjectId(payload.conversation_id), sender_id)
        recipient = counterpart_of(conversation, sender_id)
        if recipient is None:
            raise ValidationError("Recipient not found in conversation")
        return DeliverMessage(
            sender_id=sender_id,
            receiver_id=recipient,
            content=payload.text,
            conversation_id=conversation["_id"],
        )

    async def deliver(self, command: DeliverMessage) -> Delivery:
        """
        Persist one message and bring its conversation up to date.

        The conversation is resolved first (by id, or by an atomic upsert on
        the unordered pair) so the message is never stored without its
        conversation_id. Both dialects increment unread_count.
        """
        if not command.content and not command.attachments:
            raise ValidationError("receiver and either content or attachments is required")
        if command.sender_id == command.receiver_id:
            raise ValidationError("Cannot send a message to yourself")

        sent_at = datetime.now(timezone.utc)
        message_id = ObjectId()
        preview = make_preview(command.content, list(command.attachments))
        try:
            if command.conversation_id is None:
                conversation = await self._conversation_repo.upsert_on_new_message(
                    command.sender_id, command.receiver_id, message_id, preview, sent_at
                )
            else:
                conversation = await self._conversation_repo.update_on_new_message(
                    command.conversation_id, command.sender_id, message_id, preview, sent_at
                )
                if conversation is None:
                    raise NotFoundError("Conversation not found")
        except PyMongoError as exc:
            logger.exception("Failed to update conversation for message from %s to %s", command.sender_id, command.receiver_id)
            raise StoreError("Failed to send message") from exc

        try:
            message = await self._message_repo.save_message(
                message_id=message_id,
                conversation_id=conversation["_id"],
                sender_id=command.sender_id,
                receiver_id=command.receiver_id,
                content=command.content,
                attachments=list(command.attachments),
                created_at=sent_at,
            )
        except PyMongoError as exc:
            logger.exception("Failed to persist message from %s to %s", command.sender_id, command.receiver_id)
            await self._revert_conversation(conversation["_id"], message_id)
            raise StoreError("Failed to send message") from exc

        logger.debug("Message %s saved in conversation %s", message_id, conversation["_id"])
        return Delivery(message=message, conversation=conversation)

    async def start_conversation(self, user_id: str, participant_id: str) -> Dict[str, Any]:
        if user_id == participant_id:
            raise ValidationError("Cannot start a conversation with yourself")
        try:
            return await self._conversation_repo.get_or_create_one_to_one(user_id, participant_id)
        except PyMongoError as exc:
            raise StoreError("Failed to start conversation") from exc

    async def get_history(self, conversation_id: str, reader_id: str, limit: int = 50, cursor: Optional[str] = None):
        """
        Fetch a page of history. Fetching counts as reading: every message in
        the conversation not sent by the reader is marked read and the
        conversation's unread counter goes back to zero.
        """
        if not ObjectId.is_valid(conversation_id):
            raise NotFoundError("Conversation not found or you are not a participant")
        conversation = await self._get_participant_conversation(ObjectId(conversation_id), reader_id)
        try:
            await self._message_repo.mark_conversation_read(conversation["_id"], reader_id)
            await self._conversation_repo.reset_unread(conversation["_id"])
            return await self._message_repo.get_messages_by_conversation(conversation["_id"], limit=limit, cursor=cursor)
        except PyMongoError as exc:
            raise StoreError("Failed to fetch messages") from exc

    async def get_pair_history(self, viewer_id: str, user_a: str, user_b: str, limit: int = 50, cursor: Optional[str] = None):
        # read-only view keyed by the pair; does not mark anything read
        if viewer_id not in (user_a, user_b):
            raise NotFoundError("Conversation not found or you are not a participant")
        try:
            conversation = await self._conversation_repo.find_for_pair(user_a, user_b)
            if conversation is None:
                return [], None
            return await self._message_repo.get_messages_by_conversation(conversation["_id"], limit=limit, cursor=cursor)
        except PyMongoError as exc:
            raise StoreError("Failed to fetch messages") from exc

    async def mark_messages_read(self, message_ids: List[str]) -> int:
        oids = [ObjectId(mid) for mid in message_ids if ObjectId.is_valid(mid)]
        try:
            return await self._message_repo.mark_read_by_ids(oids)
        except PyMongoError as exc:
            raise StoreError("Failed to mark messages read") from exc

    async def unread_count(self, user_id: str) -> int:
        try:
            return await self._message_repo.count_unread(user_id)
        except PyMongoError as exc:
            raise StoreError("Failed to count unread messages") from exc

    async def list_conversations(self, user_id: str, limit: int = 20, cursor: Optional[str] = None):
        try:
            items, next_cursor = await self._conversation_repo.list_for_user(user_id, limit=limit, cursor=cursor)
        except PyMongoError as exc:
            raise StoreError("Failed to fetch conversations") from exc
        summaries = []
        for conversation in items:
            unread = await self.unread_for(conversation, user_id)
            summaries.append(await self.summary_for(conversation, user_id, unread))
        return summaries, next_cursor

    async def unread_for(self, conversation: Dict[str, Any], viewer_id: str) -> int:
        """Messages in the conversation addressed to the viewer and not yet read."""
        try:
            return await self._message_repo.count_unread_in_conversation(conversation["_id"], viewer_id)
        except PyMongoError:
            logger.warning("Could not count unread messages for %s, using stored counter", viewer_id, exc_info=True)
            return conversation.get("unread_count", 0)

    async def summary_for(self, conversation: Dict[str, Any], viewer_id: str, unread: int) -> ConversationSummary:
        partner_id = counterpart_of(conversation, viewer_id)
        partner = await self._partner_profile(partner_id)
        return ConversationSummary(
            conversation_id=str(conversation["_id"]),
            user_id=partner_id,
            partner_name=(partner or {}).get("full_name") or UNKNOWN_PARTNER,
            partner_picture=(partner or {}).get("profile_picture") or "",
            last_message=conversation.get("last_message_preview"),
            last_message_sender_id=conversation.get("last_message_sender_id"),
            timestamp=conversation.get("last_message_at"),
            unread=unread,
        )

    async def notify_offline(self, receiver_id: str, message: Dict[str, Any]) -> None:
        push = get_push()
        if not getattr(push, "enabled", False) or self._device_repo is None:
            return
        try:
            tokens = await self._device_repo.get_tokens(receiver_id, platform="fcm")
            if not tokens:
                return
            body = make_preview(message.get("content", ""), message.get("attachments", []))
            await push.send_fcm(
                [t["token"] for t in tokens],
                title="New message",
                body=body[:100],
                data={
                    "conversationId": str(message["conversation_id"]),
                    "messageId": str(message["_id"]),
                    "from": message["sender_id"],
                },
            )
        except Exception:
            logger.exception("Push notification to %s failed", receiver_id)

    async def _get_participant_conversation(self, conversation_id: ObjectId, user_id: str) -> Dict[str, Any]:
        try:
            conversation = await self._conversation_repo.get_by_id(conversation_id)
        except PyMongoError as exc:
            raise StoreError("Failed to load conversation") from exc
        if not conversation or user_id not in [str(p) for p in conversation.get("participants", [])]:
            raise NotFoundError("Conversation not found or you are not a participant")
        return conversation

    async def _revert_conversation(self, conversation_id: ObjectId, message_id: ObjectId) -> None:
        try:
            previous = await self._message_repo.latest_in_conversation(conversation_id)
            preview = None
            if previous is not None:
                preview = make_preview(previous.get("content", ""), previous.get("attachments", []))
            await self._conversation_repo.revert_new_message(conversation_id, message_id, previous, preview)
        except PyMongoError:
            logger.exception("Conversation %s still points at unsaved message %s", conversation_id, message_id)

    async def _partner_profile(self, partner_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if partner_id is None or self._user_repo is None:
            return None
        try:
            return await self._user_repo.get_user_by_id(partner_id)
        except PyMongoError:
            logger.warning("Could not load profile for %s, using placeholder", partner_id, exc_info=True)
            return None


def build_chat_service(db) -> ChatService:
    return ChatService(
        MessageRepository(db),
        ConversationRepository(db),
        user_repo=UserRepository(db),
        device_repo=DeviceRepository(db),
    )
