import logging
from typing import Any, Dict, Optional

from chat_relay.schemas.chat import MessagePublic
from chat_relay.services.chat_service import ChatService, Delivery
from chat_relay.utils.presence import PresenceRegistry, user_room


logger = logging.getLogger(__name__)


class MessageRelay:
    """
    Publishes saved messages to connected clients.

    Every recipient event goes out twice: to the sid the presence registry
    knows about and to the recipient's room. Older clients only listen on one
    of the two paths; clients de-duplicate by message id.
    """

    def __init__(self, emitter, presence: PresenceRegistry) -> None:
        # emitter is a socketio namespace or server exposing emit(event, data, to=...)
        self._emitter = emitter
        self.presence = presence

    async def publish_to_user(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        sid = self.presence.lookup(user_id)
        if sid:
            await self._emitter.emit(event, payload, to=sid)
        await self._emitter.emit(event, payload, to=user_room(user_id))

    async def emit_to_sid(self, sid: str, event: str, payload: Dict[str, Any]) -> None:
        await self._emitter.emit(event, payload, to=sid)

    async def fan_out(self, delivery: Delivery, service: ChatService, sender_sid: Optional[str] = None) -> None:
        message = MessagePublic.from_document(delivery.message).to_wire()
        sender_id = delivery.message["sender_id"]
        receiver_id = delivery.message["receiver_id"]
        envelope = {"conversationId": str(delivery.conversation["_id"]), "message": message}
        sender_view = await service.summary_for(delivery.conversation, sender_id, unread=0)
        receiver_view = await service.summary_for(delivery.conversation, receiver_id, unread=1)

        await self.publish_to_user(receiver_id, "receiveMessage", message)
        await self.publish_to_user(receiver_id, "newMessage", envelope)
        await self.publish_to_user(receiver_id, "conversationUpdated", receiver_view.to_wire())

        for event, payload in (
            ("messageSaved", message),
            ("newMessage", envelope),
            ("conversationUpdated", sender_view.to_wire()),
        ):
            if sender_sid:
                await self.emit_to_sid(sender_sid, event, payload)
            else:
                await self.publish_to_user(sender_id, event, payload)

        if self.presence.lookup(receiver_id) is None:
            logger.debug("Recipient %s not registered, message %s kept for next fetch", receiver_id, message["_id"])
            await service.notify_offline(receiver_id, delivery.message)
