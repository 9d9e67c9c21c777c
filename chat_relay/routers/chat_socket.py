import logging
from typing import Callable, Dict, Optional
from urllib.parse import parse_qs

import socketio
from socketio import exceptions

from chat_relay.schemas.chat import MarkReadPayload, NewMessagePayload, SendMessagePayload, parse_payload
from chat_relay.services.chat_service import ChatService
from chat_relay.services.relay import MessageRelay
from chat_relay.utils.errors import AuthenticationError, ChatError
from chat_relay.utils.presence import PresenceRegistry, user_room
from chat_relay.utils.security import decode_access_token


logger = logging.getLogger(__name__)


def _query_token(environ: dict) -> Optional[str]:
    values = parse_qs(environ.get("QUERY_STRING", "")).get("token")
    return values[0] if values else None


class ChatNamespace(socketio.AsyncNamespace):

    # wire event name -> handler
    EVENTS = {
        "sendMessage": "on_send_message",
        "newMessage": "on_new_message",
        "markRead": "on_mark_read",
    }

    def __init__(
        self,
        service_factory: Callable[[], ChatService],
        presence: Optional[PresenceRegistry] = None,
        namespace: str = "/",
    ) -> None:
        super().__init__(namespace)
        self._service_factory = service_factory
        self.presence = presence or PresenceRegistry()
        self.relay = MessageRelay(self, self.presence)
        self.sessions: Dict[str, dict] = {}

    async def trigger_event(self, event, *args):
        handler_name = self.EVENTS.get(event)
        if handler_name is not None:
            return await getattr(self, handler_name)(*args)
        return await super().trigger_event(event, *args)

    async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
        token = (auth or {}).get("token") or _query_token(environ)
        if not token:
            logger.info("Rejected socket %s: no token", sid)
            raise exceptions.ConnectionRefusedError("Authentication error: No token provided")
        try:
            claims = decode_access_token(token)
        except AuthenticationError as exc:
            logger.info("Rejected socket %s: %s", sid, exc.message)
            raise exceptions.ConnectionRefusedError(f"Authentication error: {exc.message}") from exc

        user_id = claims["id"]
        self.sessions[sid] = {"user_id": user_id, "role": claims.get("role")}
        self.presence.register(user_id, sid)
        await self.enter_room(sid, user_room(user_id))
        logger.info("User %s connected via socket %s (%d online)", user_id, sid, len(self.presence))

    async def on_disconnect(self, sid: str, reason=None) -> None:
        session = self.sessions.pop(sid, None)
        if session is None:
            return
        self.presence.unregister(session["user_id"], sid)
        logger.info("User %s disconnected (%s)", session["user_id"], reason or "unknown reason")

    async def on_send_message(self, sid: str, data=None) -> None:
        service = self._service_factory()
        try:
            user_id = self._user_id(sid)
            payload = parse_payload(SendMessagePayload, data)
            delivery = await service.deliver(service.command_from_direct(user_id, payload))
        except ChatError as exc:
            await self._emit_error(sid, exc)
            return
        await self.relay.fan_out(delivery, service, sender_sid=sid)

    async def on_new_message(self, sid: str, data=None) -> None:
        service = self._service_factory()
        try:
            user_id = self._user_id(sid)
            payload = parse_payload(NewMessagePayload, data)
            command = await service.command_from_conversation(user_id, payload)
            delivery = await service.deliver(command)
        except ChatError as exc:
            await self._emit_error(sid, exc)
            return
        await self.relay.fan_out(delivery, service, sender_sid=sid)

    async def on_mark_read(self, sid: str, data=None) -> None:
        # best effort: failures are logged, never sent back
        try:
            self._user_id(sid)
            payload = parse_payload(MarkReadPayload, data)
            await self._service_factory().mark_messages_read(payload.message_ids)
        except ChatError as exc:
            logger.warning("markRead on socket %s failed: %s", sid, exc.message)
            return
        await self.emit("readReceipt", {"messageIds": payload.message_ids}, to=sid)

    def _user_id(self, sid: str) -> str:
        session = self.sessions.get(sid)
        if session is None:
            raise AuthenticationError("Not authenticated")
        return session["user_id"]

    async def _emit_error(self, sid: str, exc: ChatError) -> None:
        logger.debug("Socket %s error: %s", sid, exc.message)
        await self.emit("error", exc.to_payload(), to=sid)
