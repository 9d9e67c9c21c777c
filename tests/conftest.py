import uuid
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
import socketio
from mongomock_motor import AsyncMongoMockClient

from chat_relay.repositories.conversation_repository import ConversationRepository
from chat_relay.repositories.message_repository import MessageRepository
from chat_relay.routers.chat_socket import ChatNamespace
from chat_relay.services.chat_service import build_chat_service
from chat_relay.utils.presence import PresenceRegistry
from chat_relay.utils.security import create_access_token


@pytest_asyncio.fixture
async def db():
    client = AsyncMongoMockClient(tz_aware=True)
    database = client[f"chat_relay_{uuid.uuid4().hex}"]
    await ConversationRepository(database).ensure_indexes()
    await MessageRepository(database).ensure_indexes()
    return database


@pytest.fixture
def service(db):
    return build_chat_service(db)


@pytest.fixture
def namespace(db):
    server = socketio.AsyncServer(async_mode="asgi")
    ns = ChatNamespace(lambda: build_chat_service(db), PresenceRegistry())
    server.register_namespace(ns)
    ns.emit = AsyncMock()
    ns.enter_room = AsyncMock()
    ns.leave_room = AsyncMock()
    return ns


@pytest.fixture
def token_for():
    def _make(user_id: str) -> str:
        return create_access_token(user_id)
    return _make


def emitted(ns):
    """(event, payload, target) for every emit the namespace made."""
    return [(c.args[0], c.args[1], c.kwargs.get("to")) for c in ns.emit.await_args_list]
