import logging
import os
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chat_relay.database.connection import close_mongo_connection, connect_to_mongo, get_database
from chat_relay.routers.chat import router as chat_router
from chat_relay.routers.chat_socket import ChatNamespace
from chat_relay.routers.conversations import router as conversations_router
from chat_relay.routers.presence import router as presence_router
from chat_relay.services.chat_service import build_chat_service
from chat_relay.utils.errors import ChatError
from chat_relay.utils.presence import PresenceRegistry
from chat_relay.utils.realtime_bus import get_client_manager


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_mongo()
    try:
        yield
    finally:
        await close_mongo_connection()


def create_app() -> FastAPI:
    app = FastAPI(title="Chat relay", lifespan=lifespan)

    app.include_router(chat_router)
    app.include_router(conversations_router)
    app.include_router(presence_router)

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

    @app.get("/")
    async def root():

        db = get_database()
        collections = await db.list_collection_names()
        return {"message": "Connected to MongoDB!", "collections": collections}

    return app


def create_socket_server(presence: PresenceRegistry) -> socketio.AsyncServer:
    origins = os.getenv("CORS_ALLOWED_ORIGINS", "*")
    sio = socketio.AsyncServer(
        async_mode="asgi",
        client_manager=get_client_manager(),
        cors_allowed_origins="*" if origins == "*" else origins.split(","),
    )
    sio.register_namespace(ChatNamespace(lambda: build_chat_service(get_database()), presence))
    return sio


fastapi_app = create_app()
fastapi_app.state.presence = PresenceRegistry()
sio = create_socket_server(fastapi_app.state.presence)
fastapi_app.state.relay = sio.namespace_handlers["/"].relay

app = socketio.ASGIApp(sio, other_asgi_app=fastapi_app)
