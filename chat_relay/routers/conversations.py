from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from chat_relay.database.connection import mongo_db_dependency
from chat_relay.schemas.chat import MessagePublic, NewMessagePayload, StartConversationPayload, parse_payload
from chat_relay.services.chat_service import ChatService, build_chat_service
from chat_relay.utils.dependencies import get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


def get_chat_service(db = Depends(mongo_db_dependency)) -> ChatService:
    return build_chat_service(db)


@router.get("")
async def list_conversations(limit: int = Query(20, ge=1, le=100), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    items, next_cursor = await service.list_conversations(current_user["_id"], limit=limit, cursor=cursor)
    return {"items": [item.to_wire() for item in items], "next_cursor": next_cursor}


@router.post("")
async def start_conversation(body: dict, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    payload = parse_payload(StartConversationPayload, body)
    conversation = await service.start_conversation(current_user["_id"], payload.participant_id)
    unread = await service.unread_for(conversation, current_user["_id"])
    summary = await service.summary_for(conversation, current_user["_id"], unread=unread)
    return {"conversation": summary.to_wire()}


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, limit: int = Query(50, ge=1, le=200), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    messages, next_cursor = await service.get_history(conversation_id, current_user["_id"], limit=limit, cursor=cursor)
    return {"items": [MessagePublic.from_document(m).to_wire() for m in messages], "next_cursor": next_cursor}


@router.post("/{conversation_id}/messages")
async def post_message(conversation_id: str, body: dict, request: Request, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    payload = parse_payload(NewMessagePayload, {"conversationId": conversation_id, "text": body.get("text")})
    command = await service.command_from_conversation(current_user["_id"], payload)
    delivery = await service.deliver(command)
    relay = getattr(request.app.state, "relay", None)
    if relay is not None:
        await relay.fan_out(delivery, service)
    return {"message": MessagePublic.from_document(delivery.message).to_wire()}
