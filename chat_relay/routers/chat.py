from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from chat_relay.database.connection import mongo_db_dependency
from chat_relay.schemas.chat import MarkReadPayload, MessagePublic, PairHistoryQuery, SendMessagePayload, parse_payload
from chat_relay.services.chat_service import ChatService, build_chat_service
from chat_relay.utils.dependencies import get_current_user


router = APIRouter(prefix="/messages", tags=["chat"])


def get_chat_service(db = Depends(mongo_db_dependency)) -> ChatService:
    return build_chat_service(db)


@router.post("", status_code=status.HTTP_201_CREATED)
async def send_message(body: dict, request: Request, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    payload = parse_payload(SendMessagePayload, body)
    delivery = await service.deliver(service.command_from_direct(current_user["_id"], payload))
    relay = getattr(request.app.state, "relay", None)
    if relay is not None:
        await relay.fan_out(delivery, service)
    return {"message": MessagePublic.from_document(delivery.message).to_wire()}


@router.get("/conversation")
async def get_pair_conversation(user1: Optional[str] = None, user2: Optional[str] = None, limit: int = Query(50, ge=1, le=200), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    pair = parse_payload(PairHistoryQuery, {"user1": user1, "user2": user2})
    messages, next_cursor = await service.get_pair_history(current_user["_id"], pair.user1, pair.user2, limit=limit, cursor=cursor)
    return {"items": [MessagePublic.from_document(m).to_wire() for m in messages], "next_cursor": next_cursor}


@router.get("/unread-count")
async def get_unread_count(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    count = await service.unread_count(current_user["_id"])
    return {"count": count}


@router.put("/mark-read")
async def mark_read(body: dict, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    payload = parse_payload(MarkReadPayload, body)
    count = await service.mark_messages_read(payload.message_ids)
    return {"updated": count}
