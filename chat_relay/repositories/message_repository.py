from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from chat_relay.models.message import MessageDocument
from chat_relay.repositories.pagination import decode_cursor, encode_cursor


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING)])
        await self.collection.create_index([("sender_id", ASCENDING), ("receiver_id", ASCENDING)])
        await self.collection.create_index([("created_at", ASCENDING)])

    async def save_message(
        self,
        message_id: ObjectId,
        conversation_id: ObjectId,
        sender_id: str,
        receiver_id: str,
        content: str,
        attachments: List[str],
        created_at: datetime,
    ) -> MessageDocument:
        doc: MessageDocument = {
            "_id": message_id,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
            "attachments": list(attachments),
            "created_at": created_at,
            "read": False,
            "read_at": None,
        }
        await self.collection.insert_one(doc)
        return doc

    async def get_messages_by_conversation(
        self,
        conversation_id: ObjectId,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[MessageDocument], Optional[str]]:
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        sort = [("created_at", -1), ("_id", -1)]
        if cursor:
            ts, oid = decode_cursor(cursor)
            query["$or"] = [
                {"created_at": {"$lt": ts}},
                {"created_at": ts, "_id": {"$lt": oid}},
            ]
        cur = self.collection.find(query).sort(sort).limit(limit)
        items = await cur.to_list(length=limit)
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            next_cursor = encode_cursor(last["created_at"], last["_id"])
        # newest-first page, returned in chronological order
        return list(reversed(items)), next_cursor

    async def mark_read_by_ids(self, message_ids: Iterable[ObjectId]) -> int:
        ids = list(message_ids)
        if not ids:
            return 0
        result = await self.collection.update_many(
            {"_id": {"$in": ids}},
            {"$set": {"read": True, "read_at": datetime.now(timezone.utc)}},
        )
        return result.modified_count or 0

    async def mark_conversation_read(self, conversation_id: ObjectId, reader_id: str) -> int:
        result = await self.collection.update_many(
            {"conversation_id": conversation_id, "sender_id": {"$ne": reader_id}, "read": False},
            {"$set": {"read": True, "read_at": datetime.now(timezone.utc)}},
        )
        return result.modified_count or 0

    async def count_unread(self, receiver_id: str) -> int:
        return await self.collection.count_documents({"receiver_id": receiver_id, "read": False})

    async def count_unread_in_conversation(self, conversation_id: ObjectId, receiver_id: str) -> int:
        return await self.collection.count_documents(
            {"conversation_id": conversation_id, "receiver_id": receiver_id, "read": False}
        )

    async def latest_in_conversation(self, conversation_id: ObjectId) -> Optional[MessageDocument]:
        return await self.collection.find_one(
            {"conversation_id": conversation_id},
            sort=[("created_at", -1), ("_id", -1)],
        )
