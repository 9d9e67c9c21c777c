from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from chat_relay.models.conversation import ConversationDocument
from chat_relay.models.message import MessageDocument
from chat_relay.repositories.pagination import decode_cursor, encode_cursor


def pair_key(user_a: str, user_b: str) -> str:
    """Canonical key of an unordered pair; order and duplicates do not matter."""
    return ":".join(sorted({user_a, user_b}))


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("last_message_at", DESCENDING)])
        await self.collection.create_index([("participants_key", ASCENDING)], unique=True)

    async def get_by_id(self, conversation_id: ObjectId) -> Optional[ConversationDocument]:
        return await self.collection.find_one({"_id": conversation_id})

    async def find_for_pair(self, user_a: str, user_b: str) -> Optional[ConversationDocument]:
        return await self.collection.find_one({"participants_key": pair_key(user_a, user_b)})

    async def get_or_create_one_to_one(self, user_a: str, user_b: str) -> ConversationDocument:
        now = datetime.now(timezone.utc)
        return await self._upsert_pair(
            user_a,
            user_b,
            {
                "$setOnInsert": {
                    "participants": sorted([user_a, user_b]),
                    "last_message_preview": None,
                    "last_message_sender_id": None,
                    "last_message_id": None,
                    "last_message_at": now,
                    "unread_count": 0,
                    "created_at": now,
                    "updated_at": now,
                }
            },
        )

    async def upsert_on_new_message(
        self,
        sender_id: str,
        receiver_id: str,
        message_id: ObjectId,
        preview: str,
        sent_at: datetime,
    ) -> ConversationDocument:
        return await self._upsert_pair(
            sender_id,
            receiver_id,
            {
                "$set": self._last_message_fields(sender_id, message_id, preview, sent_at),
                "$inc": {"unread_count": 1},
                "$setOnInsert": {
                    "participants": sorted([sender_id, receiver_id]),
                    "created_at": sent_at,
                },
            },
        )

    async def update_on_new_message(
        self,
        conversation_id: ObjectId,
        sender_id: str,
        message_id: ObjectId,
        preview: str,
        sent_at: datetime,
    ) -> Optional[ConversationDocument]:
        return await self.collection.find_one_and_update(
            {"_id": conversation_id},
            {
                "$set": self._last_message_fields(sender_id, message_id, preview, sent_at),
                "$inc": {"unread_count": 1},
            },
            return_document=ReturnDocument.AFTER,
        )

    async def reset_unread(self, conversation_id: ObjectId) -> None:
        await self.collection.update_one(
            {"_id": conversation_id},
            {"$set": {"unread_count": 0}},
        )

    async def revert_new_message(
        self,
        conversation_id: ObjectId,
        message_id: ObjectId,
        previous: Optional[MessageDocument],
        preview: Optional[str],
    ) -> None:
        """Undo the summary update of a message whose insert failed."""
        if previous is None:
            fields: Dict[str, Any] = {
                "last_message_preview": None,
                "last_message_sender_id": None,
                "last_message_id": None,
            }
        else:
            fields = self._last_message_fields(previous["sender_id"], previous["_id"], preview, previous["created_at"])
        # a newer message may already own the summary
        await self.collection.update_one(
            {"_id": conversation_id, "last_message_id": message_id},
            {"$set": fields},
        )
        await self.collection.update_one(
            {"_id": conversation_id, "unread_count": {"$gt": 0}},
            {"$inc": {"unread_count": -1}},
        )

    async def list_for_user(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[ConversationDocument], Optional[str]]:
        query: Dict[str, Any] = {"participants": user_id}
        sort = [("last_message_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            ts, oid = decode_cursor(cursor)
            query["$or"] = [
                {"last_message_at": {"$lt": ts}},
                {"last_message_at": ts, "_id": {"$lt": oid}},
            ]

        cursor_db = self.collection.find(query).sort(sort).limit(limit)
        items = await cursor_db.to_list(length=limit)
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            next_cursor = encode_cursor(last["last_message_at"], last["_id"])
        return items, next_cursor

    async def _upsert_pair(self, user_a: str, user_b: str, update: Dict[str, Any]) -> ConversationDocument:
        # Matching on the unique pair key makes find-or-insert a single atomic
        # operation. Two racing upserts can both miss and try to insert; the
        # loser gets DuplicateKeyError and the document now exists.
        query = {"participants_key": pair_key(user_a, user_b)}
        try:
            return await self.collection.find_one_and_update(
                query, update, upsert=True, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            return await self.collection.find_one_and_update(
                query, update, return_document=ReturnDocument.AFTER
            )

    @staticmethod
    def _last_message_fields(sender_id: str, message_id: ObjectId, preview: str, sent_at: datetime) -> Dict[str, Any]:
        return {
            "last_message_preview": preview,
            "last_message_sender_id": sender_id,
            "last_message_id": message_id,
            "last_message_at": sent_at,
            "updated_at": sent_at,
        }
