from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from chat_relay.models.user import UserDocument


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:
        # users created by the account service carry ObjectId keys, seeded ones may not
        key = ObjectId(user_id) if ObjectId.is_valid(user_id) else user_id
        user = await self._collection.find_one({"_id": key}, {"full_name": 1, "profile_picture": 1, "user_type": 1})
        if user:
            user["_id"] = str(user["_id"])  # normalize to string for API layer
        return user
