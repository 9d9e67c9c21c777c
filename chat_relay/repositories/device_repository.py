from typing import Any, Dict, List

from motor.motor_asyncio import AsyncIOMotorDatabase

from chat_relay.models.device import DeviceDocument


class DeviceRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["devices"]

    async def get_tokens(self, user_id: str, platform: str | None = None) -> List[DeviceDocument]:
        query: Dict[str, Any] = {"user_id": user_id}
        if platform:
            query["platform"] = platform
        cur = self.collection.find(query)
        items = await cur.to_list(length=100)
        return items
