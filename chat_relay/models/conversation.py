from datetime import datetime
from typing import List, Optional, TypedDict

from bson import ObjectId


class ConversationDocument(TypedDict, total=False):
    _id: ObjectId
    participants: List[str]
    # canonical "<min>:<max>" key of the unordered pair, unique
    participants_key: str
    last_message_preview: Optional[str]
    last_message_sender_id: Optional[str]
    last_message_id: Optional[ObjectId]
    last_message_at: datetime
    unread_count: int
    created_at: datetime
    updated_at: datetime
