from datetime import datetime
from typing import List, Optional, TypedDict

from bson import ObjectId


class MessageDocument(TypedDict, total=False):
    _id: ObjectId
    conversation_id: ObjectId
    sender_id: str
    receiver_id: str
    content: str
    attachments: List[str]
    created_at: datetime
    # read state
    read: bool
    read_at: Optional[datetime]
