from datetime import datetime
from typing import Literal, TypedDict


PushPlatform = Literal["fcm"]


class DeviceDocument(TypedDict, total=False):
    # written by the push-token registration service, read here
    _id: str
    user_id: str
    platform: PushPlatform
    token: str
    last_seen_at: datetime
