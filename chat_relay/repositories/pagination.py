from datetime import datetime, timezone
from typing import Tuple

from bson import ObjectId
from bson.errors import InvalidId

from chat_relay.utils.errors import ValidationError


# cursor format: <timestamp_ms>:<object_id_hex>


def encode_cursor(ts: datetime, oid: ObjectId) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return f"{int(ts.timestamp() * 1000)}:{oid}"


def decode_cursor(cursor: str) -> Tuple[datetime, ObjectId]:
    try:
        ts_str, oid_hex = cursor.split(":", 1)
        ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
        return ts, ObjectId(oid_hex)
    except (ValueError, InvalidId) as exc:
        raise ValidationError(f"Invalid cursor: {cursor}") from exc
