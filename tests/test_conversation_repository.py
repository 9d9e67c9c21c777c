from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from chat_relay.repositories.conversation_repository import ConversationRepository, pair_key
from chat_relay.utils.errors import ValidationError


def test_pair_key_ignores_order_and_duplicates():
    assert pair_key("b", "a") == pair_key("a", "b") == "a:b"
    assert pair_key("a", "a") == "a"


class _RacingCollection:
    """Lets a competing writer insert the pair right before our upsert lands."""

    def __init__(self, real) -> None:
        self._real = real
        self.raced = False

    def __getattr__(self, name):
        return getattr(self._real, name)

    async def find_one_and_update(self, query, update, **kwargs):
        if kwargs.get("upsert") and not self.raced:
            self.raced = True
            await self._real.find_one_and_update(query, update, **kwargs)
            raise DuplicateKeyError("E11000 duplicate key error collection: conversations")
        return await self._real.find_one_and_update(query, update, **kwargs)


class _RacingRepository(ConversationRepository):

    def __init__(self, db) -> None:
        super().__init__(db)
        self._racing = _RacingCollection(db["conversations"])

    @property
    def collection(self):
        return self._racing


@pytest.mark.asyncio
async def test_get_or_create_is_idempotent(db):
    repo = ConversationRepository(db)

    first = await repo.get_or_create_one_to_one("u2", "u1")
    second = await repo.get_or_create_one_to_one("u1", "u2")

    assert first["_id"] == second["_id"]
    assert first["participants"] == ["u1", "u2"]
    assert first["unread_count"] == 0
    assert await db["conversations"].count_documents({}) == 1


@pytest.mark.asyncio
async def test_unique_pair_key_rejects_second_document(db):
    await db["conversations"].insert_one({"participants": ["a", "b"], "participants_key": "a:b"})

    with pytest.raises(DuplicateKeyError):
        await db["conversations"].insert_one({"participants": ["b", "a"], "participants_key": "a:b"})


@pytest.mark.asyncio
async def test_upsert_that_loses_the_race_updates_the_winner(db):
    repo = _RacingRepository(db)
    sent_at = datetime.now(timezone.utc)

    convo = await repo.upsert_on_new_message("a", "b", ObjectId(), "hello", sent_at)

    assert repo.collection.raced
    assert await db["conversations"].count_documents({}) == 1
    # both the competing write and ours were applied
    assert convo["unread_count"] == 2
    assert convo["last_message_preview"] == "hello"


@pytest.mark.asyncio
async def test_update_on_new_message_for_missing_conversation(db):
    repo = ConversationRepository(db)

    result = await repo.update_on_new_message(ObjectId(), "a", ObjectId(), "x", datetime.now(timezone.utc))

    assert result is None
    assert await db["conversations"].count_documents({}) == 0


@pytest.mark.asyncio
async def test_reset_unread(db):
    repo = ConversationRepository(db)
    convo = await repo.upsert_on_new_message("a", "b", ObjectId(), "hi", datetime.now(timezone.utc))

    await repo.reset_unread(convo["_id"])

    assert (await repo.get_by_id(convo["_id"]))["unread_count"] == 0
    assert (await repo.find_for_pair("b", "a"))["_id"] == convo["_id"]


@pytest.mark.asyncio
async def test_list_for_user_pages_newest_first(db):
    repo = ConversationRepository(db)
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for i, partner in enumerate(["p0", "p1", "p2"]):
        await repo.upsert_on_new_message(partner, "me", ObjectId(), f"m{i}", base + timedelta(minutes=i))
    await repo.upsert_on_new_message("x", "y", ObjectId(), "other", base)

    page, cursor = await repo.list_for_user("me", limit=2)
    assert [c["last_message_preview"] for c in page] == ["m2", "m1"]
    assert cursor is not None

    rest, cursor = await repo.list_for_user("me", limit=2, cursor=cursor)
    assert [c["last_message_preview"] for c in rest] == ["m0"]
    assert cursor is None

    with pytest.raises(ValidationError):
        await repo.list_for_user("me", cursor="not-a-cursor")
