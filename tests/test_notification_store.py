"""Tests for persisted notifications: dedupe, listing, read state and expiry."""

from datetime import datetime, timedelta, timezone

import pytest

from collab.core.errors import ErrorKind, FlowError
from collab.services import notification as store


class TestPut:
    @pytest.mark.asyncio
    async def test_duplicate_within_window_is_collapsed(self, db, influencer):
        data = {"conversation_id": 7, "sender_id": 3}
        first = await store.put(db, influencer.id, "message", "New message", "hi", data)
        second = await store.put(db, influencer.id, "message", "New message", "hi again", data)
        await db.commit()
        assert second.id == first.id
        _, total = await store.list_for_user(db, influencer.id)
        assert total == 1

    @pytest.mark.asyncio
    async def test_different_sender_is_not_a_duplicate(self, db, influencer):
        await store.put(db, influencer.id, "message", "t", "b", {"conversation_id": 7, "sender_id": 3})
        await store.put(db, influencer.id, "message", "t", "b", {"conversation_id": 7, "sender_id": 4})
        await store.put(db, influencer.id, "flow_update", "t", "b", {"conversation_id": 7, "sender_id": 4})
        await db.commit()
        _, total = await store.list_for_user(db, influencer.id)
        assert total == 3

    @pytest.mark.asyncio
    async def test_default_expiry_applied(self, db, influencer):
        notification = await store.put(db, influencer.id, "message", "t", "b")
        assert notification.expires_at is not None
        assert notification.status == "pending"


class TestReadState:
    @pytest.mark.asyncio
    async def test_mark_read_and_unread_count(self, db, influencer):
        a = await store.put(db, influencer.id, "message", "a", "a", {"conversation_id": 1})
        await store.put(db, influencer.id, "message", "b", "b", {"conversation_id": 2})
        await db.commit()
        assert await store.unread_count(db, influencer.id) == 2

        read = await store.mark_read(db, a.id, influencer.id)
        assert read.read_at is not None
        assert read.status == "delivered"
        assert await store.unread_count(db, influencer.id) == 1

        unread, total = await store.list_for_user(db, influencer.id, unread_only=True)
        assert total == 1
        assert unread[0].title == "b"

    @pytest.mark.asyncio
    async def test_mark_all_read(self, db, influencer):
        for cid in (1, 2, 3):
            await store.put(db, influencer.id, "message", "t", "b", {"conversation_id": cid})
        await db.commit()
        assert await store.mark_all_read(db, influencer.id) == 3
        assert await store.unread_count(db, influencer.id) == 0

    @pytest.mark.asyncio
    async def test_cannot_touch_someone_elses(self, db, influencer, brand_owner):
        notification = await store.put(db, influencer.id, "message", "t", "b")
        await db.commit()
        with pytest.raises(FlowError) as exc_info:
            await store.mark_read(db, notification.id, brand_owner.id)
        assert exc_info.value.kind == ErrorKind.NOT_FOUND
        with pytest.raises(FlowError):
            await store.delete(db, notification.id, brand_owner.id)

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, db, influencer):
        a = await store.put(db, influencer.id, "message", "t", "b", {"conversation_id": 1})
        await store.put(db, influencer.id, "message", "t", "b", {"conversation_id": 2})
        await store.put(db, influencer.id, "message", "t", "b", {"conversation_id": 3})
        await db.commit()

        await store.delete(db, a.id, influencer.id)
        _, total = await store.list_for_user(db, influencer.id)
        assert total == 2

        assert await store.clear(db, influencer.id) == 2
        _, total = await store.list_for_user(db, influencer.id)
        assert total == 0


class TestListingAndExpiry:
    @pytest.mark.asyncio
    async def test_filters_and_paging(self, db, influencer):
        for cid in range(1, 6):
            await store.put(db, influencer.id, "message", f"m{cid}", "b", {"conversation_id": cid})
        await store.put(db, influencer.id, "payment_received", "paid", "b", {"conversation_id": 9})
        await db.commit()

        page, total = await store.list_for_user(db, influencer.id, type="message", offset=0, limit=2)
        assert total == 5
        assert [n.title for n in page] == ["m5", "m4"]

        payments, total = await store.list_for_user(db, influencer.id, type="payment_received")
        assert total == 1

    @pytest.mark.asyncio
    async def test_expired_hidden_then_purged(self, db, influencer):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        await store.put(db, influencer.id, "message", "old", "b", {"conversation_id": 1}, expires_at=past)
        await store.put(db, influencer.id, "message", "new", "b", {"conversation_id": 2})
        await db.commit()

        items, total = await store.list_for_user(db, influencer.id)
        assert total == 1
        assert items[0].title == "new"
        assert await store.unread_count(db, influencer.id) == 1

        assert await store.purge_expired(db) == 1
        assert await store.purge_expired(db) == 0
