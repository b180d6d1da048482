"""Tests for the wallet ledger and escrow holds."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from collab.core.errors import ErrorKind, FlowError
from collab.models.conversation import Conversation
from collab.models.wallet import Transaction
from collab.services import escrow, ledger


async def _conversation(db, brand_owner, influencer, source: str = "direct") -> Conversation:
    conversation = Conversation(
        brand_owner_id=brand_owner.id,
        influencer_id=influencer.id,
        pair_key=f"{source}:{brand_owner.id}:{influencer.id}",
        flow_state="work_in_progress",
        awaiting_role="influencer",
        chat_status="real_time",
        flow_data={},
    )
    db.add(conversation)
    await db.commit()
    return conversation


async def _assert_consistent(db, user_id: int) -> None:
    stored = await ledger.get_balance(db, user_id)
    assert await ledger.recompute_balance(db, user_id) == stored
    assert 0 <= stored.frozen <= stored.total


async def _journal(db, user_id: int) -> tuple[int, int]:
    """Credits minus debits over every row, then over conversation rows only."""
    rows = (
        await db.execute(select(Transaction).where(Transaction.user_id == user_id))
    ).scalars().all()
    credits = sum(t.amount_paise for t in rows if t.direction == "credit")
    debits = sum(t.amount_paise for t in rows if t.direction == "debit")
    tagged_credits = sum(
        t.amount_paise for t in rows if t.direction == "credit" and t.conversation_id
    )
    tagged_debits = sum(
        t.amount_paise for t in rows if t.direction == "debit" and t.conversation_id
    )
    return credits - debits, tagged_credits - tagged_debits


async def _assert_journal_matches(db, user_id: int) -> None:
    balance = await ledger.get_balance(db, user_id)
    assert await _journal(db, user_id) == (balance.total, balance.frozen)
    assert balance.frozen == await escrow.total_held(db, user_id)


class TestLedger:
    @pytest.mark.asyncio
    async def test_wallet_created_empty(self, db, influencer):
        balance = await ledger.get_balance(db, influencer.id)
        assert balance == (0, 0)
        assert balance.available == 0

    @pytest.mark.asyncio
    async def test_credit_freeze_release(self, db, brand_owner, influencer):
        conversation = await _conversation(db, brand_owner, influencer)
        await ledger.credit(db, influencer.id, 500_000)
        await ledger.freeze(
            db, influencer.id, 300_000, hold_id=1, conversation_id=conversation.id,
        )
        balance = await ledger.get_balance(db, influencer.id)
        assert balance.as_dict() == {
            "total_paise": 500_000,
            "frozen_paise": 300_000,
            "available_paise": 200_000,
        }

        await ledger.release(
            db, influencer.id, 300_000, hold_id=1, conversation_id=conversation.id,
        )
        balance = await ledger.get_balance(db, influencer.id)
        assert balance.frozen == 0
        assert balance.available == 500_000
        await _assert_consistent(db, influencer.id)

    @pytest.mark.asyncio
    async def test_freeze_beyond_available(self, db, brand_owner, influencer):
        conversation = await _conversation(db, brand_owner, influencer)
        await ledger.credit(db, influencer.id, 100)
        with pytest.raises(FlowError) as exc_info:
            await ledger.freeze(
                db, influencer.id, 101, hold_id=1, conversation_id=conversation.id,
            )
        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_AVAILABLE

    @pytest.mark.asyncio
    async def test_release_beyond_frozen(self, db, brand_owner, influencer):
        conversation = await _conversation(db, brand_owner, influencer)
        await ledger.credit(db, influencer.id, 100)
        with pytest.raises(FlowError) as exc_info:
            await ledger.release(db, influencer.id, 50, conversation_id=conversation.id)
        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_FROZEN

    @pytest.mark.asyncio
    async def test_withdraw_only_from_available(self, db, brand_owner, influencer):
        conversation = await _conversation(db, brand_owner, influencer)
        await ledger.credit(db, influencer.id, 1_000)
        await ledger.freeze(db, influencer.id, 600, hold_id=1, conversation_id=conversation.id)
        with pytest.raises(FlowError) as exc_info:
            await ledger.withdraw(db, influencer.id, 500)
        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_AVAILABLE

        await ledger.withdraw(db, influencer.id, 400)
        balance = await ledger.get_balance(db, influencer.id)
        assert balance == (600, 600)
        await _assert_consistent(db, influencer.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 1.5, "100"])
    async def test_rejects_non_positive_or_non_integer(self, db, influencer, amount):
        with pytest.raises(FlowError) as exc_info:
            await ledger.credit(db, influencer.id, amount)
        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_transactions_newest_first(self, db, influencer):
        await ledger.credit(db, influencer.id, 100)
        await ledger.credit(db, influencer.id, 200)
        await db.commit()
        txns = await ledger.list_transactions(db, influencer.id)
        assert [t.amount_paise for t in txns] == [200, 100]
        assert {t.stage for t in txns} == {"deposit"}


class TestEscrow:
    @pytest.mark.asyncio
    async def test_create_freezes_amount(self, db, brand_owner, influencer):
        conversation = await _conversation(db, brand_owner, influencer)
        await ledger.credit(db, influencer.id, 500_000)
        hold = await escrow.create(
            db, conversation.id, influencer.id, 500_000, "payment_captured",
            external_payment_id="pay_1",
        )
        assert hold.status == "held"
        assert (await ledger.get_balance(db, influencer.id)).frozen == 500_000
        assert await ledger.conversation_escrow_balance(db, conversation.id) == 500_000
        assert await escrow.total_held(db, influencer.id) == 500_000

    @pytest.mark.asyncio
    async def test_one_live_hold_per_conversation(self, db, brand_owner, influencer):
        conversation = await _conversation(db, brand_owner, influencer)
        await ledger.credit(db, influencer.id, 1_000_000)
        await escrow.create(db, conversation.id, influencer.id, 500_000, "payment_captured")
        with pytest.raises(FlowError) as exc_info:
            await escrow.create(db, conversation.id, influencer.id, 500_000, "payment_captured")
        assert exc_info.value.kind == ErrorKind.DUPLICATE

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, db, brand_owner, influencer):
        conversation = await _conversation(db, brand_owner, influencer)
        await ledger.credit(db, influencer.id, 500_000)
        hold = await escrow.create(db, conversation.id, influencer.id, 500_000, "payment_captured")

        await escrow.release(db, hold, "work_approved")
        await escrow.release(db, hold, "work_approved")

        balance = await ledger.get_balance(db, influencer.id)
        assert balance == (500_000, 0)
        assert hold.status == "released"
        assert hold.release_reason == "work_approved"
        assert await ledger.conversation_escrow_balance(db, conversation.id) == 0
        await _assert_consistent(db, influencer.id)

    @pytest.mark.asyncio
    async def test_refund_moves_funds_to_payer(self, db, brand_owner, influencer):
        conversation = await _conversation(db, brand_owner, influencer)
        await ledger.credit(db, influencer.id, 500_000)
        hold = await escrow.create(db, conversation.id, influencer.id, 500_000, "payment_captured")

        await escrow.refund(db, hold, "influencer_withdrew", refund_to=brand_owner.id)

        assert await ledger.get_balance(db, influencer.id) == (0, 0)
        assert await ledger.get_balance(db, brand_owner.id) == (500_000, 0)
        assert hold.status == "refunded"
        await _assert_consistent(db, influencer.id)
        await _assert_consistent(db, brand_owner.id)

        with pytest.raises(FlowError):
            await escrow.release(db, hold, "too_late")

    @pytest.mark.asyncio
    async def test_find_stale_respects_quiescence(self, db, brand_owner, influencer):
        conversation = await _conversation(db, brand_owner, influencer)
        await ledger.credit(db, influencer.id, 500_000)
        hold = await escrow.create(db, conversation.id, influencer.id, 500_000, "payment_captured")
        await db.commit()

        now = datetime.now(timezone.utc)
        assert await escrow.find_stale(db, now) == []

        later = now + timedelta(days=31)
        stale = await escrow.find_stale(db, later)
        assert [h.id for h in stale] == [hold.id]

        await escrow.release(db, hold, "work_approved")
        await db.commit()
        assert await escrow.find_stale(db, later) == []


class TestJournal:
    @pytest.mark.asyncio
    async def test_freeze_and_release_net_through_the_conversation(
        self, db, brand_owner, influencer,
    ):
        conversation = await _conversation(db, brand_owner, influencer)
        await ledger.credit(db, influencer.id, 500_000)
        await ledger.freeze(
            db, influencer.id, 200_000, hold_id=1, conversation_id=conversation.id,
        )
        assert await _journal(db, influencer.id) == (500_000, 200_000)
        assert await ledger.conversation_escrow_balance(db, conversation.id) == 200_000

        await ledger.release(
            db, influencer.id, 200_000, hold_id=1, conversation_id=conversation.id,
        )
        assert await _journal(db, influencer.id) == (500_000, 0)
        assert await ledger.conversation_escrow_balance(db, conversation.id) == 0

    @pytest.mark.asyncio
    async def test_sums_match_balances_across_holds(self, db, brand_owner, influencer):
        frozen_from_wallet = await _conversation(db, brand_owner, influencer)
        paid_in = await _conversation(db, brand_owner, influencer, source="campaign")

        await ledger.credit(db, influencer.id, 800_000)
        first = await escrow.create(
            db, frozen_from_wallet.id, influencer.id, 500_000, "payment_captured",
        )
        second = await escrow.create(
            db, paid_in.id, influencer.id, 200_000, "payment_captured",
            external_payment_id="pay_9", deposit=True,
        )
        assert await ledger.get_balance(db, influencer.id) == (1_000_000, 700_000)
        await _assert_journal_matches(db, influencer.id)
        assert await ledger.conversation_escrow_balance(db, frozen_from_wallet.id) == 500_000
        assert await ledger.conversation_escrow_balance(db, paid_in.id) == 200_000

        await escrow.release(db, first, "work_approved")
        await escrow.refund(db, second, "influencer_withdrew", refund_to=brand_owner.id)

        assert await ledger.get_balance(db, influencer.id) == (800_000, 0)
        assert await ledger.get_balance(db, brand_owner.id) == (200_000, 0)
        await _assert_journal_matches(db, influencer.id)
        await _assert_journal_matches(db, brand_owner.id)
        assert await ledger.conversation_escrow_balance(db, frozen_from_wallet.id) == 0
        assert await ledger.conversation_escrow_balance(db, paid_in.id) == 0

    @pytest.mark.asyncio
    async def test_deposit_is_one_tagged_credit(self, db, brand_owner, influencer):
        conversation = await _conversation(db, brand_owner, influencer)
        await escrow.create(
            db, conversation.id, influencer.id, 300_000, "payment_captured",
            external_payment_id="pay_1", deposit=True,
        )
        rows = (
            await db.execute(
                select(Transaction).where(Transaction.external_payment_id == "pay_1")
            )
        ).scalars().all()
        assert [(t.direction, t.conversation_id) for t in rows] == [
            ("credit", conversation.id),
        ]
        await _assert_journal_matches(db, influencer.id)
