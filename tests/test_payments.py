"""Tests for checkout, signature checks, webhook ingress, admin capture and reconciliation."""

from datetime import datetime, timedelta, timezone

import pytest

from collab.core.errors import ErrorKind, FlowError
from collab.services import escrow, ledger
from collab.services import payment as payment_svc
from collab.services import reconciler
from collab.services.conversation import get_conversation
from collab.services.flow_engine import capture_payment
from collab.services.gateway.client import (
    make_receipt,
    verify_payment_signature,
    verify_webhook_signature,
)
from helpers import sign_payment, sign_webhook, webhook_body


class TestSignatures:
    def test_checkout_signature(self):
        good = sign_payment("order_1", "pay_1")
        assert verify_payment_signature("order_1", "pay_1", good)
        assert not verify_payment_signature("order_1", "pay_2", good)
        assert not verify_payment_signature("order_1", "pay_1", "")

    def test_webhook_signature(self):
        body = b'{"event":"payment.captured"}'
        assert verify_webhook_signature(body, sign_webhook(body))
        assert not verify_webhook_signature(body + b" ", sign_webhook(body))
        assert not verify_webhook_signature(body, None)

    def test_missing_secret_never_verifies(self):
        body = b"{}"
        assert not verify_webhook_signature(body, sign_webhook(body), secret="")

    def test_receipt_length(self):
        assert len(make_receipt(10**30)) <= 40


class TestCheckout:
    @pytest.mark.asyncio
    async def test_order_carries_conversation_notes(self, flow, gateway):
        cid = await flow.to_payment_pending(5000)
        order = await flow.checkout(cid)
        assert order.status == "created"
        assert order.payer_id == flow.brand_owner.id
        assert order.meta["conversation_type"] == "direct"
        remote = gateway.orders[order.external_order_id]
        assert remote["notes"]["conversation_id"] == str(cid)
        assert remote["currency"] == "INR"

    @pytest.mark.asyncio
    async def test_only_brand_owner_starts_payment(self, flow):
        cid = await flow.to_payment_pending()
        with pytest.raises(FlowError) as exc_info:
            await payment_svc.create_checkout(flow.db, cid, flow.influencer)
        assert exc_info.value.kind == ErrorKind.NOT_YOUR_TURN

    @pytest.mark.asyncio
    async def test_gateway_down_leaves_state_alone(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        gateway.down = True
        with pytest.raises(FlowError) as exc_info:
            await flow.checkout(cid)
        assert exc_info.value.kind == ErrorKind.GATEWAY_UNAVAILABLE
        assert await payment_svc.get_latest_order(db, cid) is None
        conversation = await get_conversation(db, cid)
        assert conversation.flow_state == "payment_pending"


class TestClientVerification:
    @pytest.mark.asyncio
    async def test_verify_then_webhook_is_duplicate(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        payment = gateway.pay(order.external_order_id)

        verified, already = await payment_svc.verify_client_payment(
            db, order.external_order_id, payment["id"],
            sign_payment(order.external_order_id, payment["id"]), flow.brand_owner,
        )
        assert already is False
        assert verified.verified_via == "client"

        body = webhook_body(order.external_order_id, payment)
        result = await payment_svc.handle_webhook(db, body, sign_webhook(body))
        assert result == {"status": "duplicate", "event": "payment.captured"}
        assert await ledger.get_balance(db, flow.influencer.id) == (500_000, 500_000)

    @pytest.mark.asyncio
    async def test_bad_checkout_signature(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        payment = gateway.pay(order.external_order_id)
        with pytest.raises(FlowError) as exc_info:
            await payment_svc.verify_client_payment(
                db, order.external_order_id, payment["id"], "0" * 64, flow.brand_owner,
            )
        assert exc_info.value.kind == ErrorKind.BAD_SIGNATURE
        assert await escrow.get_held(db, cid) is None

    @pytest.mark.asyncio
    async def test_outsider_cannot_verify(self, db, flow, gateway, outsider):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        payment = gateway.pay(order.external_order_id)
        with pytest.raises(FlowError) as exc_info:
            await payment_svc.verify_client_payment(
                db, order.external_order_id, payment["id"],
                sign_payment(order.external_order_id, payment["id"]), outsider,
            )
        assert exc_info.value.kind == ErrorKind.NOT_AUTHORIZED


class TestWebhook:
    @pytest.mark.asyncio
    async def test_capture_then_replay(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        payment = gateway.pay(order.external_order_id)
        body = webhook_body(order.external_order_id, payment)

        first = await payment_svc.handle_webhook(db, body, sign_webhook(body))
        second = await payment_svc.handle_webhook(db, body, sign_webhook(body))

        assert first["status"] == "processed"
        assert second["status"] == "duplicate"
        conversation = await get_conversation(db, cid)
        assert conversation.flow_state == "work_in_progress"
        assert await ledger.get_balance(db, flow.influencer.id) == (500_000, 500_000)

    @pytest.mark.asyncio
    async def test_order_paid_event_also_captures(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        payment = gateway.pay(order.external_order_id)
        body = webhook_body(order.external_order_id, payment, event="order.paid")
        result = await payment_svc.handle_webhook(db, body, sign_webhook(body))
        assert result["status"] == "processed"

    @pytest.mark.asyncio
    async def test_bad_signature(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        body = webhook_body(order.external_order_id, gateway.pay(order.external_order_id))
        with pytest.raises(FlowError) as exc_info:
            await payment_svc.handle_webhook(db, body, "forged")
        assert exc_info.value.kind == ErrorKind.BAD_SIGNATURE

    @pytest.mark.asyncio
    async def test_other_events_ignored(self, db):
        body = b'{"event": "refund.created", "payload": {}}'
        result = await payment_svc.handle_webhook(db, body, sign_webhook(body))
        assert result == {"status": "ignored", "event": "refund.created"}

    @pytest.mark.asyncio
    async def test_unknown_order_ignored(self, db):
        body = webhook_body("order_missing", {"id": "pay_x", "amount": 100})
        result = await payment_svc.handle_webhook(db, body, sign_webhook(body))
        assert result["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_amount_mismatch_rejected(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        payment = dict(gateway.pay(order.external_order_id), amount=100)
        body = webhook_body(order.external_order_id, payment)
        with pytest.raises(FlowError) as exc_info:
            await payment_svc.handle_webhook(db, body, sign_webhook(body))
        assert exc_info.value.kind == ErrorKind.INVALID_INPUT
        assert await escrow.get_held(db, cid) is None

    @pytest.mark.asyncio
    async def test_second_payment_for_paid_order(self, db, flow):
        cid = await flow.to_payment_pending()
        order, _ = await flow.pay(cid)
        with pytest.raises(FlowError) as exc_info:
            await capture_payment(db, order.external_order_id, "pay_other", via="webhook")
        assert exc_info.value.kind == ErrorKind.DUPLICATE
        assert await ledger.get_balance(db, flow.influencer.id) == (500_000, 500_000)


class TestAdminCapture:
    @pytest.mark.asyncio
    async def test_admin_capture(self, db, flow, gateway, admin):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        payment = gateway.pay(order.external_order_id)

        captured, already = await payment_svc.admin_capture(
            db, order.external_order_id, payment["id"], admin,
        )
        assert already is False
        assert captured.verified_via == "admin"
        assert (await get_conversation(db, cid)).flow_state == "work_in_progress"

        _, already = await payment_svc.admin_capture(
            db, order.external_order_id, payment["id"], admin,
        )
        assert already is True

    @pytest.mark.asyncio
    async def test_non_admin_rejected(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        payment = gateway.pay(order.external_order_id)
        with pytest.raises(FlowError) as exc_info:
            await payment_svc.admin_capture(
                db, order.external_order_id, payment["id"], flow.brand_owner,
            )
        assert exc_info.value.kind == ErrorKind.NOT_AUTHORIZED

    @pytest.mark.asyncio
    async def test_gateway_must_confirm(self, db, flow, gateway, admin):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        payment = gateway.pay(order.external_order_id)
        payment["status"] = "failed"
        with pytest.raises(FlowError) as exc_info:
            await payment_svc.admin_capture(db, order.external_order_id, payment["id"], admin)
        assert exc_info.value.kind == ErrorKind.INVALID_INPUT


class TestReconciler:
    @pytest.mark.asyncio
    async def test_missed_payment_is_recovered(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        gateway.pay(order.external_order_id)
        later = datetime.now(timezone.utc) + timedelta(minutes=11)

        assert await reconciler.reconcile_payments(db, now=later) == 1
        await db.refresh(order)
        assert order.status == "verified"
        assert order.verified_via == "reconciler"
        assert (await get_conversation(db, cid)).flow_state == "work_in_progress"

        assert await reconciler.reconcile_payments(db, now=later) == 0

    @pytest.mark.asyncio
    async def test_recent_and_unpaid_orders_left_alone(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)

        later = datetime.now(timezone.utc) + timedelta(minutes=11)
        assert await reconciler.reconcile_payments(db, now=later) == 0

        gateway.pay(order.external_order_id)
        assert await reconciler.reconcile_payments(db) == 0
        assert (await get_conversation(db, cid)).flow_state == "payment_pending"

    @pytest.mark.asyncio
    async def test_gateway_down_is_tolerated(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        gateway.pay(order.external_order_id)
        gateway.down = True
        later = datetime.now(timezone.utc) + timedelta(minutes=11)
        assert await reconciler.reconcile_payments(db, now=later) == 0

    @pytest.mark.asyncio
    async def test_stale_escrow_released(self, db, flow):
        cid = await flow.to_work(5000)
        assert await reconciler.release_stale_escrow(db) == 0

        later = datetime.now(timezone.utc) + timedelta(days=31)
        assert await reconciler.release_stale_escrow(db, now=later) == 1
        assert (await get_conversation(db, cid)).flow_state == "chat_closed"
        assert await ledger.get_balance(db, flow.influencer.id) == (500_000, 0)
        assert await reconciler.release_stale_escrow(db, now=later) == 0


class TestLatePayment:
    @pytest.mark.asyncio
    async def test_cancel_closes_open_order(self, db, flow):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        await flow.act(flow.brand_owner, cid, "reject_collaboration", {"reason": "Budget cut"})

        await db.refresh(order)
        assert order.status == "failed"
        assert order.meta["failure_reason"] == "Budget cut"

    @pytest.mark.asyncio
    async def test_payment_after_cancel_is_refunded_once(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        await flow.act(flow.brand_owner, cid, "reject_collaboration", {"reason": "Budget cut"})
        payment = gateway.pay(order.external_order_id)
        later = datetime.now(timezone.utc) + timedelta(minutes=11)

        assert await reconciler.reconcile_payments(db, now=later) == 1
        await db.refresh(order)
        assert order.status == "failed"
        assert order.external_payment_id == payment["id"]
        assert order.meta["late_capture"] == "refunded"
        assert await ledger.get_balance(db, flow.brand_owner.id) == (500_000, 0)
        assert await ledger.get_balance(db, flow.influencer.id) == (0, 0)
        assert await escrow.get_held(db, cid) is None
        assert (await get_conversation(db, cid)).flow_state == "collaboration_cancelled"

        assert await reconciler.reconcile_payments(db, now=later) == 0
        body = webhook_body(order.external_order_id, payment)
        result = await payment_svc.handle_webhook(db, body, sign_webhook(body))
        assert result["status"] == "duplicate"
        assert await ledger.get_balance(db, flow.brand_owner.id) == (500_000, 0)

    @pytest.mark.asyncio
    async def test_late_webhook_refunds_payer(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        await flow.act(flow.brand_owner, cid, "reject_collaboration", {"reason": "Budget cut"})
        payment = gateway.pay(order.external_order_id)
        body = webhook_body(order.external_order_id, payment)

        result = await payment_svc.handle_webhook(db, body, sign_webhook(body))
        assert result["status"] == "processed"
        assert await ledger.get_balance(db, flow.brand_owner.id) == (500_000, 0)

        with pytest.raises(FlowError) as exc_info:
            await capture_payment(db, order.external_order_id, "pay_other", via="webhook")
        assert exc_info.value.kind == ErrorKind.DUPLICATE

    @pytest.mark.asyncio
    async def test_old_cancelled_orders_are_not_watched(self, db, flow, gateway):
        cid = await flow.to_payment_pending()
        order = await flow.checkout(cid)
        await flow.act(flow.brand_owner, cid, "reject_collaboration", {"reason": "Budget cut"})
        gateway.pay(order.external_order_id)

        much_later = datetime.now(timezone.utc) + timedelta(hours=73)
        assert await reconciler.reconcile_payments(db, now=much_later) == 0
        assert await ledger.get_balance(db, flow.brand_owner.id) == (0, 0)
