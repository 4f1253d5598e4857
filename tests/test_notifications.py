"""
Tests for post-commit notification delivery.

These tests verify:
  - Queued notifications are delivered only after the session commits
  - A rollback discards them
  - Sender failures are logged and never reach the caller
  - The expiry-reminder job picks vouchers by exact expiry day and remaining balance
  - Holders can mail themselves the share-safe code and share product vouchers
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.config import settings
from app.exceptions import UnauthorizedAccessError, VoucherNotShareableError
from app.services import voucher_service
from app.services.notification_service import (
    NotificationDispatcher,
    PaymentCompleted,
    VoucherExpiring,
    VoucherSent,
    VoucherShared,
    dispatcher,
    queue_notification,
)

from conftest import HOLDER, OTHER_HOLDER, PROVIDER_OWNER, RecordingSender, token_address


def _event(amount_cents: int = 100) -> PaymentCompleted:
    return PaymentCompleted(
        transaction_id=uuid.uuid4(), provider_identity="0xprovider", amount_cents=amount_cents
    )


class TestDelivery:

    async def test_delivered_after_commit_only(self, db_session, notifications):
        queue_notification(db_session, _event())
        await dispatcher.drain()
        assert notifications.sent == []

        await db_session.commit()
        await dispatcher.drain()
        assert len(notifications.sent) == 1

    async def test_rollback_discards(self, db_session, notifications):
        await db_session.execute(select(1))
        queue_notification(db_session, _event())
        await db_session.rollback()
        await db_session.commit()
        await dispatcher.drain()

        assert notifications.sent == []

    async def test_sender_failure_is_swallowed(self, db_session, notifications, caplog):
        notifications.fail_with = RuntimeError("mail server down")
        queue_notification(db_session, _event(1))

        with caplog.at_level(logging.ERROR):
            await db_session.commit()
            await dispatcher.drain()
        assert "Failed to deliver PaymentCompleted" in caplog.text

        notifications.fail_with = None
        queue_notification(db_session, _event(2))
        await db_session.commit()
        await dispatcher.drain()
        assert [n.amount_cents for n in notifications.sent] == [2]

    async def test_publish_without_worker_drops(self):
        idle = NotificationDispatcher(RecordingSender())
        assert idle.publish(_event()) is False

    async def test_full_queue_drops(self):
        sender = RecordingSender()
        small = NotificationDispatcher(sender, maxsize=1)
        await small.start()
        try:
            results = [small.publish(_event(i + 1)) for i in range(3)]
            assert results[0] is True
            assert False in results
        finally:
            await small.stop()
        assert len(sender.sent) >= 1


class TestExpiryReminders:

    async def test_only_vouchers_expiring_on_the_notice_day(
        self, db_session, factory, world, notifications
    ):
        now = datetime.now(timezone.utc)
        notice_day = now + timedelta(days=settings.VOUCHER_EXPIRY_NOTICE_DAYS)
        fund, provider = world["fund"], world["provider"]

        due = await factory.voucher(fund, identity="0xdue", expire_at=notice_day)
        await factory.voucher(fund, identity="0xlater", expire_at=notice_day + timedelta(days=1))
        spent = await factory.voucher(fund, identity="0xspent", amount_cents=1000, expire_at=notice_day)
        await factory.transaction(spent, provider, 1000)
        await factory.voucher(
            fund, identity="0xproduct", amount_cents=2500,
            product=world["product"], expire_at=notice_day,
        )

        queued = await voucher_service.notify_expiring_vouchers(db_session, now=now)
        await db_session.commit()
        await dispatcher.drain()

        assert queued == 1
        reminders = notifications.of_type(VoucherExpiring)
        assert [r.voucher_id for r in reminders] == [due.id]
        assert reminders[0].available_cents == 10000
        assert reminders[0].sponsor_name == world["sponsor"].name


class TestVoucherMail:

    async def test_email_sends_share_safe_code(self, db_session, world, notifications):
        voucher = world["voucher"]

        await voucher_service.send_voucher_email(db_session, HOLDER, voucher.id)
        await db_session.commit()
        await dispatcher.drain()

        sent = notifications.of_type(VoucherSent)
        assert len(sent) == 1
        assert sent[0].identity_address == HOLDER
        assert sent[0].title == world["fund"].name
        assert sent[0].token_address == token_address(voucher)

    async def test_product_voucher_is_titled_with_the_product(
        self, db_session, factory, world, notifications
    ):
        voucher = await factory.voucher(world["fund"], amount_cents=2500, product=world["product"])

        await voucher_service.send_voucher_email(db_session, HOLDER, voucher.id)
        await db_session.commit()
        await dispatcher.drain()

        assert notifications.of_type(VoucherSent)[0].title == world["product"].name

    async def test_only_the_holder_can_mail_a_voucher(self, db_session, world):
        with pytest.raises(UnauthorizedAccessError):
            await voucher_service.send_voucher_email(db_session, OTHER_HOLDER, world["voucher"].id)

    async def test_share_with_copy_to_holder(self, db_session, factory, world, notifications):
        voucher = await factory.voucher(world["fund"], amount_cents=2500, product=world["product"])

        await voucher_service.share_product_voucher(
            db_session, HOLDER, voucher.id, "Picking it up tomorrow", send_copy=True
        )
        await db_session.commit()
        await dispatcher.drain()

        shared = notifications.of_type(VoucherShared)
        assert [s.recipient_identity for s in shared] == [PROVIDER_OWNER, HOLDER]
        assert shared[0].recipient_email == world["provider"].email
        assert shared[1].recipient_email is None
        assert {s.reason for s in shared} == {"Picking it up tomorrow"}
        assert {s.token_address for s in shared} == {token_address(voucher)}

    async def test_share_goes_to_the_organization_only_by_default(
        self, db_session, factory, world, notifications
    ):
        voucher = await factory.voucher(world["fund"], amount_cents=2500, product=world["product"])

        await voucher_service.share_product_voucher(db_session, HOLDER, voucher.id, "Gift")
        await db_session.commit()
        await dispatcher.drain()

        assert [s.recipient_identity for s in notifications.of_type(VoucherShared)] == [
            PROVIDER_OWNER
        ]

    async def test_regular_voucher_cannot_be_shared(self, db_session, world, notifications):
        with pytest.raises(VoucherNotShareableError):
            await voucher_service.share_product_voucher(
                db_session, HOLDER, world["voucher"].id, "Gift"
            )
        await db_session.rollback()
        await dispatcher.drain()

        assert notifications.sent == []
