"""
Tests for redemption authorization and access boundaries.

These tests verify:
  - The checks run in a fixed order (expiry, fund state, kind-specific rules)
  - Expiry is monotone: once expired, a voucher stays unredeemable
  - Only organizations approved for the fund and scannable by the identity are eligible
  - A product voucher is single-use and bound to its product's organization
  - Holders cannot read each other's vouchers; organizations need permissions
"""

from datetime import datetime, timedelta, timezone

from app.exceptions import DenialReason
from app.models.fund import FundProviderState, FundState
from app.models.organization import Permission
from app.services.authorization_service import authorize_redemption

from conftest import CASHIER, HOLDER, OTHER_HOLDER, PROVIDER_OWNER, SPONSOR_OWNER


class TestRegularVoucher:

    async def test_owner_of_approved_provider_is_allowed(self, db_session, world):
        decision = await authorize_redemption(db_session, PROVIDER_OWNER, world["voucher"])

        assert decision.allowed
        assert decision.reason is None
        assert decision.organization_ids == {world["provider"].id}

    async def test_granted_cashier_is_allowed(self, db_session, factory, world):
        await factory.grant(world["provider"], CASHIER, Permission.SCAN_VOUCHERS)

        decision = await authorize_redemption(db_session, CASHIER, world["voucher"])
        assert decision.allowed

    async def test_identity_without_scan_permission_is_denied(self, db_session, factory, world):
        await factory.grant(world["provider"], CASHIER, Permission.VIEW_FINANCES)

        decision = await authorize_redemption(db_session, CASHIER, world["voucher"])
        assert not decision.allowed
        assert decision.reason == DenialReason.NOT_PERMITTED

    async def test_pending_or_declined_provider_is_denied(self, db_session, world):
        fund_provider = world["fund_provider"]
        for state in (FundProviderState.PENDING, FundProviderState.DECLINED):
            fund_provider.state = state
            await db_session.commit()

            decision = await authorize_redemption(db_session, PROVIDER_OWNER, world["voucher"])
            assert decision.reason == DenialReason.NOT_PERMITTED

    async def test_only_approved_organizations_are_listed(self, db_session, factory, world):
        """An identity owning two providers only gets the approved one."""
        second = await factory.organization(name="Second Shop", owner=PROVIDER_OWNER)
        await factory.fund_provider(world["fund"], second, FundProviderState.PENDING)

        decision = await authorize_redemption(db_session, PROVIDER_OWNER, world["voucher"])
        assert decision.organization_ids == {world["provider"].id}

    async def test_narrowing_to_an_organization(self, db_session, factory, world):
        other = await factory.organization(name="Other Shop", owner="0xsomeoneelse")

        decision = await authorize_redemption(
            db_session, PROVIDER_OWNER, world["voucher"], organization_id=other.id
        )
        assert decision.reason == DenialReason.NOT_PERMITTED


class TestCheckOrder:

    async def test_expired_voucher(self, db_session, factory, world):
        voucher = await factory.voucher(
            world["fund"], identity=OTHER_HOLDER,
            expire_at=datetime.now(timezone.utc) - timedelta(seconds=1),
        )

        decision = await authorize_redemption(db_session, PROVIDER_OWNER, voucher)
        assert decision.reason == DenialReason.VOUCHER_EXPIRED

    async def test_expiry_wins_over_inactive_fund(self, db_session, factory, world):
        """Expiry is checked first, so it is reported even if the fund is closed too."""
        fund = world["fund"]
        voucher = await factory.voucher(
            fund, identity=OTHER_HOLDER, expire_at=datetime.now(timezone.utc) - timedelta(days=1)
        )
        fund.state = FundState.CLOSED
        await db_session.commit()

        decision = await authorize_redemption(db_session, PROVIDER_OWNER, voucher)
        assert decision.reason == DenialReason.VOUCHER_EXPIRED

    async def test_expiry_is_monotone(self, db_session, world):
        """Allowed before expire_at; denied at and after it, forever."""
        voucher = world["voucher"]
        expire_at = voucher.expire_at
        if expire_at.tzinfo is None:
            expire_at = expire_at.replace(tzinfo=timezone.utc)

        before = await authorize_redemption(
            db_session, PROVIDER_OWNER, voucher, now=expire_at - timedelta(seconds=1)
        )
        assert before.allowed

        for offset in (timedelta(0), timedelta(seconds=1), timedelta(days=400)):
            after = await authorize_redemption(
                db_session, PROVIDER_OWNER, voucher, now=expire_at + offset
            )
            assert after.reason == DenialReason.VOUCHER_EXPIRED

    async def test_inactive_fund(self, db_session, world):
        fund = world["fund"]
        for state in (FundState.PENDING, FundState.PAUSED, FundState.CLOSED):
            fund.state = state
            await db_session.commit()

            decision = await authorize_redemption(db_session, PROVIDER_OWNER, world["voucher"])
            assert decision.reason == DenialReason.FUND_NOT_ACTIVE


class TestProductVoucher:

    async def test_product_organization_may_redeem(self, db_session, factory, world):
        voucher = await factory.voucher(
            world["fund"], amount_cents=2500, product=world["product"]
        )

        decision = await authorize_redemption(db_session, PROVIDER_OWNER, voucher)
        assert decision.allowed
        assert decision.organization_ids == {world["provider"].id}

    async def test_other_organization_is_denied(self, db_session, factory, world):
        """Being approved for the fund is not enough for someone else's product."""
        other = await factory.organization(name="Other Shop", owner="0xother")
        await factory.fund_provider(world["fund"], other)
        voucher = await factory.voucher(
            world["fund"], amount_cents=2500, product=world["product"]
        )

        decision = await authorize_redemption(db_session, "0xother", voucher)
        assert decision.reason == DenialReason.NOT_PERMITTED

    async def test_used_product_voucher(self, db_session, factory, world):
        product = world["product"]
        voucher = await factory.voucher(world["fund"], amount_cents=2500, product=product)
        await factory.transaction(voucher, world["provider"], 2500, product=product)

        decision = await authorize_redemption(db_session, PROVIDER_OWNER, voucher)
        assert decision.reason == DenialReason.PRODUCT_VOUCHER_USED


class TestAccessBoundaries:
    """Identities only see their own vouchers and their own organizations."""

    async def test_cannot_view_other_holders_voucher(self, client, auth_headers, world):
        voucher_id = world["voucher"].id

        resp = await client.get(f"/vouchers/{voucher_id}", headers=auth_headers(OTHER_HOLDER))
        assert resp.status_code == 403
        assert resp.json()["error_type"] == "unauthorized_access"

        own = await client.get(f"/vouchers/{voucher_id}", headers=auth_headers(HOLDER))
        assert own.status_code == 200

    async def test_voucher_list_is_scoped(self, client, auth_headers, factory, world):
        await factory.voucher(world["fund"], identity=OTHER_HOLDER)

        resp = await client.get("/vouchers", headers=auth_headers(HOLDER))
        assert resp.status_code == 200
        assert [v["id"] for v in resp.json()] == [str(world["voucher"].id)]

    async def test_missing_token_is_rejected(self, client, world):
        resp = await client.get("/vouchers")
        assert resp.status_code == 401

    async def test_tampered_token_is_rejected(self, client, auth_headers, world):
        headers = auth_headers(HOLDER)
        headers["Authorization"] += "x"

        resp = await client.get("/vouchers", headers=headers)
        assert resp.status_code == 401

    async def test_sponsor_reports_need_view_finances(self, client, auth_headers, world):
        sponsor = world["sponsor"]

        resp = await client.get(
            f"/organizations/{sponsor.id}/sponsor/transactions",
            headers=auth_headers(PROVIDER_OWNER),
        )
        assert resp.status_code == 403

        own = await client.get(
            f"/organizations/{sponsor.id}/sponsor/transactions",
            headers=auth_headers(SPONSOR_OWNER),
        )
        assert own.status_code == 200
