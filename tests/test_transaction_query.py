"""
Tests for filtered, scoped ledger queries.

These tests verify:
  - Each filter narrows the result; filters combine with AND
  - Date bounds are inclusive at day granularity
  - Scopes: sponsor (optionally one fund / one provider), provider, voucher
  - Contradictory bounds are rejected
  - Results are newest first and paginated
"""

import uuid
from datetime import date, datetime, timezone

import pytest
import pytest_asyncio

from app.exceptions import InvalidFilterError, TransactionNotFoundError
from app.models.voucher_transaction import TransactionState
from app.schemas.transaction import TransactionFilter
from app.services import transaction_query_service
from app.services.transaction_query_service import ProviderScope, SponsorScope, VoucherScope


def at(day: int, hour: int = 12) -> datetime:
    return datetime(2024, 3, day, hour, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def ledger(factory, world):
    """
    Three entries at the world's provider on March 1st, 2nd and 3rd, plus one
    at a second provider in a second fund of the same sponsor.
    """
    voucher, provider = world["voucher"], world["provider"]
    first = await factory.transaction(voucher, provider, 1000, created_at=at(1))
    second = await factory.transaction(
        voucher, provider, 2500, created_at=at(2), state=TransactionState.SUCCESS
    )
    third = await factory.transaction(voucher, provider, 4000, created_at=at(3, 23))

    other_fund = await factory.fund(world["sponsor"], name="Sportfonds")
    shop = await factory.organization(name="Sports Shop", owner="0xsports")
    await factory.fund_provider(other_fund, shop)
    other_voucher = await factory.voucher(other_fund)
    fourth = await factory.transaction(other_voucher, shop, 700, created_at=at(2))

    return {"first": first, "second": second, "third": third, "fourth": fourth, "shop": shop,
            "other_fund": other_fund}


async def _ids(db_session, scope, **filters):
    page = await transaction_query_service.search_transactions(
        db_session, TransactionFilter(**filters), scope
    )
    return [txn.id for txn in page["items"]]


class TestFilters:

    async def test_newest_first(self, db_session, world, ledger):
        ids = await _ids(db_session, ProviderScope(world["provider"].id))
        assert ids == [ledger["third"].id, ledger["second"].id, ledger["first"].id]

    async def test_state(self, db_session, world, ledger):
        ids = await _ids(
            db_session, ProviderScope(world["provider"].id), state=TransactionState.SUCCESS
        )
        assert ids == [ledger["second"].id]

    async def test_dates_are_inclusive(self, db_session, world, ledger):
        """to_date includes the whole day, up to 23:59:59.999999."""
        ids = await _ids(
            db_session, ProviderScope(world["provider"].id),
            from_date=date(2024, 3, 2), to_date=date(2024, 3, 3),
        )
        assert ids == [ledger["third"].id, ledger["second"].id]

    async def test_amount_bounds_are_inclusive(self, db_session, world, ledger):
        ids = await _ids(
            db_session, ProviderScope(world["provider"].id), amount_min=1000, amount_max=2500
        )
        assert ids == [ledger["second"].id, ledger["first"].id]

    async def test_filters_combine(self, db_session, world, ledger):
        ids = await _ids(
            db_session, ProviderScope(world["provider"].id),
            from_date=date(2024, 3, 2), amount_max=3000,
        )
        assert ids == [ledger["second"].id]

    async def test_free_text_matches_provider_and_fund(self, db_session, world, ledger):
        scope = SponsorScope(world["sponsor"].id)
        assert await _ids(db_session, scope, q="sports shop") == [ledger["fourth"].id]
        assert await _ids(db_session, scope, q="sportfonds") == [ledger["fourth"].id]

    async def test_free_text_matches_transaction_id(self, db_session, world, ledger):
        needle = str(ledger["first"].id)[:8]
        ids = await _ids(db_session, SponsorScope(world["sponsor"].id), q=needle)
        assert ledger["first"].id in ids

    async def test_free_text_wildcards_are_literal(self, db_session, world, ledger):
        scope = SponsorScope(world["sponsor"].id)
        assert await _ids(db_session, scope, q="%") == []
        assert await _ids(db_session, scope, q="_") == []
        assert await _ids(db_session, scope, q="sports_shop") == []
        assert await _ids(db_session, scope, q="sp%fonds") == []

    async def test_contradictory_bounds(self, db_session, world):
        with pytest.raises(InvalidFilterError):
            await _ids(
                db_session, ProviderScope(world["provider"].id),
                from_date=date(2024, 3, 3), to_date=date(2024, 3, 1),
            )
        with pytest.raises(InvalidFilterError):
            await _ids(
                db_session, ProviderScope(world["provider"].id), amount_min=10, amount_max=5
            )


class TestScopes:

    async def test_sponsor_sees_every_fund(self, db_session, world, ledger):
        ids = await _ids(db_session, SponsorScope(world["sponsor"].id))
        assert len(ids) == 4

    async def test_sponsor_narrowed_to_fund_and_provider(self, db_session, world, ledger):
        by_fund = await _ids(
            db_session, SponsorScope(world["sponsor"].id, fund_id=ledger["other_fund"].id)
        )
        assert by_fund == [ledger["fourth"].id]

        by_provider = await _ids(
            db_session, SponsorScope(world["sponsor"].id, provider_id=world["provider"].id)
        )
        assert len(by_provider) == 3

    async def test_other_sponsor_sees_nothing(self, db_session, factory, world, ledger):
        stranger = await factory.organization(name="Stranger", owner="0xstranger")
        assert await _ids(db_session, SponsorScope(stranger.id)) == []

    async def test_voucher_scope(self, db_session, world, ledger):
        ids = await _ids(db_session, VoucherScope(world["voucher"].id))
        assert len(ids) == 3

    async def test_get_transaction_outside_scope(self, db_session, world, ledger):
        found = await transaction_query_service.get_transaction(
            db_session, ProviderScope(ledger["shop"].id), ledger["fourth"].id
        )
        assert found.amount_cents == 700

        with pytest.raises(TransactionNotFoundError):
            await transaction_query_service.get_transaction(
                db_session, ProviderScope(world["provider"].id), ledger["fourth"].id
            )
        with pytest.raises(TransactionNotFoundError):
            await transaction_query_service.get_transaction(
                db_session, ProviderScope(world["provider"].id), uuid.uuid4()
            )


class TestPagination:

    async def test_limit_and_offset(self, db_session, world, ledger):
        page = await transaction_query_service.search_transactions(
            db_session, TransactionFilter(), ProviderScope(world["provider"].id),
            limit=2, offset=1,
        )
        assert page["total"] == 3
        assert [t.id for t in page["items"]] == [ledger["second"].id, ledger["first"].id]
