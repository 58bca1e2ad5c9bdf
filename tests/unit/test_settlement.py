"""Tests for settlement — auto-settle sweeps, seller settings, withdrawal, dashboard."""

import pytest

from stashu_engine.common.exceptions import (
    InsufficientBalanceError,
    LightningAddressError,
    ValidationError,
)
from stashu_engine.settlement.models import SellerSettingsModel
from stashu_engine.settlement.service import LOG_FAILED, LOG_SKIPPED, LOG_SUCCESS

from tests.conftest import OTHER_SELLER, SELLER

ADDRESS = "alice@wallet.test"


async def fund(services, wallet, make_stash, *amounts):
    for amount in amounts:
        stash = await make_stash(price_sats=amount)
        await services.payments.unlock(stash.id, wallet.issue_token(amount))
    await services.supervisor.drain()


async def configure(services, threshold, address=ADDRESS):
    # Written directly so no settlement is scheduled behind the test's back
    async with services.db.get_session() as session:
        session.add(SellerSettingsModel(
            pubkey=SELLER, ln_address=address, auto_withdraw_threshold=threshold,
        ))


async def balance(services):
    async with services.db.get_session() as session:
        return await services.custody.unclaimed_balance(session, SELLER)


class TestAutoSettle:
    async def test_sweeps_balance_over_threshold(self, services, wallet, resolver, make_stash):
        await services.settlement.save_settings(SELLER, ADDRESS, 900)
        await services.supervisor.drain()

        await fund(services, wallet, make_stash, 950)

        [entry] = await services.settlement.settlement_history(SELLER)
        assert entry.status == LOG_SUCCESS
        assert (entry.amount_sats, entry.fee_sats, entry.net_sats) == (950, 3, 947)
        assert entry.ln_address == ADDRESS
        assert resolver.calls == [(ADDRESS, 950), (ADDRESS, 947)]
        assert await balance(services) == 0

    async def test_below_threshold_does_nothing(self, services, wallet, resolver, make_stash):
        await fund(services, wallet, make_stash, 500)
        await configure(services, 900)

        assert await services.settlement.try_auto_settle(SELLER) is None
        assert resolver.calls == []
        assert await services.settlement.settlement_history(SELLER) == []

    async def test_no_settings_does_nothing(self, services, wallet, resolver, make_stash):
        await fund(services, wallet, make_stash, 5000)
        assert await services.settlement.try_auto_settle(SELLER) is None
        assert resolver.calls == []

    async def test_zero_threshold_disables(self, services, wallet, make_stash):
        await fund(services, wallet, make_stash, 500)
        await configure(services, 0)
        assert await services.settlement.try_auto_settle(SELLER) is None

    async def test_fee_larger_than_balance_is_skipped(self, services, wallet, make_stash):
        await fund(services, wallet, make_stash, 100)
        await configure(services, 50)
        wallet.fee_reserve = 100

        assert await services.settlement.try_auto_settle(SELLER) == LOG_SKIPPED

        [entry] = await services.settlement.settlement_history(SELLER)
        assert entry.status == LOG_SKIPPED
        assert entry.net_sats == 0
        assert wallet.melt_calls == 0
        assert await balance(services) == 100

    async def test_resolver_error_is_logged_as_failed(self, services, wallet, resolver, make_stash):
        await fund(services, wallet, make_stash, 1000)
        await configure(services, 900)
        resolver.error = LightningAddressError("Lightning address lookup failed (HTTP 404)")

        assert await services.settlement.try_auto_settle(SELLER) == LOG_FAILED

        [entry] = await services.settlement.settlement_history(SELLER)
        assert "HTTP 404" in entry.error
        assert await balance(services) == 1000

    async def test_rejected_melt_keeps_balance(self, services, wallet, make_stash):
        await fund(services, wallet, make_stash, 1000)
        await configure(services, 900)
        wallet.melt_behavior = "unpaid"

        assert await services.settlement.try_auto_settle(SELLER) == LOG_FAILED
        assert await balance(services) == 1000

    async def test_indeterminate_melt_is_failed_and_reserved(self, services, wallet, make_stash):
        await fund(services, wallet, make_stash, 1000)
        await configure(services, 900)
        wallet.melt_behavior = "pending"

        assert await services.settlement.try_auto_settle(SELLER) == LOG_FAILED

        [entry] = await services.settlement.settlement_history(SELLER)
        assert "melt-" in entry.error
        assert await balance(services) == 0

    async def test_unexpected_error_never_raises(self, services, wallet, make_stash):
        await fund(services, wallet, make_stash, 1000)
        await configure(services, 900)

        async def broken(invoice):
            raise RuntimeError("boom")

        services.custody.client.quote_melt = broken
        assert await services.settlement.try_auto_settle(SELLER) is None

    async def test_history_is_newest_first_and_limited(self, services, wallet, resolver, make_stash):
        await fund(services, wallet, make_stash, 1000)
        await configure(services, 900)
        resolver.error = LightningAddressError("offline")
        for _ in range(3):
            await services.settlement.try_auto_settle(SELLER)

        history = await services.settlement.settlement_history(SELLER, limit=2)
        assert len(history) == 2
        assert history[0].id > history[1].id
        assert await services.settlement.settlement_history(OTHER_SELLER) == []


class TestSettings:
    async def test_defaults(self, services):
        result = await services.settlement.get_settings(SELLER)
        assert result.ln_address == ""
        assert result.auto_withdraw_threshold == 0

    async def test_upsert(self, services):
        await services.settlement.save_settings(SELLER, ADDRESS, 1000)
        await services.settlement.save_settings(SELLER, " bob@wallet.test ", 2500.7)

        result = await services.settlement.get_settings(SELLER)
        assert result.ln_address == "bob@wallet.test"
        assert result.auto_withdraw_threshold == 2500

    async def test_negative_threshold_floors_to_zero(self, services):
        result = await services.settlement.save_settings(SELLER, ADDRESS, -5)
        assert result.auto_withdraw_threshold == 0

    async def test_clearing_address(self, services):
        await services.settlement.save_settings(SELLER, ADDRESS, 1000)
        await services.settlement.save_settings(SELLER, "", 1000)
        assert (await services.settlement.get_settings(SELLER)).ln_address == ""

    @pytest.mark.parametrize("address", ["alice", "alice@", "@wallet.test", "alice@wallet", "a b@wallet.test"])
    async def test_invalid_address(self, services, address):
        with pytest.raises(ValidationError, match="Lightning address"):
            await services.settlement.save_settings(SELLER, address, 1000)


class TestWithdraw:
    async def test_quote(self, services, wallet, make_stash):
        await fund(services, wallet, make_stash, 600, 400)

        quote = await services.settlement.withdraw_quote(SELLER, "lnbc-900-x")

        assert quote.total_sats == 1000
        assert quote.amount_sats == 900
        assert quote.fee_sats == 3
        assert quote.net_sats == 997

    async def test_quote_without_balance(self, services):
        with pytest.raises(InsufficientBalanceError):
            await services.settlement.withdraw_quote(SELLER, "lnbc-900-x")

    async def test_execute(self, services, wallet, make_stash):
        await fund(services, wallet, make_stash, 1000)
        wallet.actual_fee = 2

        result = await services.settlement.withdraw(SELLER, "lnbc-900-x")

        assert result.paid is True
        assert (result.amount_sats, result.fee_sats, result.change_sats) == (900, 2, 98)
        assert result.preimage == "00" * 32
        assert await balance(services) == 98

    async def test_execute_requires_invoice(self, services):
        with pytest.raises(ValidationError):
            await services.settlement.withdraw(SELLER, "")


class TestEarningsAndDashboard:
    async def test_earnings_are_decrypted_tokens(self, services, wallet, make_stash):
        await fund(services, wallet, make_stash, 300, 200)

        earnings = await services.settlement.earnings(SELLER)

        assert earnings.total_sats == 500
        assert len(earnings.tokens) == 2
        assert all(t.startswith("cashuA") for t in earnings.tokens)
        assert sum(services.custody.client.token_value(t) for t in earnings.tokens) == 500

    async def test_dashboard_counts_paid_unlocks(self, services, wallet, make_stash):
        sold = await make_stash(price_sats=100, title="Sold")
        await make_stash(price_sats=200, title="Unsold")
        await services.payments.unlock(sold.id, wallet.issue_token(100))
        await services.payments.unlock(sold.id, wallet.issue_token(150))
        await services.payments.create_invoice(sold.id)
        await services.supervisor.drain()

        dashboard = await services.settlement.dashboard(SELLER)

        stats = {s.title: s for s in dashboard.stashes}
        assert stats["Sold"].unlock_count == 2
        assert stats["Sold"].total_earned == 250
        assert stats["Unsold"].unlock_count == 0
        assert stats["Unsold"].total_earned == 0
        assert dashboard.earnings.total_sats == 250

    async def test_dashboard_is_per_seller(self, services, make_stash):
        await make_stash(seller=OTHER_SELLER)
        dashboard = await services.settlement.dashboard(SELLER)
        assert dashboard.stashes == []
        assert dashboard.earnings.total_sats == 0
