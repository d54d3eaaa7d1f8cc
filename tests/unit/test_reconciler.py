"""
Tests for FinancialReconciler: source fallback, estimates, derived
portfolio value and cross-source discrepancies.
"""
import pytest

from perpconsole.domain.models import BestPrices, FieldSource, Position
from perpconsole.exceptions import RemoteRevertError, TransientNetworkError
from perpconsole.gateway.remote_gateway import RemoteCallGateway
from perpconsole.gateway.retry import RetryPolicy
from perpconsole.reconciliation.reconciler import (
    FinancialReconciler,
    adjusted_realized_pnl,
    derive_portfolio_value,
    position_unrealized_pnl,
)

USDC = 10 ** 6
UNIT = 10 ** 18
PNL = 10 ** 18
MARKET = "ETH-PERP"
ADDR = "0xa000000000000000000000000000000000000001"


@pytest.fixture
def reconciler(gateway, fake_remote):
    return FinancialReconciler(gateway, fake_remote)


def _long(size_units=2, entry=2000, margin=0, haircut=0, market=MARKET):
    return Position(
        market_id=market,
        size=size_units * UNIT,
        entry_price=entry * USDC,
        margin_locked=margin * USDC,
        accrued_haircut=haircut * USDC,
    )


class TestPureCalculations:
    def test_long_and_short_unrealized(self):
        long = _long(size_units=2, entry=2000)
        short = Position(market_id=MARKET, size=-UNIT, entry_price=2000 * USDC)

        assert position_unrealized_pnl(long, 2100 * USDC) == 200 * PNL
        assert position_unrealized_pnl(short, 2100 * USDC) == -100 * PNL

    def test_unrealized_truncates_toward_zero(self):
        tiny = Position(market_id=MARKET, size=-1, entry_price=0)

        assert position_unrealized_pnl(tiny, 1) == 0

    def test_negative_realized_zeroed_only_when_flat(self):
        assert adjusted_realized_pnl(-50 * PNL, has_open_positions=False) == 0
        assert adjusted_realized_pnl(-50 * PNL, has_open_positions=True) == -50 * PNL
        assert adjusted_realized_pnl(30 * PNL, has_open_positions=False) == 30 * PNL

    def test_portfolio_formula(self):
        value = derive_portfolio_value(
            collateral=1000 * USDC,
            adjusted_realized=adjusted_realized_pnl(-50 * PNL, has_open_positions=True),
            unrealized_pnl=20 * PNL,
            socialized_loss=5 * USDC,
        )

        assert value == 965 * PNL

    @pytest.mark.asyncio
    async def test_engine_portfolio_matches_formula(self, reconciler, fake_remote):
        fake_remote.collateral[ADDR] = 1000 * USDC
        fake_remote.realized_pnl[ADDR] = -50 * PNL
        fake_remote.socialized_loss[ADDR] = 5 * USDC
        fake_remote.summary_unrealized[ADDR] = 200 * PNL
        fake_remote.positions[ADDR] = [_long(size_units=2, entry=2000)]
        fake_remote.marks[MARKET] = 2100 * USDC

        report = await reconciler.reconcile(ADDR)

        assert report.derived_portfolio_value.value == derive_portfolio_value(
            1000 * USDC, -50 * PNL, 200 * PNL, 5 * USDC
        )
        assert report.derived_portfolio_value.value == 1145 * PNL


class TestPrimarySource:
    @pytest.mark.asyncio
    async def test_flat_account_with_realized_loss(self, reconciler, fake_remote):
        """No positions and realized -50: the loss is not subtracted again."""
        fake_remote.collateral[ADDR] = 1000 * USDC
        fake_remote.realized_pnl[ADDR] = -50 * PNL

        report = await reconciler.reconcile(ADDR)

        assert report.adjusted_realized_pnl.value == 0
        assert report.account.realized_pnl.value == -50 * PNL
        assert report.derived_portfolio_value.value == 1000 * PNL
        assert report.derived_portfolio_value.source is FieldSource.DERIVED
        assert report.discrepancies == []

    @pytest.mark.asyncio
    async def test_summary_fields_are_primary(self, reconciler, fake_remote):
        fake_remote.collateral[ADDR] = 1000 * USDC
        fake_remote.margin_used[ADDR] = 100 * USDC
        fake_remote.margin_reserved[ADDR] = 50 * USDC

        report = await reconciler.reconcile(ADDR)
        acct = report.account

        assert acct.available.value == 850 * USDC
        assert acct.total_committed.value == 150 * USDC
        assert acct.healthy is True
        assert acct.estimated_fields() == []
        assert acct.collateral.source is FieldSource.PRIMARY

    @pytest.mark.asyncio
    async def test_unrealized_from_live_marks(self, reconciler, fake_remote):
        fake_remote.collateral[ADDR] = 1000 * USDC
        fake_remote.positions[ADDR] = [
            _long(size_units=2, entry=2000),
            Position(market_id="BTC-PERP", size=-UNIT, entry_price=30000 * USDC),
        ]
        fake_remote.marks[MARKET] = 2100 * USDC
        fake_remote.marks["BTC-PERP"] = 30050 * USDC
        fake_remote.summary_unrealized[ADDR] = 150 * PNL

        report = await reconciler.reconcile(ADDR)

        assert report.account.unrealized_pnl.value == 150 * PNL
        assert report.account.unrealized_pnl.source is FieldSource.DERIVED
        assert report.positions[0].mark_price == 2100 * USDC
        assert report.positions[1].unrealized_pnl == -50 * PNL
        assert report.derived_portfolio_value.value == 1150 * PNL


class TestFallbacks:
    @pytest.mark.asyncio
    async def test_per_field_getters_when_summary_fails(self, reconciler, fake_remote):
        fake_remote.fail_always("get_account_summary", RemoteRevertError("method not found"))
        fake_remote.collateral[ADDR] = 500 * USDC
        fake_remote.margin_used[ADDR] = 20 * USDC
        fake_remote.margin_reserved[ADDR] = 10 * USDC

        report = await reconciler.reconcile(ADDR)
        acct = report.account

        assert acct.collateral.source is FieldSource.FALLBACK
        assert acct.available.source is FieldSource.FALLBACK
        assert acct.available.value == 470 * USDC
        assert acct.total_committed.source is FieldSource.ESTIMATE
        assert acct.total_committed.value == 30 * USDC
        assert acct.healthy is None
        assert acct.healthy_source is FieldSource.ABSENT

    @pytest.mark.asyncio
    async def test_available_estimated_when_getter_also_fails(self, reconciler, fake_remote):
        fake_remote.fail_always("get_account_summary", RemoteRevertError("method not found"))
        fake_remote.fail_always("get_available_collateral", RemoteRevertError("method not found"))
        fake_remote.collateral[ADDR] = 500 * USDC
        fake_remote.margin_used[ADDR] = 20 * USDC

        report = await reconciler.reconcile(ADDR)

        assert report.account.available.source is FieldSource.ESTIMATE
        assert report.account.available.value == 480 * USDC
        assert "available" in report.account.estimated_fields()

    @pytest.mark.asyncio
    async def test_missing_collateral_leaves_portfolio_absent(self, reconciler, fake_remote):
        fake_remote.fail_always("get_account_summary", RemoteRevertError("no"))
        fake_remote.fail_always("get_collateral", RemoteRevertError("no"))

        report = await reconciler.reconcile(ADDR)

        assert report.derived_portfolio_value.is_absent
        assert report.portfolio_value is None
        assert "collateral" in report.account.absent_fields()

    @pytest.mark.asyncio
    async def test_missing_mark_prefers_summary_unrealized(self, reconciler, fake_remote):
        fake_remote.positions[ADDR] = [_long()]
        fake_remote.summary_unrealized[ADDR] = 123 * PNL

        report = await reconciler.reconcile(ADDR)

        assert report.account.unrealized_pnl.value == 123 * PNL
        assert report.account.unrealized_pnl.source is FieldSource.PRIMARY

    @pytest.mark.asyncio
    async def test_mid_price_mark_is_an_estimate(self, reconciler, fake_remote):
        fake_remote.fail_always("get_account_summary", RemoteRevertError("no"))
        fake_remote.collateral[ADDR] = 1000 * USDC
        fake_remote.positions[ADDR] = [_long(size_units=1, entry=2000)]
        fake_remote.best[MARKET] = BestPrices(bid=2090 * USDC, ask=2110 * USDC)

        report = await reconciler.reconcile(ADDR)

        assert report.account.unrealized_pnl.value == 100 * PNL
        assert report.account.unrealized_pnl.source is FieldSource.ESTIMATE
        assert report.derived_portfolio_value.is_estimate

    @pytest.mark.asyncio
    async def test_socialized_loss_estimated_from_haircuts(self, reconciler, fake_remote):
        fake_remote.fail_always("get_socialized_loss", RemoteRevertError("no"))
        fake_remote.collateral[ADDR] = 1000 * USDC
        fake_remote.positions[ADDR] = [_long(size_units=1, entry=2000, haircut=7)]
        fake_remote.marks[MARKET] = 2000 * USDC

        report = await reconciler.reconcile(ADDR)

        assert report.socialized_loss.value == 7 * USDC
        assert report.socialized_loss.source is FieldSource.ESTIMATE
        assert report.derived_portfolio_value.value == 993 * PNL
        assert report.derived_portfolio_value.is_estimate

    @pytest.mark.asyncio
    async def test_transient_source_failure_is_retried(self, fake_remote, recording_sleep):
        gateway = RemoteCallGateway(3, RetryPolicy(attempts=3), sleep=recording_sleep, probe_before_retry=False)
        fake_remote.fail_next("get_account_summary", TransientNetworkError("socket hang up"))
        fake_remote.collateral[ADDR] = 10 * USDC

        report = await FinancialReconciler(gateway, fake_remote).reconcile(ADDR)

        assert report.account.collateral.source is FieldSource.PRIMARY
        assert recording_sleep.delays == [0.25]


class TestDiscrepancies:
    @pytest.mark.asyncio
    async def test_position_size_mismatch_is_recorded_not_raised(self, reconciler, fake_remote):
        fake_remote.positions[ADDR] = [_long(size_units=2)]
        fake_remote.marks[MARKET] = 2000 * USDC
        fake_remote.tracked_sizes[(ADDR, MARKET)] = 3 * UNIT

        report = await reconciler.reconcile(ADDR)

        sizes = [d for d in report.discrepancies if d.kind == "position_size"]
        assert len(sizes) == 1
        assert sizes[0].market_id == MARKET
        assert sizes[0].primary == 2 * UNIT
        assert sizes[0].secondary == 3 * UNIT

    @pytest.mark.asyncio
    async def test_extra_market_checked_for_hidden_exposure(self, reconciler, fake_remote):
        fake_remote.tracked_sizes[(ADDR, "SOL-PERP")] = UNIT

        report = await reconciler.reconcile(ADDR, market_ids=["SOL-PERP"])

        assert [d.market_id for d in report.discrepancies] == ["SOL-PERP"]

    @pytest.mark.asyncio
    async def test_unverifiable_market(self, reconciler, fake_remote):
        fake_remote.positions[ADDR] = [_long()]
        fake_remote.marks[MARKET] = 2000 * USDC
        fake_remote.fail_always("get_position_size", RemoteRevertError("no tracker"))

        report = await reconciler.reconcile(ADDR)

        assert report.unverified_markets == [MARKET]
        assert report.discrepancies == []

    @pytest.mark.asyncio
    async def test_margin_locked_mismatch(self, reconciler, fake_remote):
        fake_remote.positions[ADDR] = [_long(margin=200)]
        fake_remote.margin_used[ADDR] = 500 * USDC
        fake_remote.marks[MARKET] = 2000 * USDC

        report = await reconciler.reconcile(ADDR)

        kinds = [d.kind for d in report.discrepancies]
        assert kinds == ["margin_locked"]

    @pytest.mark.asyncio
    async def test_unrealized_drift_beyond_tolerance(self, reconciler, fake_remote):
        fake_remote.positions[ADDR] = [_long(size_units=1, entry=2000)]
        fake_remote.marks[MARKET] = 2100 * USDC
        fake_remote.summary_unrealized[ADDR] = 90 * PNL

        report = await reconciler.reconcile(ADDR)

        drift = [d for d in report.discrepancies if d.kind == "unrealized_pnl"]
        assert len(drift) == 1
        assert drift[0].primary == 100 * PNL

    @pytest.mark.asyncio
    async def test_unrealized_within_tolerance(self, reconciler, fake_remote):
        fake_remote.positions[ADDR] = [_long(size_units=1, entry=2000)]
        fake_remote.marks[MARKET] = 2100 * USDC
        fake_remote.summary_unrealized[ADDR] = 100 * PNL - 10 ** 15

        report = await reconciler.reconcile(ADDR)

        assert report.discrepancies == []
