"""
Tests for the Dispatcher: actor defaults, order conversions, pre-flight
checks, ASSERT and meta commands against the in-memory remote.
"""
from dataclasses import dataclass
from typing import ClassVar, Optional, Tuple
from unittest.mock import patch

import pytest

from perpconsole.console.commands import COMMAND_TYPES, ActorSelector, Command
from perpconsole.console.dispatcher import Dispatcher
from perpconsole.console.tokenizer import parse_command
from perpconsole.domain.models import BestPrices, CommandResult, Order, Position, Side
from perpconsole.exceptions import AssertionFailure, TransientNetworkError, ValidationError, RemoteRevertError

USDC = 10 ** 6
UNIT = 10 ** 18
MARKET = "ETH-PERP"


@pytest.fixture
def user1(session):
    return session.addresses[1]


@pytest.fixture
def user2(session):
    return session.addresses[2]


class TestActorDefaults:
    @pytest.mark.asyncio
    async def test_omitted_actor_uses_current(self, dispatcher, fake_remote, session):
        result = await dispatcher.execute_text("DEP 5")

        assert result.ok
        assert result.actor == "DEPLOYER"
        assert fake_remote.calls_to("deposit_collateral") == [("deposit_collateral", session.addresses[0], 5 * USDC)]

    @pytest.mark.asyncio
    async def test_no_actor_is_validation_error(self, dispatcher, fake_remote, session):
        session.current_actor = None

        result = await dispatcher.execute_text("DEP 5")

        assert not result.ok
        assert "ValidationError" in result.summary
        assert fake_remote.calls_to("deposit_collateral") == []

    @pytest.mark.asyncio
    async def test_unconfigured_actor(self, dispatcher):
        result = await dispatcher.execute_text("U7 DEP 5")

        assert not result.ok
        assert "U7 is not configured" in result.summary

    @pytest.mark.asyncio
    async def test_switch_user_changes_default(self, dispatcher, fake_remote, user2):
        await dispatcher.execute_text("SU U2")
        result = await dispatcher.execute_text("DEP 5")

        assert result.actor == "U2"
        assert fake_remote.calls_to("deposit_collateral")[0][1] == user2


class TestLimitOrders:
    @pytest.mark.asyncio
    async def test_insufficient_collateral_yields_error_result(self, dispatcher, fake_remote, user1):
        """Available 100, LB 50 x 10 requires 500: pre-flight warns, the remote reverts."""
        fake_remote.collateral[user1] = 100 * USDC

        result = await dispatcher.execute_text("U1 LB 50 1 10")

        assert isinstance(result, CommandResult)
        assert not result.ok
        assert result.opcode == "LB"
        assert "RemoteRevertError" in result.summary

    @pytest.mark.asyncio
    async def test_strict_mode_blocks_before_submission(self, dispatcher, fake_remote, session, user1):
        fake_remote.collateral[user1] = 100 * USDC
        session.strict = True

        with pytest.raises(ValidationError, match="insufficient collateral"):
            await dispatcher.dispatch(parse_command("U1 LB 50 1 10"))
        assert fake_remote.calls_to("place_limit_order") == []

    @pytest.mark.asyncio
    async def test_units_order_submitted(self, dispatcher, fake_remote, user1):
        fake_remote.collateral[user1] = 1000 * USDC

        result = await dispatcher.execute_text("U1 LB 10 1 50")

        assert result.ok
        assert "warning" not in result.summary
        assert fake_remote.calls_to("place_limit_order") == [
            ("place_limit_order", user1, MARKET, Side.BUY, 10 * USDC, 50 * UNIT)
        ]

    @pytest.mark.asyncio
    async def test_value_mode_converts_quote_to_size(self, dispatcher, fake_remote, user1):
        fake_remote.collateral[user1] = 1000 * USDC

        result = await dispatcher.execute_text("U1 LS 2000 VALUE 100")

        assert result.ok
        call = fake_remote.calls_to("place_limit_order")[0]
        assert call[3] is Side.SELL
        assert call[5] == 5 * 10 ** 16

    @pytest.mark.asyncio
    async def test_zero_price_rejected(self, dispatcher, fake_remote):
        result = await dispatcher.execute_text("U1 LB 0 1 1")

        assert not result.ok
        assert fake_remote.calls_to("place_limit_order") == []


class TestMarketOrders:
    @pytest.mark.asyncio
    async def test_value_buy_uses_best_ask(self, dispatcher, fake_remote, user1):
        fake_remote.collateral[user1] = 1000 * USDC
        fake_remote.best[MARKET] = BestPrices(bid=1990 * USDC, ask=2000 * USDC)

        result = await dispatcher.execute_text("U1 MB VALUE 100 30")

        assert result.ok
        assert fake_remote.calls_to("place_market_order") == [
            ("place_market_order", user1, MARKET, Side.BUY, 5 * 10 ** 16, 30)
        ]

    @pytest.mark.asyncio
    async def test_value_sell_falls_back_to_mark(self, dispatcher, fake_remote, user1):
        fake_remote.collateral[user1] = 1000 * USDC
        fake_remote.marks[MARKET] = 2500 * USDC

        result = await dispatcher.execute_text("U1 MS 2 250")

        assert result.ok
        assert fake_remote.calls_to("place_market_order")[0][4] == 10 ** 17

    @pytest.mark.asyncio
    async def test_value_without_any_price_fails(self, dispatcher, fake_remote):
        result = await dispatcher.execute_text("U1 MB 2 100")

        assert not result.ok
        assert "no reference price" in result.summary
        assert fake_remote.calls_to("place_market_order") == []

    @pytest.mark.parametrize("slippage", ["0", "10001"])
    @pytest.mark.asyncio
    async def test_slippage_out_of_range(self, dispatcher, fake_remote, slippage):
        result = await dispatcher.execute_text(f"U1 MB 1 1 {slippage}")

        assert not result.ok
        assert "slippage" in result.summary


class TestCollateralAndCancels:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_through_gateway(self, dispatcher, fake_remote, recording_sleep):
        fake_remote.fail_next("deposit_collateral", TransientNetworkError("read ECONNRESET"))

        result = await dispatcher.execute_text("U1 DEP 10")

        assert result.ok
        assert len(fake_remote.calls_to("deposit_collateral")) == 2
        assert recording_sleep.delays == [0.25]

    @pytest.mark.asyncio
    async def test_withdraw_over_available_warns_then_reverts(self, dispatcher, fake_remote, user1):
        fake_remote.collateral[user1] = 100 * USDC

        result = await dispatcher.execute_text("U1 WDR 150")

        assert not result.ok
        assert len(fake_remote.calls_to("withdraw_collateral")) == 1

    @pytest.mark.asyncio
    async def test_cancel_nth_order_is_one_based(self, dispatcher, fake_remote, user1):
        fake_remote.orders[(user1, MARKET)] = [
            Order("11", MARKET, Side.BUY, 10 * USDC, UNIT),
            Order("12", MARKET, Side.SELL, 12 * USDC, UNIT),
        ]

        result = await dispatcher.execute_text("U1 CNO 2")

        assert result.ok
        assert fake_remote.calls_to("cancel_order") == [("cancel_order", user1, MARKET, "12")]

    @pytest.mark.asyncio
    async def test_cancel_nth_out_of_range(self, dispatcher, fake_remote):
        result = await dispatcher.execute_text("U1 CNO 1")

        assert not result.ok
        assert "out of range" in result.summary

    @pytest.mark.asyncio
    async def test_market_scoped_command_needs_market(self, dispatcher, session):
        session.market_id = None

        result = await dispatcher.execute_text("U1 CA")

        assert not result.ok
        assert "no active market" in result.summary


class TestMarginAndLiquidation:
    @pytest.fixture
    def with_position(self, fake_remote, user1):
        fake_remote.positions[user1] = [
            Position(market_id=MARKET, size=UNIT, entry_price=2000 * USDC, margin_locked=200 * USDC)
        ]

    @pytest.mark.asyncio
    async def test_top_up_uses_position_market(self, dispatcher, fake_remote, user1, with_position):
        fake_remote.collateral[user1] = 1000 * USDC

        result = await dispatcher.execute_text("U1 TUP 1 50")

        assert result.ok
        assert fake_remote.calls_to("top_up_margin") == [("top_up_margin", user1, MARKET, 50 * USDC)]

    @pytest.mark.asyncio
    async def test_reduce_beyond_locked_margin(self, dispatcher, fake_remote, with_position):
        result = await dispatcher.execute_text("U1 RED 1 500")

        assert not result.ok
        assert fake_remote.calls_to("reduce_margin") == []

    @pytest.mark.asyncio
    async def test_position_index_out_of_range(self, dispatcher, with_position):
        result = await dispatcher.execute_text("U1 TUP 2 5")

        assert not result.ok
        assert "position index 2 out of range" in result.summary

    @pytest.mark.asyncio
    async def test_liquidation_scan_and_direct(self, dispatcher, fake_remote, user1):
        assert (await dispatcher.execute_text("LIQ")).ok
        assert (await dispatcher.execute_text("U1 LIQ")).ok

        assert fake_remote.calls_to("trigger_liquidation_scan") == [("trigger_liquidation_scan", MARKET)]
        assert fake_remote.calls_to("liquidate_account") == [("liquidate_account", user1, MARKET)]


class TestAssert:
    @pytest.mark.asyncio
    async def test_bid_at_threshold_passes(self, dispatcher, fake_remote):
        fake_remote.best[MARKET] = BestPrices(bid=10 * USDC, ask=11 * USDC)

        result = await dispatcher.execute_text("ASSERT BID >= 10")

        assert result.ok

    @pytest.mark.asyncio
    async def test_bid_below_threshold_fails_with_both_values(self, dispatcher, fake_remote):
        fake_remote.best[MARKET] = BestPrices(bid=10 * USDC - 1, ask=11 * USDC)

        with pytest.raises(AssertionFailure) as exc_info:
            await dispatcher.dispatch(parse_command("ASSERT BID >= 10"))

        assert exc_info.value.expected == 10 * USDC
        assert exc_info.value.actual == 10 * USDC - 1

        result = await dispatcher.execute_text("ASSERT BID >= 10")
        assert not result.ok
        assert "AssertionFailure" in result.summary

    @pytest.mark.asyncio
    async def test_position_sides(self, dispatcher, fake_remote, user1):
        fake_remote.positions[user1] = [Position(market_id=MARKET, size=-2 * UNIT, entry_price=2000 * USDC)]

        assert (await dispatcher.execute_text("ASSERT POSITION U1 SHORT >= 2")).ok
        assert (await dispatcher.execute_text("ASSERT POSITION U1 LONG == 0")).ok
        assert (await dispatcher.execute_text("ASSERT POSITION U1 == -2")).ok
        assert not (await dispatcher.execute_text("ASSERT POSITION U1 LONG > 0")).ok

    @pytest.mark.asyncio
    async def test_avail_falls_back_when_summary_unavailable(self, dispatcher, fake_remote, user1):
        fake_remote.collateral[user1] = 150 * USDC
        fake_remote.margin_used[user1] = 50 * USDC
        fake_remote.fail_always("get_account_summary", RemoteRevertError("method not found"))

        result = await dispatcher.execute_text("ASSERT AVAIL U1 >= 100")

        assert result.ok
        assert len(fake_remote.calls_to("get_available_collateral")) == 1

    @pytest.mark.asyncio
    async def test_assert_follows_active_market(self, dispatcher, fake_remote):
        await dispatcher.execute_text("MKT BTC-PERP")

        assert (await dispatcher.execute_text("ASSERT BID >= 0")).ok
        assert fake_remote.calls_to("get_best_prices") == [("get_best_prices", "BTC-PERP")]


class TestMetaAndViews:
    @pytest.mark.asyncio
    async def test_sleep_uses_injected_sleep(self, dispatcher, recording_sleep):
        assert (await dispatcher.execute_text("SLEEP 250")).ok
        assert recording_sleep.delays == [0.25]

    @pytest.mark.asyncio
    async def test_strict_toggle(self, dispatcher, session):
        await dispatcher.execute_text("STRICT ON")
        assert session.strict is True
        await dispatcher.execute_text("STRICT OFF")
        assert session.strict is False

    @pytest.mark.asyncio
    async def test_history_view(self, dispatcher, ledger):
        for n in range(3):
            ledger.append(CommandResult.success("DEP", f"deposit {n}"))

        result = await dispatcher.execute_text("HIST 2")

        assert result.ok
        lines = result.summary.splitlines()
        assert len(lines) == 2
        assert "deposit 2" in lines[-1]

    @pytest.mark.asyncio
    async def test_help_lists_opcodes(self, dispatcher):
        result = await dispatcher.execute_text("HELP")

        assert "LB/LS price mode amount" in result.summary
        assert "ASSERT" in result.summary

    @pytest.mark.asyncio
    async def test_positions_and_order_book_views(self, dispatcher, fake_remote, user1):
        fake_remote.positions[user1] = [Position(market_id=MARKET, size=UNIT, entry_price=2000 * USDC)]
        fake_remote.best[MARKET] = BestPrices(bid=1999 * USDC, ask=2001 * USDC)

        pos = await dispatcher.execute_text("U1 POS")
        book = await dispatcher.execute_text("OB 3")

        assert "#1 ETH-PERP LONG 1 @ 2000" in pos.summary
        assert any("BID" in line and "1999" in line for line in book.summary.splitlines())

    @pytest.mark.asyncio
    async def test_portfolio_view(self, dispatcher, fake_remote, user1):
        fake_remote.collateral[user1] = 1000 * USDC

        result = await dispatcher.execute_text("U1 PF")

        assert result.ok
        assert "portfolio 1000.00" in result.summary

    @pytest.mark.asyncio
    async def test_run_without_runner(self, dispatcher):
        result = await dispatcher.execute_text("RUN other.txt")

        assert not result.ok
        assert "RUN is not available" in result.summary

    @pytest.mark.asyncio
    async def test_parse_error_becomes_error_result(self, dispatcher):
        result = await dispatcher.execute_text("BOGUS 1 2")

        assert not result.ok
        assert result.opcode == "BOGUS"
        assert "ParseError" in result.summary


class TestHandlerTable:
    def test_every_command_type_has_a_handler(self, session, gateway, fake_remote, ledger):
        dispatcher = Dispatcher(session, gateway, fake_remote, ledger)

        assert set(dispatcher._handlers) == set(COMMAND_TYPES)

    def test_missing_handler_detected_at_construction(self, session, gateway, fake_remote, ledger):
        @dataclass(frozen=True)
        class Unhandled(Command):
            opcodes: ClassVar[Tuple[str, ...]] = ("NOPE",)
            actor: Optional[ActorSelector]

        with patch("perpconsole.console.dispatcher.COMMAND_TYPES", COMMAND_TYPES + (Unhandled,)):
            with pytest.raises(TypeError, match="Unhandled"):
                Dispatcher(session, gateway, fake_remote, ledger)
