"""
Command dispatcher: routes parsed command variants to their handlers.

Every remote interaction goes through the RemoteCallGateway. Handlers return a
short human-readable summary; failures raise a CommandError subclass which
execute() turns into an error CommandResult. FatalError and unexpected
exceptions propagate.
"""
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Type

from perpconsole import constants
from perpconsole.console.commands import (
    COMMAND_TYPES,
    AmountMode,
    AssertCondition,
    AssertTarget,
    CancelAll,
    CancelNthOrder,
    CancelOrder,
    Command,
    Deposit,
    PlaceLimitOrder,
    PlaceMarketOrder,
    ReduceMargin,
    RunScript,
    SetMarket,
    SetStrict,
    ShowHelp,
    ShowHistory,
    ShowOrderBook,
    ShowOrders,
    ShowPortfolio,
    ShowPositions,
    Sleep,
    SwitchUser,
    TopUpMargin,
    TriggerLiquidation,
    Withdraw,
)
from perpconsole.console.ledger import HistoryLedger
from perpconsole.console.session import Actor, Session
from perpconsole.console.tokenizer import parse_command
from perpconsole.domain.models import CommandResult, Position, Side
from perpconsole.domain.protocols import RemoteSystem
from perpconsole.exceptions import AssertionFailure, CommandError, ParseError, ValidationError
from perpconsole.gateway.remote_gateway import RemoteCallGateway
from perpconsole.monitoring.logger import get_logger
from perpconsole.reconciliation.reconciler import FinancialReconciler
from perpconsole.utils.fixed_point import format_fixed, mul_div

logger = get_logger(__name__)

Handler = Callable[[Command, Optional[Actor]], Awaitable[str]]

# Async callback that replays a script file and returns its summary line
ScriptRunner = Callable[[str], Awaitable[str]]

_SIZE_SCALE = 10 ** constants.SIZE_DECIMALS


def _price(value: Optional[int]) -> str:
    return format_fixed(value, constants.PRICE_DECIMALS)


def _size(value: Optional[int]) -> str:
    return format_fixed(value, constants.SIZE_DECIMALS)


def _quote(value: Optional[int]) -> str:
    return format_fixed(value, constants.QUOTE_DECIMALS)


def _side_label(side: Side) -> str:
    return "BUY" if side.is_buy else "SELL"


class Dispatcher:
    """
    Executes commands against the remote system on behalf of the session.

    The dispatcher is the only writer of Session state. It never touches the
    ledger; callers append the CommandResult it returns.
    """

    def __init__(
        self,
        session: Session,
        gateway: RemoteCallGateway,
        remote: RemoteSystem,
        ledger: HistoryLedger,
        reconciler: Optional[FinancialReconciler] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session
        self.gateway = gateway
        self.remote = remote
        self.ledger = ledger
        self.reconciler = reconciler or FinancialReconciler(gateway, remote)
        self.script_runner: Optional[ScriptRunner] = None
        self._sleep = sleep

        self._handlers: Dict[Type[Command], Handler] = {
            PlaceLimitOrder: self._limit_order,
            PlaceMarketOrder: self._market_order,
            Deposit: self._deposit,
            Withdraw: self._withdraw,
            CancelAll: self._cancel_all,
            CancelOrder: self._cancel_order,
            CancelNthOrder: self._cancel_nth,
            TopUpMargin: self._top_up,
            ReduceMargin: self._reduce,
            TriggerLiquidation: self._liquidate,
            ShowPositions: self._show_positions,
            ShowOrders: self._show_orders,
            ShowOrderBook: self._show_order_book,
            ShowPortfolio: self._show_portfolio,
            ShowHistory: self._show_history,
            ShowHelp: self._show_help,
            AssertCondition: self._assert,
            SwitchUser: self._switch_user,
            SetMarket: self._set_market,
            Sleep: self._do_sleep,
            SetStrict: self._set_strict,
            RunScript: self._run_script,
        }
        missing = [t.__name__ for t in COMMAND_TYPES if t not in self._handlers]
        if missing:
            raise TypeError(f"Dispatcher has no handler for: {', '.join(missing)}")

    # ============ ENTRY POINTS ============

    async def dispatch(self, command: Command) -> str:
        """
        Run one command and return its summary.

        Raises:
            CommandError: Command-scoped failure (validation, assertion, remote)
            FatalError: Gateway shut down or remote unavailable
        """
        handler = self._handlers.get(type(command))
        if handler is None:
            raise TypeError(f"unsupported command type {type(command).__name__}")
        actor = self.session.resolve_actor(command.actor) if command.requires_actor else None
        return await handler(command, actor)

    async def execute(self, command: Command, text: Optional[str] = None) -> CommandResult:
        """Dispatch a command and capture its outcome as a CommandResult."""
        actor_label = command.actor.label if command.actor is not None else None
        if actor_label is None and command.requires_actor and self.session.current is not None:
            actor_label = self.session.current.label

        try:
            summary = await self.dispatch(command)
        except CommandError as e:
            logger.warning(
                "COMMAND_FAILED",
                opcode=command.opcode,
                actor=actor_label,
                error_type=type(e).__name__,
                error=str(e),
            )
            return CommandResult.failure(command.opcode, f"{type(e).__name__}: {e}", actor=actor_label, text=text)

        logger.info("COMMAND_OK", opcode=command.opcode, actor=actor_label)
        return CommandResult.success(command.opcode, summary, actor=actor_label, text=text)

    async def execute_text(self, statement: str) -> CommandResult:
        """Parse and execute one statement. Parse errors become error results."""
        try:
            command = parse_command(statement)
        except ParseError as e:
            tokens = statement.split()
            opcode = tokens[0].upper() if tokens else "?"
            logger.warning("COMMAND_PARSE_FAILED", text=statement, error=str(e))
            return CommandResult.failure(opcode, f"ParseError: {e}", text=statement)
        return await self.execute(command, text=statement)

    # ============ HELPERS ============

    async def _call(self, label: str, fn, *args):
        return await self.gateway.call(fn, *args, label=label)

    async def _available(self, actor: Actor) -> Optional[int]:
        available = await self.reconciler.available_collateral(actor.address)
        return available.value

    async def _preflight(self, actor: Actor, required: int, what: str) -> Optional[str]:
        """
        Compare a quote amount against available collateral.

        Returns a warning string (non-strict) or None when the check passes
        or cannot be made.

        Raises:
            ValidationError: Insufficient collateral in strict mode
        """
        available = await self._available(actor)
        if available is None:
            logger.info("PREFLIGHT_SKIPPED", actor=actor.label, reason="available collateral unknown")
            return None
        if required <= available:
            return None

        message = f"insufficient collateral for {what}: requires {_quote(required)}, available {_quote(available)}"
        if self.session.strict:
            raise ValidationError(message)
        logger.warning("PREFLIGHT_WARNING", actor=actor.label, required=required, available=available)
        return message

    async def _reference_price(self, market_id: str, side: Side) -> Optional[int]:
        """Best ask for buys, best bid for sells, mark price as fallback."""
        prices = await self._call("getBestPrices", self.remote.get_best_prices, market_id)
        if side.is_buy and prices.has_ask:
            return prices.ask
        if not side.is_buy and prices.has_bid:
            return prices.bid
        mark = await self._call("getMarkPrice", self.remote.get_mark_price, market_id)
        return mark if mark > 0 else None

    async def _positions(self, actor: Actor) -> List[Position]:
        positions = await self._call("getPositions", self.remote.get_positions, actor.address)
        return [p for p in positions if p.is_open]

    async def _position_at(self, actor: Actor, index: int) -> Position:
        positions = await self._positions(actor)
        if not 1 <= index <= len(positions):
            raise ValidationError(f"position index {index} out of range (1..{len(positions)})")
        return positions[index - 1]

    @staticmethod
    def _with_warning(summary: str, warning: Optional[str]) -> str:
        return f"{summary} [warning: {warning}]" if warning else summary

    # ============ ORDERS ============

    async def _limit_order(self, cmd: PlaceLimitOrder, actor: Actor) -> str:
        market_id = self.session.require_market()
        if cmd.price <= 0:
            raise ValidationError("limit price must be greater than 0")

        if cmd.mode is AmountMode.VALUE:
            size = mul_div(cmd.amount, _SIZE_SCALE, cmd.price)
        else:
            size = cmd.amount
        if size <= 0:
            raise ValidationError("order size must be greater than 0")

        notional = mul_div(cmd.price, size, _SIZE_SCALE)
        warning = await self._preflight(actor, notional, f"{cmd.opcode} notional")

        ref = await self._call(
            cmd.opcode, self.remote.place_limit_order, actor.address, market_id, cmd.side, cmd.price, size
        )
        summary = (
            f"{actor.label} {_side_label(cmd.side)} limit {_size(size)} @ {_price(cmd.price)} "
            f"on {market_id} (notional {_quote(notional)}) -> {ref}"
        )
        return self._with_warning(summary, warning)

    async def _market_order(self, cmd: PlaceMarketOrder, actor: Actor) -> str:
        market_id = self.session.require_market()
        if not 1 <= cmd.slippage_bps <= constants.MAX_SLIPPAGE_BPS:
            raise ValidationError(f"slippage must be within 1..{constants.MAX_SLIPPAGE_BPS} bps")

        ref_price = await self._reference_price(market_id, cmd.side)
        if cmd.mode is AmountMode.VALUE:
            if ref_price is None:
                raise ValidationError(f"no reference price on {market_id} to convert a quote amount")
            size = mul_div(cmd.amount, _SIZE_SCALE, ref_price)
            notional: Optional[int] = cmd.amount
        else:
            size = cmd.amount
            notional = mul_div(ref_price, size, _SIZE_SCALE) if ref_price is not None else None
        if size <= 0:
            raise ValidationError("order size must be greater than 0")

        warning = None
        if notional is not None:
            warning = await self._preflight(actor, notional, f"{cmd.opcode} notional")

        ref = await self._call(
            cmd.opcode,
            self.remote.place_market_order,
            actor.address,
            market_id,
            cmd.side,
            size,
            cmd.slippage_bps,
        )
        summary = (
            f"{actor.label} {_side_label(cmd.side)} market {_size(size)} on {market_id} "
            f"(ref {_price(ref_price)}, slippage {cmd.slippage_bps} bps) -> {ref}"
        )
        return self._with_warning(summary, warning)

    # ============ COLLATERAL ============

    async def _deposit(self, cmd: Deposit, actor: Actor) -> str:
        if cmd.amount <= 0:
            raise ValidationError("deposit amount must be greater than 0")
        ref = await self._call("DEP", self.remote.deposit_collateral, actor.address, cmd.amount)
        return f"{actor.label} deposited {_quote(cmd.amount)} -> {ref}"

    async def _withdraw(self, cmd: Withdraw, actor: Actor) -> str:
        if cmd.amount <= 0:
            raise ValidationError("withdraw amount must be greater than 0")
        warning = await self._preflight(actor, cmd.amount, "withdrawal")
        ref = await self._call("WDR", self.remote.withdraw_collateral, actor.address, cmd.amount)
        return self._with_warning(f"{actor.label} withdrew {_quote(cmd.amount)} -> {ref}", warning)

    # ============ CANCELLATION ============

    async def _cancel_all(self, cmd: CancelAll, actor: Actor) -> str:
        market_id = self.session.require_market()
        ref = await self._call("CA", self.remote.cancel_all_orders, actor.address, market_id)
        return f"{actor.label} cancelled all orders on {market_id} -> {ref}"

    async def _cancel_order(self, cmd: CancelOrder, actor: Actor) -> str:
        market_id = self.session.require_market()
        ref = await self._call("CO", self.remote.cancel_order, actor.address, market_id, cmd.order_id)
        return f"{actor.label} cancelled order {cmd.order_id} -> {ref}"

    async def _cancel_nth(self, cmd: CancelNthOrder, actor: Actor) -> str:
        market_id = self.session.require_market()
        orders = await self._call("getOpenOrders", self.remote.get_open_orders, actor.address, market_id)
        if not 1 <= cmd.index <= len(orders):
            raise ValidationError(f"order index {cmd.index} out of range (1..{len(orders)})")
        order = orders[cmd.index - 1]
        ref = await self._call("CNO", self.remote.cancel_order, actor.address, market_id, order.order_id)
        return f"{actor.label} cancelled order #{cmd.index} ({order.order_id}) -> {ref}"

    # ============ MARGIN ============

    async def _top_up(self, cmd: TopUpMargin, actor: Actor) -> str:
        if cmd.amount <= 0:
            raise ValidationError("margin amount must be greater than 0")
        position = await self._position_at(actor, cmd.index)
        warning = await self._preflight(actor, cmd.amount, "margin top-up")
        ref = await self._call("TUP", self.remote.top_up_margin, actor.address, position.market_id, cmd.amount)
        summary = f"{actor.label} added {_quote(cmd.amount)} margin to {position.market_id} -> {ref}"
        return self._with_warning(summary, warning)

    async def _reduce(self, cmd: ReduceMargin, actor: Actor) -> str:
        if cmd.amount <= 0:
            raise ValidationError("margin amount must be greater than 0")
        position = await self._position_at(actor, cmd.index)
        if cmd.amount > position.margin_locked:
            raise ValidationError(
                f"cannot release {_quote(cmd.amount)}: position margin is {_quote(position.margin_locked)}"
            )
        ref = await self._call("RED", self.remote.reduce_margin, actor.address, position.market_id, cmd.amount)
        return f"{actor.label} released {_quote(cmd.amount)} margin from {position.market_id} -> {ref}"

    async def _liquidate(self, cmd: TriggerLiquidation, actor: Optional[Actor]) -> str:
        market_id = self.session.require_market()
        if cmd.actor is None:
            ref = await self._call("LIQ", self.remote.trigger_liquidation_scan, market_id)
            return f"liquidation scan requested on {market_id} -> {ref}"
        target = self.session.resolve_actor(cmd.actor)
        ref = await self._call("LIQ", self.remote.liquidate_account, target.address, market_id)
        return f"liquidation of {target.label} requested on {market_id} -> {ref}"

    # ============ VIEWS ============

    async def _show_positions(self, cmd: ShowPositions, actor: Actor) -> str:
        positions = await self._positions(actor)
        if not positions:
            return f"{actor.label}: no open positions"
        lines = [f"{actor.label}: {len(positions)} open position(s)"]
        for i, p in enumerate(positions, start=1):
            lines.append(
                f"  #{i} {p.market_id} {'LONG' if p.is_long else 'SHORT'} {_size(abs(p.size))} "
                f"@ {_price(p.entry_price)} margin {_quote(p.margin_locked)} "
                f"liq {_price(p.liquidation_price)}"
            )
        return "\n".join(lines)

    async def _show_orders(self, cmd: ShowOrders, actor: Actor) -> str:
        market_id = self.session.require_market()
        orders = await self._call("getOpenOrders", self.remote.get_open_orders, actor.address, market_id)
        if not orders:
            return f"{actor.label}: no open orders on {market_id}"
        lines = [f"{actor.label}: {len(orders)} open order(s) on {market_id}"]
        for i, o in enumerate(orders, start=1):
            lines.append(
                f"  #{i} {o.order_id} {_side_label(o.side)} {_size(o.size)} @ {_price(o.price)} "
                f"filled {_size(o.filled)}"
            )
        return "\n".join(lines)

    async def _show_order_book(self, cmd: ShowOrderBook, actor: Optional[Actor]) -> str:
        market_id = self.session.require_market()
        if cmd.depth <= 0:
            raise ValidationError("order book depth must be greater than 0")
        book = await self._call("getOrderBook", self.remote.get_order_book, market_id, cmd.depth)
        lines = [f"{market_id} order book (depth {cmd.depth})"]
        for price, size in reversed(book.asks[: cmd.depth]):
            lines.append(f"  ASK {_price(price):>14} {_size(size)}")
        lines.append("  ----")
        for price, size in book.bids[: cmd.depth]:
            lines.append(f"  BID {_price(price):>14} {_size(size)}")
        return "\n".join(lines)

    async def _show_portfolio(self, cmd: ShowPortfolio, actor: Actor) -> str:
        markets = [self.session.market_id] if self.session.market_id else []
        report = await self.reconciler.reconcile(actor.address, market_ids=markets)
        lines = [f"{actor.label}: {report.summary_line()}"]
        lines.extend(f"  ! {d.message}" for d in report.discrepancies)
        if report.unverified_markets:
            lines.append(f"  ? unverified markets: {', '.join(report.unverified_markets)}")
        return "\n".join(lines)

    async def _show_history(self, cmd: ShowHistory, actor: Optional[Actor]) -> str:
        entries = self.ledger.recent(cmd.count)
        if not entries:
            return "history is empty"
        lines = []
        for r in entries:
            first = r.summary.splitlines()[0] if r.summary else ""
            lines.append(
                f"{r.timestamp:%H:%M:%S} {r.status.value.upper():5} {r.opcode:6} {r.actor or '-':8} {first}"
            )
        return "\n".join(lines)

    async def _show_help(self, cmd: ShowHelp, actor: Optional[Actor]) -> str:
        lines = ["[actor] OPCODE args...   actor = @ | DEPLOYER | U<n>; separate commands with ',' or ';'"]
        lines.extend(f"  {t.__doc__.strip()}" for t in COMMAND_TYPES)
        return "\n".join(lines)

    # ============ ASSERT ============

    async def _assert(self, cmd: AssertCondition, actor: Optional[Actor]) -> str:
        actual = await self._assert_value(cmd)
        if not cmd.comparison.evaluate(actual, cmd.value):
            raise AssertionFailure(
                target=cmd.target.value,
                op=cmd.comparison.value,
                expected=cmd.value,
                actual=actual,
                decimals=cmd.target.decimals,
            )
        decimals = cmd.target.decimals
        return (
            f"ASSERT {cmd.target.value} {cmd.comparison.value} {format_fixed(cmd.value, decimals)} "
            f"ok (actual {format_fixed(actual, decimals)})"
        )

    async def _assert_value(self, cmd: AssertCondition) -> int:
        """Freshly fetch the asserted quantity at its fixed-point scale."""
        if cmd.target in (AssertTarget.BID, AssertTarget.ASK):
            market_id = self.session.require_market()
            prices = await self._call("getBestPrices", self.remote.get_best_prices, market_id)
            return prices.bid if cmd.target is AssertTarget.BID else prices.ask

        subject = self.session.resolve_actor(cmd.subject or cmd.actor)
        if cmd.target is AssertTarget.AVAIL:
            available = await self._available(subject)
            if available is None:
                raise ValidationError(f"available collateral of {subject.label} is unavailable")
            return available

        market_id = self.session.require_market()
        positions = await self._positions(subject)
        net = sum(p.size for p in positions if p.market_id == market_id)
        if cmd.side is None:
            return net
        if cmd.side.is_buy:
            return max(net, 0)
        return max(-net, 0)

    # ============ META ============

    async def _switch_user(self, cmd: SwitchUser, actor: Optional[Actor]) -> str:
        current = self.session.switch_actor(cmd.target)
        return f"current actor is {current}"

    async def _set_market(self, cmd: SetMarket, actor: Optional[Actor]) -> str:
        self.session.market_id = cmd.market_id
        return f"active market is {cmd.market_id}"

    async def _do_sleep(self, cmd: Sleep, actor: Optional[Actor]) -> str:
        await self._sleep(cmd.millis / 1000)
        return f"slept {cmd.millis} ms"

    async def _set_strict(self, cmd: SetStrict, actor: Optional[Actor]) -> str:
        self.session.strict = cmd.enabled
        return f"strict mode {'ON' if cmd.enabled else 'OFF'}"

    async def _run_script(self, cmd: RunScript, actor: Optional[Actor]) -> str:
        if self.script_runner is None:
            raise ValidationError("RUN is not available in this context")
        return await self.script_runner(str(cmd.path))
