"""
Tokenizer for the hack-mode scripting language.

Grammar (informal):

    line      := statement ((',' | ';') statement)*
    statement := [ActorSelector] OPCODE ARG*
    selector  := '@' | 'DEPLOYER' | 'U<n>'   (n >= 1)

Parsing is pure and deterministic: no I/O, no session access. Numbers are
turned into fixed-point integers here (prices and quote amounts 6 decimals,
sizes 18 decimals) and never pass through a float. Range checks that need
context (available collateral, list indexes) belong to the dispatcher.
"""
import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from perpconsole import constants
from perpconsole.console.commands import (
    ActorSelector,
    AmountMode,
    AssertCondition,
    AssertTarget,
    CancelAll,
    CancelNthOrder,
    CancelOrder,
    Command,
    Comparison,
    Deposit,
    META_OPCODES,
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
from perpconsole.domain.models import Side
from perpconsole.exceptions import ParseError
from perpconsole.utils.fixed_point import parse_fixed

_SEPARATORS = re.compile(r"[,;\n]")

_ASSERT_TARGETS = {
    "BID": AssertTarget.BID,
    "ASK": AssertTarget.ASK,
    "POSITION": AssertTarget.POSITION,
    "POS": AssertTarget.POSITION,
    "AVAIL": AssertTarget.AVAIL,
    "AVAILABLE": AssertTarget.AVAIL,
}

_POSITION_SIDES = {
    "LONG": Side.BUY,
    "BUY": Side.BUY,
    "SHORT": Side.SELL,
    "SELL": Side.SELL,
}

_COMPARISONS = {c.value: c for c in Comparison}


def split_statements(line: str) -> List[str]:
    """Split one line on ',' / ';' and drop empty pieces."""
    return [part.strip() for part in _SEPARATORS.split(line) if part.strip()]


def split_script(text: str) -> List[str]:
    """
    Flatten script text into a command-statement stream.

    Blank lines and lines starting with '#' are dropped, as is any statement
    that starts with '#' after splitting.
    """
    statements: List[str] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        statements.extend(s for s in split_statements(line) if not s.startswith("#"))
    return statements


def tokenize_line(line: str) -> List[Command]:
    """
    Turn one raw line into its commands.

    Raises:
        ParseError: On the first malformed statement
    """
    return [parse_command(statement) for statement in split_statements(line)]


def parse_command(text: str) -> Command:
    """
    Parse a single statement into a command variant.

    Raises:
        ParseError: Unknown opcode, wrong arity or malformed argument
    """
    tokens = text.split()
    if not tokens:
        raise ParseError("empty command", text=text)

    actor = ActorSelector.parse(tokens[0])
    if actor is not None:
        tokens = tokens[1:]
        if not tokens:
            raise ParseError(f"actor {actor.label} given without an opcode", text=text)

    opcode = tokens[0].upper()
    args = tokens[1:]
    entry = _OPCODES.get(opcode)
    if entry is None:
        raise ParseError(f"unknown opcode {tokens[0]!r}", text=text)

    if actor is not None and opcode in META_OPCODES:
        raise ParseError(f"{opcode} does not take an actor prefix", text=text)

    builder, min_args, max_args = entry
    if not (min_args <= len(args) <= max_args):
        expected = str(min_args) if min_args == max_args else f"{min_args}-{max_args}"
        raise ParseError(f"{opcode} expects {expected} argument(s), got {len(args)}", text=text)

    try:
        return builder(opcode, actor, args)
    except ParseError as e:
        if e.text is None:
            e.text = text
        raise


# ============ ARGUMENT PARSERS ============

def _fixed(token: str, decimals: int, what: str, *, allow_negative: bool = False) -> int:
    try:
        return parse_fixed(token, decimals, allow_negative=allow_negative)
    except ValueError as e:
        raise ParseError(f"invalid {what} {token!r}: {e}")


def _int(token: str, what: str) -> int:
    try:
        return int(token, 10)
    except ValueError:
        raise ParseError(f"invalid {what} {token!r}: expected an integer")


def _mode(token: str) -> AmountMode:
    mode = AmountMode.parse(token)
    if mode is None:
        raise ParseError(f"invalid amount mode {token!r}: expected 1|UNITS or 2|VALUE")
    return mode


def _amount(token: str, mode: AmountMode) -> int:
    if mode is AmountMode.UNITS:
        return _fixed(token, constants.SIZE_DECIMALS, "size")
    return _fixed(token, constants.QUOTE_DECIMALS, "quote amount")


def _quote(token: str) -> int:
    return _fixed(token, constants.QUOTE_DECIMALS, "quote amount")


# ============ BUILDERS ============

def _limit(opcode: str, actor: Optional[ActorSelector], args: Sequence[str]) -> Command:
    side = Side.BUY if opcode == "LB" else Side.SELL
    price = _fixed(args[0], constants.PRICE_DECIMALS, "price")
    mode = _mode(args[1])
    return PlaceLimitOrder(actor=actor, side=side, price=price, mode=mode, amount=_amount(args[2], mode))


def _market(opcode: str, actor: Optional[ActorSelector], args: Sequence[str]) -> Command:
    side = Side.BUY if opcode == "MB" else Side.SELL
    mode = _mode(args[0])
    amount = _amount(args[1], mode)
    slippage = _int(args[2], "slippage bps") if len(args) > 2 else constants.DEFAULT_SLIPPAGE_BPS
    return PlaceMarketOrder(actor=actor, side=side, mode=mode, amount=amount, slippage_bps=slippage)


def _deposit(opcode, actor, args) -> Command:
    return Deposit(actor=actor, amount=_quote(args[0]))


def _withdraw(opcode, actor, args) -> Command:
    return Withdraw(actor=actor, amount=_quote(args[0]))


def _cancel_all(opcode, actor, args) -> Command:
    return CancelAll(actor=actor)


def _cancel_order(opcode, actor, args) -> Command:
    return CancelOrder(actor=actor, order_id=args[0])


def _cancel_nth(opcode, actor, args) -> Command:
    return CancelNthOrder(actor=actor, index=_int(args[0], "order index"))


def _top_up(opcode, actor, args) -> Command:
    return TopUpMargin(actor=actor, index=_int(args[0], "position index"), amount=_quote(args[1]))


def _reduce(opcode, actor, args) -> Command:
    return ReduceMargin(actor=actor, index=_int(args[0], "position index"), amount=_quote(args[1]))


def _liquidate(opcode, actor, args) -> Command:
    return TriggerLiquidation(actor=actor)


def _positions(opcode, actor, args) -> Command:
    return ShowPositions(actor=actor)


def _orders(opcode, actor, args) -> Command:
    return ShowOrders(actor=actor)


def _order_book(opcode, actor, args) -> Command:
    depth = _int(args[0], "depth") if args else 5
    return ShowOrderBook(actor=actor, depth=depth)


def _portfolio(opcode, actor, args) -> Command:
    return ShowPortfolio(actor=actor)


def _history(opcode, actor, args) -> Command:
    count = _int(args[0], "count") if args else constants.DEFAULT_HISTORY_VIEW
    return ShowHistory(actor=actor, count=count)


def _help(opcode, actor, args) -> Command:
    return ShowHelp(actor=actor)


def _switch_user(opcode, actor, args) -> Command:
    target = ActorSelector.parse(args[0])
    if target is None:
        raise ParseError(f"invalid actor {args[0]!r}: expected @, DEPLOYER or U<n>")
    return SwitchUser(actor=None, target=target)


def _set_market(opcode, actor, args) -> Command:
    return SetMarket(actor=None, market_id=args[0])


def _sleep(opcode, actor, args) -> Command:
    millis = _int(args[0], "milliseconds")
    if millis < 0:
        raise ParseError(f"invalid milliseconds {args[0]!r}: must be >= 0")
    return Sleep(actor=None, millis=millis)


def _strict(opcode, actor, args) -> Command:
    flag = args[0].upper()
    if flag not in ("ON", "OFF"):
        raise ParseError(f"STRICT expects ON or OFF, got {args[0]!r}")
    return SetStrict(actor=None, enabled=flag == "ON")


def _run(opcode, actor, args) -> Command:
    return RunScript(actor=None, path=Path(args[0]))


def _assert(opcode: str, actor: Optional[ActorSelector], args: Sequence[str]) -> Command:
    target = _ASSERT_TARGETS.get(args[0].upper())
    if target is None:
        raise ParseError(f"invalid ASSERT target {args[0]!r}: expected BID, ASK, POSITION or AVAIL")

    rest = list(args[1:])
    subject: Optional[ActorSelector] = None
    side: Optional[Side] = None

    if rest and ActorSelector.parse(rest[0]) is not None:
        if not target.takes_actor:
            raise ParseError(f"ASSERT {target.value} does not take an actor")
        subject = ActorSelector.parse(rest.pop(0))

    if rest and rest[0].upper() in _POSITION_SIDES:
        if target is not AssertTarget.POSITION:
            raise ParseError(f"ASSERT {target.value} does not take a side")
        side = _POSITION_SIDES[rest.pop(0).upper()]

    if len(rest) != 2:
        raise ParseError(f"ASSERT {target.value} expects '<op> <value>'")

    comparison = _COMPARISONS.get(rest[0])
    if comparison is None:
        raise ParseError(f"invalid comparison {rest[0]!r}: expected one of {', '.join(_COMPARISONS)}")

    value = _fixed(
        rest[1],
        target.decimals,
        f"{target.value.lower()} value",
        allow_negative=target is AssertTarget.POSITION and side is None,
    )
    return AssertCondition(
        actor=actor,
        target=target,
        comparison=comparison,
        value=value,
        subject=subject,
        side=side,
    )


Builder = Callable[[str, Optional[ActorSelector], Sequence[str]], Command]

# opcode -> (builder, min args, max args)
_OPCODES: Dict[str, Tuple[Builder, int, int]] = {
    "LB": (_limit, 3, 3),
    "LS": (_limit, 3, 3),
    "MB": (_market, 2, 3),
    "MS": (_market, 2, 3),
    "DEP": (_deposit, 1, 1),
    "WDR": (_withdraw, 1, 1),
    "CA": (_cancel_all, 0, 0),
    "CO": (_cancel_order, 1, 1),
    "CNO": (_cancel_nth, 1, 1),
    "TUP": (_top_up, 2, 2),
    "RED": (_reduce, 2, 2),
    "LIQ": (_liquidate, 0, 0),
    "POS": (_positions, 0, 0),
    "ORDS": (_orders, 0, 0),
    "OB": (_order_book, 0, 1),
    "PF": (_portfolio, 0, 0),
    "HIST": (_history, 0, 1),
    "HELP": (_help, 0, 0),
    "ASSERT": (_assert, 3, 5),
    "SU": (_switch_user, 1, 1),
    "MKT": (_set_market, 1, 1),
    "SLEEP": (_sleep, 1, 1),
    "STRICT": (_strict, 1, 1),
    "RUN": (_run, 1, 1),
}

OPCODES = tuple(_OPCODES)
