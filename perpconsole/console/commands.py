"""
Command variants for the hack-mode scripting language.

One frozen dataclass per opcode family. The tokenizer produces these and the
dispatcher routes on their type, so argument arity and types live in the
variant definitions rather than in string slicing at dispatch time.

Every variant carries `actor` first: the parsed ActorSelector, or None when
the command omitted it (the session default applies).
"""
import operator
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, ClassVar, Dict, Optional, Tuple, Type

from perpconsole import constants
from perpconsole.domain.models import Side

_USER_SELECTOR = re.compile(r"^U([1-9][0-9]*)$")
DEPLOYER_TOKENS = ("@", "DEPLOYER")


@dataclass(frozen=True)
class ActorSelector:
    """Index 0 is the deployer, index n >= 1 is user U<n>."""
    index: int

    @property
    def label(self) -> str:
        return "DEPLOYER" if self.index == 0 else f"U{self.index}"

    @classmethod
    def parse(cls, token: str) -> Optional["ActorSelector"]:
        """Return the selector a token names, or None if it is not a selector."""
        t = token.strip().upper()
        if t in DEPLOYER_TOKENS:
            return cls(0)
        m = _USER_SELECTOR.match(t)
        if m:
            return cls(int(m.group(1)))
        return None

    def __str__(self) -> str:
        return self.label


class AmountMode(str, Enum):
    """How an order amount is expressed."""
    UNITS = "units"   # base-asset size, 18 decimals
    VALUE = "value"   # quote-currency amount, 6 decimals

    @classmethod
    def parse(cls, token: str) -> Optional["AmountMode"]:
        return _MODE_TOKENS.get(token.strip().upper())


_MODE_TOKENS = {
    "1": AmountMode.UNITS,
    "UNITS": AmountMode.UNITS,
    "QTY": AmountMode.UNITS,
    "2": AmountMode.VALUE,
    "VALUE": AmountMode.VALUE,
    "USD": AmountMode.VALUE,
    "USDC": AmountMode.VALUE,
}


class Comparison(str, Enum):
    """ASSERT comparison operators."""
    GE = ">="
    GT = ">"
    LE = "<="
    LT = "<"
    EQ = "=="
    NE = "!="

    def evaluate(self, lhs: int, rhs: int) -> bool:
        return _COMPARATORS[self](lhs, rhs)


_COMPARATORS: Dict[Comparison, Callable[[int, int], bool]] = {
    Comparison.GE: operator.ge,
    Comparison.GT: operator.gt,
    Comparison.LE: operator.le,
    Comparison.LT: operator.lt,
    Comparison.EQ: operator.eq,
    Comparison.NE: operator.ne,
}


class AssertTarget(str, Enum):
    """Quantities ASSERT can fetch, with the scale of each."""
    BID = "BID"
    ASK = "ASK"
    POSITION = "POSITION"
    AVAIL = "AVAIL"

    @property
    def decimals(self) -> int:
        return _TARGET_DECIMALS[self]

    @property
    def takes_actor(self) -> bool:
        return self in (AssertTarget.POSITION, AssertTarget.AVAIL)


_TARGET_DECIMALS = {
    AssertTarget.BID: constants.PRICE_DECIMALS,
    AssertTarget.ASK: constants.PRICE_DECIMALS,
    AssertTarget.POSITION: constants.SIZE_DECIMALS,
    AssertTarget.AVAIL: constants.QUOTE_DECIMALS,
}


class Command:
    """
    Base for all command variants.

    Class attributes:
        opcodes: Opcode spellings that produce this variant
        requires_actor: Dispatch fails with ValidationError if no actor resolves
        is_trade: REPL pauses after it so the operator can read the outcome
    """
    opcodes: ClassVar[Tuple[str, ...]] = ()
    requires_actor: ClassVar[bool] = False
    is_trade: ClassVar[bool] = False

    @property
    def opcode(self) -> str:
        return self.opcodes[0]


# ============ ORDER PLACEMENT ============

@dataclass(frozen=True)
class PlaceLimitOrder(Command):
    """LB/LS price mode amount"""
    opcodes: ClassVar[Tuple[str, ...]] = ("LB", "LS")
    requires_actor: ClassVar[bool] = True
    is_trade: ClassVar[bool] = True

    actor: Optional[ActorSelector]
    side: Side
    price: int          # 6 decimals
    mode: AmountMode
    amount: int         # 18 decimals (UNITS) or 6 decimals (VALUE)

    @property
    def opcode(self) -> str:
        return "LB" if self.side is Side.BUY else "LS"


@dataclass(frozen=True)
class PlaceMarketOrder(Command):
    """MB/MS mode amount [slippageBps]"""
    opcodes: ClassVar[Tuple[str, ...]] = ("MB", "MS")
    requires_actor: ClassVar[bool] = True
    is_trade: ClassVar[bool] = True

    actor: Optional[ActorSelector]
    side: Side
    mode: AmountMode
    amount: int
    slippage_bps: int = constants.DEFAULT_SLIPPAGE_BPS

    @property
    def opcode(self) -> str:
        return "MB" if self.side is Side.BUY else "MS"


# ============ COLLATERAL ============

@dataclass(frozen=True)
class Deposit(Command):
    """DEP amount"""
    opcodes: ClassVar[Tuple[str, ...]] = ("DEP",)
    requires_actor: ClassVar[bool] = True
    is_trade: ClassVar[bool] = True

    actor: Optional[ActorSelector]
    amount: int         # 6 decimals


@dataclass(frozen=True)
class Withdraw(Command):
    """WDR amount"""
    opcodes: ClassVar[Tuple[str, ...]] = ("WDR",)
    requires_actor: ClassVar[bool] = True
    is_trade: ClassVar[bool] = True

    actor: Optional[ActorSelector]
    amount: int         # 6 decimals


# ============ CANCELLATION ============

@dataclass(frozen=True)
class CancelAll(Command):
    """CA"""
    opcodes: ClassVar[Tuple[str, ...]] = ("CA",)
    requires_actor: ClassVar[bool] = True
    is_trade: ClassVar[bool] = True

    actor: Optional[ActorSelector]


@dataclass(frozen=True)
class CancelOrder(Command):
    """CO orderId"""
    opcodes: ClassVar[Tuple[str, ...]] = ("CO",)
    requires_actor: ClassVar[bool] = True
    is_trade: ClassVar[bool] = True

    actor: Optional[ActorSelector]
    order_id: str


@dataclass(frozen=True)
class CancelNthOrder(Command):
    """CNO index (1-based within the actor's open orders)"""
    opcodes: ClassVar[Tuple[str, ...]] = ("CNO",)
    requires_actor: ClassVar[bool] = True
    is_trade: ClassVar[bool] = True

    actor: Optional[ActorSelector]
    index: int


# ============ MARGIN ============

@dataclass(frozen=True)
class TopUpMargin(Command):
    """TUP positionIndex amount"""
    opcodes: ClassVar[Tuple[str, ...]] = ("TUP",)
    requires_actor: ClassVar[bool] = True
    is_trade: ClassVar[bool] = True

    actor: Optional[ActorSelector]
    index: int
    amount: int         # 6 decimals


@dataclass(frozen=True)
class ReduceMargin(Command):
    """RED positionIndex amount"""
    opcodes: ClassVar[Tuple[str, ...]] = ("RED",)
    requires_actor: ClassVar[bool] = True
    is_trade: ClassVar[bool] = True

    actor: Optional[ActorSelector]
    index: int
    amount: int         # 6 decimals


@dataclass(frozen=True)
class TriggerLiquidation(Command):
    """LIQ -- scan the active market, or liquidate the prefixed actor"""
    opcodes: ClassVar[Tuple[str, ...]] = ("LIQ",)
    is_trade: ClassVar[bool] = True

    actor: Optional[ActorSelector]


# ============ VIEWS ============

@dataclass(frozen=True)
class ShowPositions(Command):
    """POS"""
    opcodes: ClassVar[Tuple[str, ...]] = ("POS",)
    requires_actor: ClassVar[bool] = True

    actor: Optional[ActorSelector]


@dataclass(frozen=True)
class ShowOrders(Command):
    """ORDS"""
    opcodes: ClassVar[Tuple[str, ...]] = ("ORDS",)
    requires_actor: ClassVar[bool] = True

    actor: Optional[ActorSelector]


@dataclass(frozen=True)
class ShowOrderBook(Command):
    """OB [depth]"""
    opcodes: ClassVar[Tuple[str, ...]] = ("OB",)

    actor: Optional[ActorSelector]
    depth: int = 5


@dataclass(frozen=True)
class ShowPortfolio(Command):
    """PF -- reconciled account view"""
    opcodes: ClassVar[Tuple[str, ...]] = ("PF",)
    requires_actor: ClassVar[bool] = True

    actor: Optional[ActorSelector]


@dataclass(frozen=True)
class ShowHistory(Command):
    """HIST [k]"""
    opcodes: ClassVar[Tuple[str, ...]] = ("HIST",)

    actor: Optional[ActorSelector]
    count: int = constants.DEFAULT_HISTORY_VIEW


@dataclass(frozen=True)
class ShowHelp(Command):
    """HELP"""
    opcodes: ClassVar[Tuple[str, ...]] = ("HELP",)

    actor: Optional[ActorSelector]


# ============ ASSERT ============

@dataclass(frozen=True)
class AssertCondition(Command):
    """ASSERT <BID|ASK|POSITION|AVAIL> [actor] [side] <op> <value>"""
    opcodes: ClassVar[Tuple[str, ...]] = ("ASSERT",)

    actor: Optional[ActorSelector]
    target: AssertTarget
    comparison: Comparison
    value: int                                  # scaled by target.decimals
    subject: Optional[ActorSelector] = None     # actor named inside the assertion
    side: Optional[Side] = None                 # POSITION only: BUY = long, SELL = short

    @property
    def requires_subject(self) -> bool:
        return self.target.takes_actor


# ============ META ============

@dataclass(frozen=True)
class SwitchUser(Command):
    """SU actor"""
    opcodes: ClassVar[Tuple[str, ...]] = ("SU",)

    actor: Optional[ActorSelector]
    target: ActorSelector


@dataclass(frozen=True)
class SetMarket(Command):
    """MKT marketId"""
    opcodes: ClassVar[Tuple[str, ...]] = ("MKT",)

    actor: Optional[ActorSelector]
    market_id: str


@dataclass(frozen=True)
class Sleep(Command):
    """SLEEP ms"""
    opcodes: ClassVar[Tuple[str, ...]] = ("SLEEP",)

    actor: Optional[ActorSelector]
    millis: int


@dataclass(frozen=True)
class SetStrict(Command):
    """STRICT ON|OFF"""
    opcodes: ClassVar[Tuple[str, ...]] = ("STRICT",)

    actor: Optional[ActorSelector]
    enabled: bool


@dataclass(frozen=True)
class RunScript(Command):
    """RUN path"""
    opcodes: ClassVar[Tuple[str, ...]] = ("RUN",)

    actor: Optional[ActorSelector]
    path: Path


COMMAND_TYPES: Tuple[Type[Command], ...] = (
    PlaceLimitOrder,
    PlaceMarketOrder,
    Deposit,
    Withdraw,
    CancelAll,
    CancelOrder,
    CancelNthOrder,
    TopUpMargin,
    ReduceMargin,
    TriggerLiquidation,
    ShowPositions,
    ShowOrders,
    ShowOrderBook,
    ShowPortfolio,
    ShowHistory,
    ShowHelp,
    AssertCondition,
    SwitchUser,
    SetMarket,
    Sleep,
    SetStrict,
    RunScript,
)

# Opcode spellings that refuse an actor prefix
META_OPCODES = frozenset({"SU", "MKT", "SLEEP", "STRICT", "RUN", "HIST", "HELP"})

# Opcodes after which the REPL pauses so the operator can read the outcome
TRADE_OPCODES = frozenset(op for t in COMMAND_TYPES if t.is_trade for op in t.opcodes)
