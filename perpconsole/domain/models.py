"""
Domain models for the operator console.

All financial quantities are fixed-point integers; the scale of each field is
noted beside it. All timestamps use UTC timezone-aware datetimes.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Side(str, Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"

    @property
    def is_buy(self) -> bool:
        return self is Side.BUY


class CommandStatus(str, Enum):
    """Outcome of one executed command."""
    OK = "ok"
    ERROR = "error"


class FieldSource(str, Enum):
    """Where a reconciled value came from."""
    PRIMARY = "primary"      # unified account summary
    FALLBACK = "fallback"    # individual per-field getter
    DERIVED = "derived"      # computed from authoritative inputs
    ESTIMATE = "estimate"    # computed from incomplete inputs
    ABSENT = "absent"        # no source could provide it


@dataclass(frozen=True)
class SourcedValue:
    """A value together with the source that produced it."""
    value: Optional[int]
    source: FieldSource

    @property
    def is_absent(self) -> bool:
        return self.source is FieldSource.ABSENT or self.value is None

    @property
    def is_estimate(self) -> bool:
        return self.source is FieldSource.ESTIMATE

    @property
    def is_authoritative(self) -> bool:
        return self.source in (FieldSource.PRIMARY, FieldSource.FALLBACK, FieldSource.DERIVED)

    @classmethod
    def absent(cls) -> "SourcedValue":
        return cls(None, FieldSource.ABSENT)


@dataclass(frozen=True)
class AccountSummary:
    """
    Raw unified account summary as returned by the remote system.
    """
    collateral: int          # 6 decimals
    margin_used: int         # 6 decimals
    margin_reserved: int     # 6 decimals
    available: int           # 6 decimals
    realized_pnl: int        # 18 decimals, signed
    unrealized_pnl: int      # 18 decimals, signed
    total_committed: int     # 6 decimals
    healthy: bool


@dataclass
class Position:
    """
    One open exposure of an account.
    """
    market_id: str
    size: int                         # 18 decimals, signed (negative = short)
    entry_price: int                  # 6 decimals
    margin_locked: int = 0            # 6 decimals
    accrued_haircut: int = 0          # 6 decimals (socialized loss accrued)
    liquidation_price: int = 0        # 6 decimals
    mark_price: Optional[int] = None  # 6 decimals, filled during reconciliation
    unrealized_pnl: Optional[int] = None  # 18 decimals, filled during reconciliation

    @property
    def is_long(self) -> bool:
        return self.size > 0

    @property
    def is_open(self) -> bool:
        return self.size != 0


@dataclass(frozen=True)
class Order:
    """Resting order on the remote order book."""
    order_id: str
    market_id: str
    side: Side
    price: int       # 6 decimals
    size: int        # 18 decimals, remaining
    filled: int = 0  # 18 decimals


@dataclass(frozen=True)
class BestPrices:
    """Top of book. Zero means no resting liquidity on that side."""
    bid: int  # 6 decimals
    ask: int  # 6 decimals

    @property
    def has_bid(self) -> bool:
        return self.bid > 0

    @property
    def has_ask(self) -> bool:
        return self.ask > 0

    @property
    def spread(self) -> Optional[int]:
        if self.has_bid and self.has_ask:
            return self.ask - self.bid
        return None


@dataclass(frozen=True)
class OrderBookSnapshot:
    """Aggregated depth: (price 6 decimals, size 18 decimals) per level, best first."""
    market_id: str
    bids: List[Tuple[int, int]] = field(default_factory=list)
    asks: List[Tuple[int, int]] = field(default_factory=list)


@dataclass(frozen=True)
class RemoteEvent:
    """Notification from the remote system's event feed."""
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    block: Optional[int] = None
    tx_ref: Optional[str] = None


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one executed command. Appended to the history ledger."""
    status: CommandStatus
    opcode: str
    summary: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    actor: Optional[str] = None
    text: Optional[str] = None

    def __post_init__(self):
        if self.timestamp.tzinfo is None:
            raise ValueError("CommandResult timestamp must be timezone-aware (UTC)")

    @property
    def ok(self) -> bool:
        return self.status is CommandStatus.OK

    @classmethod
    def success(cls, opcode: str, summary: str, **kwargs) -> "CommandResult":
        return cls(status=CommandStatus.OK, opcode=opcode, summary=summary, **kwargs)

    @classmethod
    def failure(cls, opcode: str, summary: str, **kwargs) -> "CommandResult":
        return cls(status=CommandStatus.ERROR, opcode=opcode, summary=summary, **kwargs)
