"""
Reconciliation engine for account financial state.

Builds an account snapshot from several partially-overlapping remote sources
and cross-validates them:
- Primary: the unified account summary.
- Fallback: individual per-field getters when the summary is unavailable.
- Estimate: values derived from incomplete inputs, always marked as such.

Mismatches between sources become ReconciliationDiscrepancy entries in the
report. They are never raised.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

from perpconsole import constants
from perpconsole.domain.models import AccountSummary, FieldSource, Position, SourcedValue
from perpconsole.domain.protocols import RemoteSystem
from perpconsole.exceptions import CommandError
from perpconsole.gateway.remote_gateway import RemoteCallGateway
from perpconsole.monitoring.logger import get_logger
from perpconsole.utils.fixed_point import div_trunc, format_fixed, rescale, to_decimal

logger = get_logger(__name__)

T = TypeVar("T")

# Quote amounts (6 decimals) lifted to the PnL scale (18 decimals)
_QUOTE_TO_PNL = constants.PNL_DECIMALS - constants.QUOTE_DECIMALS

# Per-field getters used when the unified summary is unavailable
_FALLBACK_GETTERS = {
    "collateral": "get_collateral",
    "available": "get_available_collateral",
    "margin_used": "get_margin_used",
    "margin_reserved": "get_margin_reserved",
    "realized_pnl": "get_realized_pnl",
}

# Below this magnitude, unrealized PnL drift is compared against 0.01 quote units
_PNL_TOLERANCE_FLOOR = 10 ** (constants.PNL_DECIMALS - 2)


@dataclass(frozen=True)
class Fetch(Generic[T]):
    """Outcome of one best-effort read: a value, or the reason there is none."""
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ReconciliationDiscrepancy:
    """Non-fatal disagreement between two sources."""
    kind: str
    message: str
    market_id: Optional[str] = None
    primary: Optional[int] = None
    secondary: Optional[int] = None
    decimals: int = 0


@dataclass
class Account:
    """
    Point-in-time account snapshot. Never cached beyond one reconciliation pass.

    Quote fields are 6 decimals, PnL fields 18 decimals.
    """
    address: str
    collateral: SourcedValue
    margin_used: SourcedValue
    margin_reserved: SourcedValue
    available: SourcedValue
    realized_pnl: SourcedValue
    unrealized_pnl: SourcedValue
    total_committed: SourcedValue
    healthy: Optional[bool] = None
    healthy_source: FieldSource = FieldSource.ABSENT

    def field_sources(self) -> Dict[str, FieldSource]:
        return {
            "collateral": self.collateral.source,
            "margin_used": self.margin_used.source,
            "margin_reserved": self.margin_reserved.source,
            "available": self.available.source,
            "realized_pnl": self.realized_pnl.source,
            "unrealized_pnl": self.unrealized_pnl.source,
            "total_committed": self.total_committed.source,
            "healthy": self.healthy_source,
        }

    def estimated_fields(self) -> List[str]:
        return [name for name, src in self.field_sources().items() if src is FieldSource.ESTIMATE]

    def absent_fields(self) -> List[str]:
        return [name for name, src in self.field_sources().items() if src is FieldSource.ABSENT]


@dataclass
class ReconciliationReport:
    """Reconciled account state plus every cross-source discrepancy found."""
    account: Account
    positions: List[Position]
    positions_source: FieldSource
    derived_portfolio_value: SourcedValue     # 18 decimals
    adjusted_realized_pnl: SourcedValue       # 18 decimals
    socialized_loss: SourcedValue             # 6 decimals
    discrepancies: List[ReconciliationDiscrepancy] = field(default_factory=list)
    unverified_markets: List[str] = field(default_factory=list)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_discrepancies(self) -> bool:
        return bool(self.discrepancies)

    @property
    def open_positions(self) -> List[Position]:
        return [p for p in self.positions if p.is_open]

    @property
    def portfolio_value(self) -> Optional[Decimal]:
        if self.derived_portfolio_value.value is None:
            return None
        return to_decimal(self.derived_portfolio_value.value, constants.PNL_DECIMALS)

    def summary_line(self) -> str:
        acct = self.account
        pv = self.derived_portfolio_value
        parts = [
            f"portfolio {format_fixed(pv.value, constants.PNL_DECIMALS, 2)}"
            + (" (estimate)" if pv.is_estimate else ""),
            f"collateral {format_fixed(acct.collateral.value, constants.QUOTE_DECIMALS, 2)}",
            f"available {format_fixed(acct.available.value, constants.QUOTE_DECIMALS, 2)}",
            f"realized {format_fixed(acct.realized_pnl.value, constants.PNL_DECIMALS, 2)}",
            f"unrealized {format_fixed(acct.unrealized_pnl.value, constants.PNL_DECIMALS, 2)}",
            f"haircut {format_fixed(self.socialized_loss.value, constants.QUOTE_DECIMALS, 2)}",
            f"positions {len(self.open_positions)}",
        ]
        estimated = acct.estimated_fields()
        if estimated:
            parts.append(f"estimated: {','.join(estimated)}")
        if self.discrepancies:
            parts.append(f"{len(self.discrepancies)} discrepancy(ies)")
        return " | ".join(parts)


# ============ PURE CALCULATIONS ============

def position_unrealized_pnl(position: Position, mark_price: int) -> int:
    """
    Unrealized PnL of one position at 18 decimals.

    (mark6 - entry6) * size18 / 10^6, truncated toward zero. Works for shorts
    because size is signed.
    """
    return div_trunc((mark_price - position.entry_price) * position.size, 10 ** constants.PRICE_DECIMALS)


def adjusted_realized_pnl(realized_pnl: int, has_open_positions: bool) -> int:
    """
    Realized PnL as it enters the portfolio value.

    A negative realized PnL on a flat account has already been absorbed into
    collateral (typically by a liquidation), so it is zeroed to avoid counting
    the loss twice. With open positions it is kept as is.
    """
    if realized_pnl < 0 and not has_open_positions:
        return 0
    return realized_pnl


def derive_portfolio_value(
    collateral: int,
    adjusted_realized: int,
    unrealized_pnl: int,
    socialized_loss: int,
) -> int:
    """
    collateral + adjustedRealizedPnL + unrealizedPnL - socializedLoss, at 18 decimals.

    Args:
        collateral: 6 decimals
        adjusted_realized: 18 decimals, already passed through adjusted_realized_pnl
        unrealized_pnl: 18 decimals
        socialized_loss: 6 decimals
    """
    return (
        rescale(collateral, constants.QUOTE_DECIMALS, constants.PNL_DECIMALS)
        + adjusted_realized
        + unrealized_pnl
        - rescale(socialized_loss, constants.QUOTE_DECIMALS, constants.PNL_DECIMALS)
    )


# ============ ENGINE ============

class FinancialReconciler:
    """
    Independent account reconciliation. Reads remote state through the
    gateway and never touches the console session.
    """

    def __init__(
        self,
        gateway: RemoteCallGateway,
        remote: RemoteSystem,
        *,
        unrealized_tolerance_bps: int = constants.DEFAULT_UNREALIZED_TOLERANCE_BPS,
    ):
        self.gateway = gateway
        self.remote = remote
        self.unrealized_tolerance_bps = unrealized_tolerance_bps

    async def _fetch(self, label: str, fn: Callable[..., Awaitable[T]], *args: Any) -> Fetch[T]:
        """Gateway call whose remote failure becomes an explicit empty result."""
        try:
            return Fetch(value=await self.gateway.call(fn, *args, label=label))
        except CommandError as e:
            logger.info("RECONCILE_SOURCE_UNAVAILABLE", source=label, error=str(e))
            return Fetch(error=str(e) or type(e).__name__)

    async def available_collateral(self, address: str) -> SourcedValue:
        """Available collateral (6 decimals): summary first, then the per-field getter."""
        summary = await self._fetch("getAccountSummary", self.remote.get_account_summary, address)
        if summary.ok:
            return SourcedValue(summary.value.available, FieldSource.PRIMARY)
        fallback = await self._fetch("getAvailableCollateral", self.remote.get_available_collateral, address)
        if fallback.ok:
            return SourcedValue(fallback.value, FieldSource.FALLBACK)
        return SourcedValue.absent()

    async def reconcile(self, address: str, market_ids: Iterable[str] = ()) -> ReconciliationReport:
        """
        Run one full reconciliation pass for an account.

        Args:
            address: Account address
            market_ids: Extra markets to cross-check even if the primary
                position list shows no exposure there

        Returns:
            ReconciliationReport (discrepancies recorded, never raised)
        """
        logger.info("RECONCILE_START", address=address)

        summary_f, positions_f, socialized_f = await asyncio.gather(
            self._fetch("getAccountSummary", self.remote.get_account_summary, address),
            self._fetch("getPositions", self.remote.get_positions, address),
            self._fetch("getSocializedLoss", self.remote.get_socialized_loss, address),
        )

        base = await self._account_fields(address, summary_f)
        positions: List[Position] = list(positions_f.value or [])
        positions_source = FieldSource.PRIMARY if positions_f.ok else FieldSource.ABSENT
        discrepancies: List[ReconciliationDiscrepancy] = []

        # Unrealized PnL: live marks preferred, summary second, partial sum last
        live_pnl, live_source = await self._live_unrealized(positions, positions_f.ok)
        summary_pnl = summary_f.value.unrealized_pnl if summary_f.ok else None
        if live_source in (FieldSource.DERIVED, FieldSource.PRIMARY):
            unrealized = SourcedValue(live_pnl, FieldSource.DERIVED)
        elif summary_pnl is not None:
            unrealized = SourcedValue(summary_pnl, FieldSource.PRIMARY)
        elif live_pnl is not None:
            unrealized = SourcedValue(live_pnl, FieldSource.ESTIMATE)
        else:
            unrealized = SourcedValue.absent()

        if unrealized.source is FieldSource.DERIVED and summary_pnl is not None:
            d = self._check_unrealized(unrealized.value, summary_pnl)
            if d is not None:
                discrepancies.append(d)

        socialized = self._socialized_loss(socialized_f, positions, positions_f.ok)

        account = Account(address=address, unrealized_pnl=unrealized, **base)

        has_open = any(p.is_open for p in positions)
        adjusted, portfolio = self._portfolio(account, socialized, has_open, positions_f.ok)

        if positions_f.ok:
            discrepancies.extend(self._check_margin_locked(positions, account.margin_used))
            size_discrepancies, unverified = await self._check_position_sizes(address, positions, market_ids)
            discrepancies.extend(size_discrepancies)
        else:
            unverified = sorted(set(market_ids))

        report = ReconciliationReport(
            account=account,
            positions=positions,
            positions_source=positions_source,
            derived_portfolio_value=portfolio,
            adjusted_realized_pnl=adjusted,
            socialized_loss=socialized,
            discrepancies=discrepancies,
            unverified_markets=unverified,
        )

        for d in discrepancies:
            logger.warning(
                "RECONCILE_DISCREPANCY",
                address=address,
                kind=d.kind,
                market_id=d.market_id,
                primary=d.primary,
                secondary=d.secondary,
            )
        logger.info(
            "RECONCILE_SUMMARY",
            address=address,
            positions=len(report.open_positions),
            portfolio_value=str(report.portfolio_value) if report.portfolio_value is not None else None,
            portfolio_source=portfolio.source.value,
            estimated=account.estimated_fields(),
            absent=account.absent_fields(),
            discrepancies=len(discrepancies),
        )
        return report

    async def _account_fields(self, address: str, summary_f: Fetch[AccountSummary]) -> Dict[str, Any]:
        """Every account field except unrealized PnL, with its source."""
        if summary_f.ok:
            s = summary_f.value
            return {
                "collateral": SourcedValue(s.collateral, FieldSource.PRIMARY),
                "margin_used": SourcedValue(s.margin_used, FieldSource.PRIMARY),
                "margin_reserved": SourcedValue(s.margin_reserved, FieldSource.PRIMARY),
                "available": SourcedValue(s.available, FieldSource.PRIMARY),
                "realized_pnl": SourcedValue(s.realized_pnl, FieldSource.PRIMARY),
                "total_committed": SourcedValue(s.total_committed, FieldSource.PRIMARY),
                "healthy": s.healthy,
                "healthy_source": FieldSource.PRIMARY,
            }

        logger.warning("RECONCILE_SUMMARY_FALLBACK", address=address, error=summary_f.error)
        names = list(_FALLBACK_GETTERS)
        results = await asyncio.gather(
            *(self._fetch(_FALLBACK_GETTERS[n], getattr(self.remote, _FALLBACK_GETTERS[n]), address) for n in names)
        )
        fields: Dict[str, Any] = {}
        for name, result in zip(names, results):
            fields[name] = SourcedValue(result.value, FieldSource.FALLBACK) if result.ok else SourcedValue.absent()

        collateral, used, reserved = fields["collateral"], fields["margin_used"], fields["margin_reserved"]
        if fields["available"].is_absent and not (collateral.is_absent or used.is_absent or reserved.is_absent):
            estimate = max(0, collateral.value - used.value - reserved.value)
            fields["available"] = SourcedValue(estimate, FieldSource.ESTIMATE)
            logger.info("RECONCILE_ESTIMATE", address=address, field="available")

        if not (used.is_absent or reserved.is_absent):
            fields["total_committed"] = SourcedValue(used.value + reserved.value, FieldSource.ESTIMATE)
        else:
            fields["total_committed"] = SourcedValue.absent()

        fields["healthy"] = None
        fields["healthy_source"] = FieldSource.ABSENT
        return fields

    async def _resolve_mark(self, market_id: str) -> Tuple[Optional[int], FieldSource]:
        """Mark price for a market; mid of best bid/ask is an estimate fallback."""
        mark = await self._fetch("getMarkPrice", self.remote.get_mark_price, market_id)
        if mark.ok and mark.value > 0:
            return mark.value, FieldSource.PRIMARY

        best = await self._fetch("getBestPrices", self.remote.get_best_prices, market_id)
        if best.ok and best.value.has_bid and best.value.has_ask:
            return (best.value.bid + best.value.ask) // 2, FieldSource.ESTIMATE
        return None, FieldSource.ABSENT

    async def _live_unrealized(self, positions: List[Position], positions_ok: bool) -> Tuple[Optional[int], FieldSource]:
        """Sum of per-position unrealized PnL from live marks."""
        if not positions_ok:
            return None, FieldSource.ABSENT

        open_positions = [p for p in positions if p.is_open]
        if not open_positions:
            return 0, FieldSource.DERIVED

        markets = sorted({p.market_id for p in open_positions})
        marks = dict(zip(markets, await asyncio.gather(*(self._resolve_mark(m) for m in markets))))

        total = 0
        source = FieldSource.DERIVED
        for p in open_positions:
            mark, mark_source = marks[p.market_id]
            if mark is None:
                source = FieldSource.ESTIMATE
                continue
            p.mark_price = mark
            p.unrealized_pnl = position_unrealized_pnl(p, mark)
            total += p.unrealized_pnl
            if mark_source is FieldSource.ESTIMATE:
                source = FieldSource.ESTIMATE
        return total, source

    def _socialized_loss(self, socialized_f: Fetch[int], positions: List[Position], positions_ok: bool) -> SourcedValue:
        if socialized_f.ok:
            return SourcedValue(socialized_f.value, FieldSource.PRIMARY)
        if positions_ok:
            return SourcedValue(sum(p.accrued_haircut for p in positions), FieldSource.ESTIMATE)
        return SourcedValue.absent()

    def _portfolio(
        self,
        account: Account,
        socialized: SourcedValue,
        has_open: bool,
        positions_ok: bool,
    ) -> Tuple[SourcedValue, SourcedValue]:
        """(adjusted realized PnL, derived portfolio value), each with its source."""
        if account.realized_pnl.is_absent:
            adjusted = SourcedValue.absent()
        elif not positions_ok:
            # Position state unknown: keep the loss and flag the result
            adjusted = SourcedValue(account.realized_pnl.value, FieldSource.ESTIMATE)
        else:
            adjusted = SourcedValue(
                adjusted_realized_pnl(account.realized_pnl.value, has_open),
                FieldSource.DERIVED,
            )

        if account.collateral.is_absent:
            return adjusted, SourcedValue.absent()

        inputs = (account.collateral, adjusted, account.unrealized_pnl, socialized)
        exact = all(v.is_authoritative for v in inputs)
        value = derive_portfolio_value(
            account.collateral.value,
            adjusted.value or 0,
            account.unrealized_pnl.value or 0,
            socialized.value or 0,
        )
        return adjusted, SourcedValue(value, FieldSource.DERIVED if exact else FieldSource.ESTIMATE)

    def _check_unrealized(self, live: int, summary: int) -> Optional[ReconciliationDiscrepancy]:
        reference = max(abs(live), abs(summary), _PNL_TOLERANCE_FLOOR)
        if abs(live - summary) * constants.BPS_DENOMINATOR <= reference * self.unrealized_tolerance_bps:
            return None
        return ReconciliationDiscrepancy(
            kind="unrealized_pnl",
            message=(
                f"live unrealized PnL {format_fixed(live, constants.PNL_DECIMALS, 6)} differs from "
                f"summary {format_fixed(summary, constants.PNL_DECIMALS, 6)} "
                f"beyond {self.unrealized_tolerance_bps} bps"
            ),
            primary=live,
            secondary=summary,
            decimals=constants.PNL_DECIMALS,
        )

    def _check_margin_locked(self, positions: List[Position], margin_used: SourcedValue) -> List[ReconciliationDiscrepancy]:
        if margin_used.is_absent or not margin_used.is_authoritative:
            return []
        locked = sum(p.margin_locked for p in positions if p.is_open)
        if locked == margin_used.value:
            return []
        return [
            ReconciliationDiscrepancy(
                kind="margin_locked",
                message=(
                    f"sum of position margin {format_fixed(locked, constants.QUOTE_DECIMALS)} != "
                    f"margin used {format_fixed(margin_used.value, constants.QUOTE_DECIMALS)}"
                ),
                primary=margin_used.value,
                secondary=locked,
                decimals=constants.QUOTE_DECIMALS,
            )
        ]

    async def _check_position_sizes(
        self,
        address: str,
        positions: List[Position],
        extra_markets: Iterable[str],
    ) -> Tuple[List[ReconciliationDiscrepancy], List[str]]:
        """Compare net signed size per market against the secondary tracker."""
        primary_sizes: Dict[str, int] = {}
        for p in positions:
            primary_sizes[p.market_id] = primary_sizes.get(p.market_id, 0) + p.size
        for m in extra_markets:
            primary_sizes.setdefault(m, 0)

        markets = sorted(primary_sizes)
        results = await asyncio.gather(
            *(self._fetch("getPositionSize", self.remote.get_position_size, address, m) for m in markets)
        )

        discrepancies: List[ReconciliationDiscrepancy] = []
        unverified: List[str] = []
        for market_id, secondary in zip(markets, results):
            if not secondary.ok:
                unverified.append(market_id)
                continue
            primary = primary_sizes[market_id]
            if primary != secondary.value:
                discrepancies.append(
                    ReconciliationDiscrepancy(
                        kind="position_size",
                        message=(
                            f"{market_id}: position list size {format_fixed(primary, constants.SIZE_DECIMALS)} != "
                            f"tracked size {format_fixed(secondary.value, constants.SIZE_DECIMALS)}"
                        ),
                        market_id=market_id,
                        primary=primary,
                        secondary=secondary.value,
                        decimals=constants.SIZE_DECIMALS,
                    )
                )
        return discrepancies, unverified
