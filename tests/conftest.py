"""
Pytest configuration and shared fixtures.

FakeRemote is an in-memory stand-in for the remote contract system. It records
every call and can be told to fail specific methods, once or always.
"""
import asyncio
from collections import defaultdict
from typing import Dict, List, Optional

import pytest

from perpconsole.console.batch_runner import BatchRunner
from perpconsole.console.diagnostics import DiagnosticSubscriptions
from perpconsole.console.dispatcher import Dispatcher
from perpconsole.console.ledger import HistoryLedger
from perpconsole.console.session import Session
from perpconsole.domain.models import (
    AccountSummary,
    BestPrices,
    Order,
    OrderBookSnapshot,
    Position,
    RemoteEvent,
    Side,
)
from perpconsole.exceptions import RemoteRevertError
from perpconsole.gateway.remote_gateway import RemoteCallGateway
from perpconsole.gateway.retry import RetryPolicy

DEPLOYER = "0xd000000000000000000000000000000000000001"
USER1 = "0xa000000000000000000000000000000000000001"
USER2 = "0xa000000000000000000000000000000000000002"
MARKET = "ETH-PERP"

USDC = 10 ** 6      # one quote unit at 6 decimals
UNIT = 10 ** 18     # one base unit at 18 decimals


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


class FakeRemote:
    """In-memory remote system implementing the RemoteSystem protocol."""

    def __init__(self):
        self.calls: List[tuple] = []
        self._fail_next: Dict[str, List[Exception]] = defaultdict(list)
        self._fail_always: Dict[str, Exception] = {}

        self.collateral: Dict[str, int] = defaultdict(int)
        self.margin_used: Dict[str, int] = defaultdict(int)
        self.margin_reserved: Dict[str, int] = defaultdict(int)
        self.realized_pnl: Dict[str, int] = defaultdict(int)
        self.summary_unrealized: Dict[str, int] = defaultdict(int)
        self.socialized_loss: Dict[str, int] = defaultdict(int)
        self.positions: Dict[str, List[Position]] = defaultdict(list)
        self.tracked_sizes: Dict[tuple, int] = {}
        self.orders: Dict[tuple, List[Order]] = defaultdict(list)
        self.marks: Dict[str, int] = {}
        self.best: Dict[str, BestPrices] = {}
        self.pending_events: Dict[str, List[RemoteEvent]] = defaultdict(list)

        self.subscribed: List[str] = []
        self.unsubscribed: List[str] = []
        self._next_ref = 0

    # ============ FAILURE INJECTION ============

    def fail_next(self, method: str, *errors: Exception) -> None:
        self._fail_next[method].extend(errors)

    def fail_always(self, method: str, error: Exception) -> None:
        self._fail_always[method] = error

    def calls_to(self, method: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]

    def _record(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        if self._fail_next[method]:
            raise self._fail_next[method].pop(0)
        if method in self._fail_always:
            raise self._fail_always[method]

    def _ref(self) -> str:
        self._next_ref += 1
        return f"0xtx{self._next_ref:04d}"

    def available(self, address: str) -> int:
        return max(0, self.collateral[address] - self.margin_used[address] - self.margin_reserved[address])

    # ============ READS ============

    async def probe(self) -> int:
        self._record("probe")
        return 1

    async def get_account_summary(self, address: str) -> AccountSummary:
        self._record("get_account_summary", address)
        return AccountSummary(
            collateral=self.collateral[address],
            margin_used=self.margin_used[address],
            margin_reserved=self.margin_reserved[address],
            available=self.available(address),
            realized_pnl=self.realized_pnl[address],
            unrealized_pnl=self.summary_unrealized[address],
            total_committed=self.margin_used[address] + self.margin_reserved[address],
            healthy=True,
        )

    async def get_collateral(self, address: str) -> int:
        self._record("get_collateral", address)
        return self.collateral[address]

    async def get_available_collateral(self, address: str) -> int:
        self._record("get_available_collateral", address)
        return self.available(address)

    async def get_margin_used(self, address: str) -> int:
        self._record("get_margin_used", address)
        return self.margin_used[address]

    async def get_margin_reserved(self, address: str) -> int:
        self._record("get_margin_reserved", address)
        return self.margin_reserved[address]

    async def get_realized_pnl(self, address: str) -> int:
        self._record("get_realized_pnl", address)
        return self.realized_pnl[address]

    async def get_socialized_loss(self, address: str) -> int:
        self._record("get_socialized_loss", address)
        return self.socialized_loss[address]

    async def get_positions(self, address: str) -> List[Position]:
        self._record("get_positions", address)
        return list(self.positions[address])

    async def get_position_size(self, address: str, market_id: str) -> int:
        self._record("get_position_size", address, market_id)
        key = (address, market_id)
        if key in self.tracked_sizes:
            return self.tracked_sizes[key]
        return sum(p.size for p in self.positions[address] if p.market_id == market_id)

    async def get_open_orders(self, address: str, market_id: str) -> List[Order]:
        self._record("get_open_orders", address, market_id)
        return list(self.orders[(address, market_id)])

    async def get_mark_price(self, market_id: str) -> int:
        self._record("get_mark_price", market_id)
        return self.marks.get(market_id, 0)

    async def get_best_prices(self, market_id: str) -> BestPrices:
        self._record("get_best_prices", market_id)
        return self.best.get(market_id, BestPrices(bid=0, ask=0))

    async def get_order_book(self, market_id: str, depth: int) -> OrderBookSnapshot:
        self._record("get_order_book", market_id, depth)
        best = self.best.get(market_id, BestPrices(bid=0, ask=0))
        bids = [(best.bid, UNIT)] if best.has_bid else []
        asks = [(best.ask, UNIT)] if best.has_ask else []
        return OrderBookSnapshot(market_id=market_id, bids=bids, asks=asks)

    # ============ WRITES ============

    async def place_limit_order(self, address: str, market_id: str, side: Side, price: int, size: int) -> str:
        self._record("place_limit_order", address, market_id, side, price, size)
        notional = price * size // UNIT
        if notional > self.available(address):
            raise RemoteRevertError("execution reverted: insufficient collateral", code=3)
        self.margin_reserved[address] += notional
        order = Order(order_id=str(len(self.orders[(address, market_id)]) + 1), market_id=market_id,
                      side=side, price=price, size=size)
        self.orders[(address, market_id)].append(order)
        return self._ref()

    async def place_market_order(
        self, address: str, market_id: str, side: Side, size: int, max_slippage_bps: int
    ) -> str:
        self._record("place_market_order", address, market_id, side, size, max_slippage_bps)
        return self._ref()

    async def cancel_order(self, address: str, market_id: str, order_id: str) -> str:
        self._record("cancel_order", address, market_id, order_id)
        orders = self.orders[(address, market_id)]
        self.orders[(address, market_id)] = [o for o in orders if o.order_id != order_id]
        return self._ref()

    async def cancel_all_orders(self, address: str, market_id: str) -> str:
        self._record("cancel_all_orders", address, market_id)
        self.orders[(address, market_id)] = []
        return self._ref()

    async def deposit_collateral(self, address: str, amount: int) -> str:
        self._record("deposit_collateral", address, amount)
        self.collateral[address] += amount
        return self._ref()

    async def withdraw_collateral(self, address: str, amount: int) -> str:
        self._record("withdraw_collateral", address, amount)
        if amount > self.available(address):
            raise RemoteRevertError("execution reverted: withdraw exceeds available", code=3)
        self.collateral[address] -= amount
        return self._ref()

    async def top_up_margin(self, address: str, market_id: str, amount: int) -> str:
        self._record("top_up_margin", address, market_id, amount)
        return self._ref()

    async def reduce_margin(self, address: str, market_id: str, amount: int) -> str:
        self._record("reduce_margin", address, market_id, amount)
        return self._ref()

    async def trigger_liquidation_scan(self, market_id: str) -> str:
        self._record("trigger_liquidation_scan", market_id)
        return self._ref()

    async def liquidate_account(self, address: str, market_id: str) -> str:
        self._record("liquidate_account", address, market_id)
        return self._ref()

    # ============ EVENTS ============

    async def subscribe_events(self, event_names) -> str:
        self._record("subscribe_events", list(event_names))
        sub_id = f"sub-{len(self.subscribed) + 1}"
        self.subscribed.append(sub_id)
        return sub_id

    async def poll_events(self, subscription_id: str) -> List[RemoteEvent]:
        self._record("poll_events", subscription_id)
        events, self.pending_events[subscription_id] = self.pending_events[subscription_id], []
        return events

    async def unsubscribe_events(self, subscription_id: str) -> None:
        self._record("unsubscribe_events", subscription_id)
        self.unsubscribed.append(subscription_id)


class RecordingSleep:
    """Injectable sleep that records requested delays and only yields control."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def gateway(fake_remote, recording_sleep):
    return RemoteCallGateway(
        3,
        RetryPolicy(attempts=8, base_delay=0.25, max_delay=5.0),
        probe=fake_remote.probe,
        sleep=recording_sleep,
    )


@pytest.fixture
def session():
    return Session.from_addresses(DEPLOYER, [USER1, USER2], market_id=MARKET, current_actor=0)


@pytest.fixture
def ledger():
    return HistoryLedger()


@pytest.fixture
def dispatcher(session, gateway, fake_remote, ledger, recording_sleep):
    return Dispatcher(session, gateway, fake_remote, ledger, sleep=recording_sleep)


@pytest.fixture
def diagnostics_log():
    """Every DiagnosticSubscriptions built by the runner fixture, in order."""
    return []


@pytest.fixture
def runner(dispatcher, ledger, gateway, fake_remote, diagnostics_log):
    def make_diagnostics() -> DiagnosticSubscriptions:
        diag = DiagnosticSubscriptions(gateway, fake_remote, ["OrderPlaced", "TradeExecuted"], poll_interval=0)
        diagnostics_log.append(diag)
        return diag

    return BatchRunner(dispatcher, ledger, diagnostics_factory=make_diagnostics, health_timeout=5.0)


@pytest.fixture
def write_script(tmp_path):
    """Write a script file under tmp_path and return its path."""
    def _write(text: str, name: str = "script.txt") -> str:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return str(path)

    return _write
