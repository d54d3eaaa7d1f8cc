"""
Domain protocols (interfaces) for dependency inversion.

The remote contract system is an external collaborator. Console code depends
on this protocol only, and every call to it goes through the RemoteCallGateway.
Implemented by perpconsole.remote.jsonrpc_client.JsonRpcRemote in production
and by an in-memory fake in tests.
"""
from typing import List, Protocol, Sequence, runtime_checkable

from perpconsole.domain.models import (
    AccountSummary,
    BestPrices,
    Order,
    OrderBookSnapshot,
    Position,
    RemoteEvent,
    Side,
)


@runtime_checkable
class RemoteSystem(Protocol):
    """Request/response boundary to the remote contract system."""

    # ----- Probe -----
    async def probe(self) -> int: ...

    # ----- Account reads -----
    async def get_account_summary(self, address: str) -> AccountSummary: ...
    async def get_collateral(self, address: str) -> int: ...
    async def get_available_collateral(self, address: str) -> int: ...
    async def get_margin_used(self, address: str) -> int: ...
    async def get_margin_reserved(self, address: str) -> int: ...
    async def get_realized_pnl(self, address: str) -> int: ...
    async def get_socialized_loss(self, address: str) -> int: ...
    async def get_positions(self, address: str) -> List[Position]: ...
    async def get_position_size(self, address: str, market_id: str) -> int: ...
    async def get_open_orders(self, address: str, market_id: str) -> List[Order]: ...

    # ----- Market reads -----
    async def get_mark_price(self, market_id: str) -> int: ...
    async def get_best_prices(self, market_id: str) -> BestPrices: ...
    async def get_order_book(self, market_id: str, depth: int) -> OrderBookSnapshot: ...

    # ----- Writes (fire-and-confirm, return a reference) -----
    async def place_limit_order(self, address: str, market_id: str, side: Side, price: int, size: int) -> str: ...
    async def place_market_order(
        self, address: str, market_id: str, side: Side, size: int, max_slippage_bps: int
    ) -> str: ...
    async def cancel_order(self, address: str, market_id: str, order_id: str) -> str: ...
    async def cancel_all_orders(self, address: str, market_id: str) -> str: ...
    async def deposit_collateral(self, address: str, amount: int) -> str: ...
    async def withdraw_collateral(self, address: str, amount: int) -> str: ...
    async def top_up_margin(self, address: str, market_id: str, amount: int) -> str: ...
    async def reduce_margin(self, address: str, market_id: str, amount: int) -> str: ...
    async def trigger_liquidation_scan(self, market_id: str) -> str: ...
    async def liquidate_account(self, address: str, market_id: str) -> str: ...

    # ----- Diagnostic event feed (read-only) -----
    async def subscribe_events(self, event_names: Sequence[str]) -> str: ...
    async def poll_events(self, subscription_id: str) -> List[RemoteEvent]: ...
    async def unsubscribe_events(self, subscription_id: str) -> None: ...
