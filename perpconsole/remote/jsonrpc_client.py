"""
JSON-RPC over HTTP client for the remote contract system.

Handles:
- Request framing (JSON-RPC 2.0, one POST per call)
- Error classification (transient network vs. remote revert)
- Decoding of fixed-point integers (int, decimal string or 0x-hex)

This client never retries. Retry and concurrency belong to the
RemoteCallGateway, which wraps every call made through it.
"""
import asyncio
import itertools
import ssl
from typing import Any, List, Optional, Sequence

import aiohttp
import certifi

from perpconsole.domain.models import (
    AccountSummary,
    BestPrices,
    Order,
    OrderBookSnapshot,
    Position,
    RemoteEvent,
    Side,
)
from perpconsole.exceptions import RemoteError, RemoteRevertError, TransientNetworkError
from perpconsole.gateway.retry import is_transient_message
from perpconsole.monitoring.logger import get_logger

logger = get_logger(__name__)

_SUMMARY_FIELDS = (
    ("collateral", "totalCollateral"),
    ("margin_used", "marginUsedInPositions"),
    ("margin_reserved", "marginReservedForOrders"),
    ("available", "availableMargin"),
    ("realized_pnl", "realizedPnL"),
    ("unrealized_pnl", "unrealizedPnL"),
    ("total_committed", "totalMarginCommitted"),
    ("healthy", "isMarginHealthy"),
)


def to_int(value: Any) -> int:
    """Decode an integer sent as int, decimal string or 0x-prefixed hex."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if text.lower().startswith(("0x", "-0x")):
                return int(text, 16)
            return int(text)
        except ValueError as e:
            raise RemoteError(f"expected integer, got {value!r}") from e
    raise RemoteError(f"expected integer, got {type(value).__name__}: {value!r}")


def _pick(data: Any, index: int, *names: str) -> Any:
    """Read a field from a named mapping or a positional tuple."""
    if isinstance(data, dict):
        for name in names:
            if name in data:
                return data[name]
        raise RemoteError(f"missing field {names[0]!r} in response")
    if isinstance(data, (list, tuple)) and len(data) > index:
        return data[index]
    raise RemoteError(f"missing field {names[0]!r} in response")


def decode_account_summary(data: Any) -> AccountSummary:
    values = {}
    for i, (attr, wire) in enumerate(_SUMMARY_FIELDS):
        raw = _pick(data, i, wire, attr)
        values[attr] = bool(raw) if attr == "healthy" else to_int(raw)
    return AccountSummary(**values)


def decode_position(data: Any) -> Position:
    return Position(
        market_id=str(_pick(data, 0, "marketId", "market_id")),
        size=to_int(_pick(data, 1, "size")),
        entry_price=to_int(_pick(data, 2, "entryPrice", "entry_price")),
        margin_locked=to_int(_pick(data, 3, "marginLocked", "margin_locked")),
        accrued_haircut=to_int(_pick(data, 4, "socializedLossAccrued6", "accruedHaircut", "accrued_haircut")),
        liquidation_price=to_int(_pick(data, 6, "liquidationPrice", "liquidation_price")),
    )


def decode_order(data: Any, market_id: str) -> Order:
    if not isinstance(data, dict):
        raise RemoteError(f"malformed order: expected object, got {type(data).__name__}")
    side_raw = str(data.get("side") if "side" in data else ("buy" if data.get("isBuy") else "sell")).lower()
    return Order(
        order_id=str(_pick(data, 0, "orderId", "order_id", "id")),
        market_id=str(data.get("marketId") or market_id),
        side=Side.BUY if side_raw in ("buy", "bid", "long", "true") else Side.SELL,
        price=to_int(_pick(data, 1, "price")),
        size=to_int(_pick(data, 2, "amount", "size")),
        filled=to_int(data.get("filledAmount") or data.get("filled") or 0),
    )


def _decode_levels(levels: Any) -> List[tuple]:
    out = []
    for level in levels or []:
        out.append((to_int(_pick(level, 0, "price")), to_int(_pick(level, 1, "size", "amount"))))
    return out


class JsonRpcRemote:
    """
    Remote contract system reached through a JSON-RPC 2.0 HTTP endpoint.

    Method names are `<prefix><camelCaseName>`, e.g. `perp_getAccountSummary`.
    Integers travel as decimal strings so no precision is lost in JSON.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout_seconds: float = 15.0,
        method_prefix: str = "perp_",
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.rpc_url = rpc_url
        self.timeout_seconds = timeout_seconds
        self.method_prefix = method_prefix
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)
        self._ssl_context: Optional[ssl.SSLContext] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = None
            if self.rpc_url.startswith("https://"):
                connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
            self._owns_session = True
        return self._session

    def _get_ssl_context(self) -> ssl.SSLContext:
        """Reusable SSL context with certifi certificates."""
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def request(self, method: str, *params: Any) -> Any:
        """
        Send one JSON-RPC request and return its result.

        Raises:
            TransientNetworkError: Connection failure, timeout, HTTP 429/5xx,
                or an RPC error whose message looks transient
            RemoteRevertError: RPC error or HTTP 4xx from the remote system
            RemoteError: Malformed response
        """
        rpc_method = f"{self.method_prefix}{method}"
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": rpc_method,
            "params": [_encode(p) for p in params],
        }
        session = await self._get_session()
        try:
            async with session.post(self.rpc_url, json=payload) as response:
                if response.status == 429 or response.status >= 500:
                    raise TransientNetworkError(f"network error: HTTP {response.status} from {rpc_method}")
                if response.status >= 400:
                    text = await response.text()
                    raise RemoteRevertError(f"HTTP {response.status} from {rpc_method}: {text[:200]}", code=response.status)
                body = await response.json(content_type=None)
        except aiohttp.ClientConnectionError as e:
            raise TransientNetworkError(f"network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"timeout calling {rpc_method}") from e
        except (aiohttp.ContentTypeError, ValueError) as e:
            raise RemoteError(f"malformed response from {rpc_method}: {e}") from e

        return _unwrap(body, rpc_method)

    # ----- Probe -----

    async def probe(self) -> int:
        return to_int(await self.request("blockNumber"))

    # ----- Account reads -----

    async def get_account_summary(self, address: str) -> AccountSummary:
        return decode_account_summary(await self.request("getAccountSummary", address))

    async def get_collateral(self, address: str) -> int:
        return to_int(await self.request("getCollateral", address))

    async def get_available_collateral(self, address: str) -> int:
        return to_int(await self.request("getAvailableCollateral", address))

    async def get_margin_used(self, address: str) -> int:
        return to_int(await self.request("getMarginUsed", address))

    async def get_margin_reserved(self, address: str) -> int:
        return to_int(await self.request("getMarginReserved", address))

    async def get_realized_pnl(self, address: str) -> int:
        return to_int(await self.request("getRealizedPnL", address))

    async def get_socialized_loss(self, address: str) -> int:
        return to_int(await self.request("getSocializedLoss", address))

    async def get_positions(self, address: str) -> List[Position]:
        raw = await self.request("getPositions", address)
        return [decode_position(p) for p in raw or []]

    async def get_position_size(self, address: str, market_id: str) -> int:
        return to_int(await self.request("getPositionSize", address, market_id))

    async def get_open_orders(self, address: str, market_id: str) -> List[Order]:
        raw = await self.request("getOpenOrders", address, market_id)
        return [decode_order(o, market_id) for o in raw or []]

    # ----- Market reads -----

    async def get_mark_price(self, market_id: str) -> int:
        return to_int(await self.request("getMarkPrice", market_id))

    async def get_best_prices(self, market_id: str) -> BestPrices:
        raw = await self.request("getBestPrices", market_id)
        return BestPrices(bid=to_int(_pick(raw, 0, "bestBid", "bid")), ask=to_int(_pick(raw, 1, "bestAsk", "ask")))

    async def get_order_book(self, market_id: str, depth: int) -> OrderBookSnapshot:
        raw = await self.request("getOrderBook", market_id, depth)
        return OrderBookSnapshot(
            market_id=market_id,
            bids=_decode_levels(_pick(raw, 0, "bids")),
            asks=_decode_levels(_pick(raw, 1, "asks")),
        )

    # ----- Writes -----

    async def place_limit_order(self, address: str, market_id: str, side: Side, price: int, size: int) -> str:
        return str(await self.request("placeLimitOrder", address, market_id, side.is_buy, price, size))

    async def place_market_order(
        self, address: str, market_id: str, side: Side, size: int, max_slippage_bps: int
    ) -> str:
        return str(await self.request("placeMarketOrder", address, market_id, side.is_buy, size, max_slippage_bps))

    async def cancel_order(self, address: str, market_id: str, order_id: str) -> str:
        return str(await self.request("cancelOrder", address, market_id, order_id))

    async def cancel_all_orders(self, address: str, market_id: str) -> str:
        return str(await self.request("cancelAllOrders", address, market_id))

    async def deposit_collateral(self, address: str, amount: int) -> str:
        return str(await self.request("depositCollateral", address, amount))

    async def withdraw_collateral(self, address: str, amount: int) -> str:
        return str(await self.request("withdrawCollateral", address, amount))

    async def top_up_margin(self, address: str, market_id: str, amount: int) -> str:
        return str(await self.request("topUpPositionMargin", address, market_id, amount))

    async def reduce_margin(self, address: str, market_id: str, amount: int) -> str:
        return str(await self.request("releasePositionMargin", address, market_id, amount))

    async def trigger_liquidation_scan(self, market_id: str) -> str:
        return str(await self.request("pokeLiquidations", market_id))

    async def liquidate_account(self, address: str, market_id: str) -> str:
        return str(await self.request("liquidateDirect", address, market_id))

    # ----- Diagnostic event feed -----

    async def subscribe_events(self, event_names: Sequence[str]) -> str:
        return str(await self.request("subscribeEvents", list(event_names)))

    async def poll_events(self, subscription_id: str) -> List[RemoteEvent]:
        raw = await self.request("getEventChanges", subscription_id)
        events = []
        for item in raw or []:
            if not isinstance(item, dict):
                raise RemoteError(f"malformed event: expected object, got {type(item).__name__}")
            block = item.get("blockNumber")
            events.append(
                RemoteEvent(
                    name=str(item.get("event") or item.get("name") or "unknown"),
                    data=dict(item.get("args") or {}),
                    block=to_int(block) if block is not None else None,
                    tx_ref=item.get("transactionHash"),
                )
            )
        return events

    async def unsubscribe_events(self, subscription_id: str) -> None:
        await self.request("unsubscribeEvents", subscription_id)


def _encode(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _unwrap(body: Any, rpc_method: str) -> Any:
    if not isinstance(body, dict):
        raise RemoteError(f"malformed response from {rpc_method}: expected object")
    error = body.get("error")
    if error:
        if isinstance(error, dict):
            message = str(error.get("message") or "remote error")
            code = error.get("code")
            data = error.get("data")
        else:
            message, code, data = str(error), None, None
        if is_transient_message(message):
            raise TransientNetworkError(f"{rpc_method}: {message}")
        raise RemoteRevertError(f"{rpc_method} reverted: {message}", code=code, data=data)
    if "result" not in body:
        raise RemoteError(f"malformed response from {rpc_method}: no result")
    return body["result"]
