import asyncio
import base64
import hashlib
import hmac
import random
import time
import urllib.parse
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

import aiohttp

from .errors import ExchangeError, RateLimitError
from .exchange import DEFAULT_LOT_SIZE, ExchangeAdapter
from .logging_setup import logger
from .models import (
    Balance,
    Candle,
    LotSizeInfo,
    OpenOrder,
    OrderResult,
    OrderStatus,
    Side,
    Ticker,
)
from .rate_limit_policy import RateLimitManager

SUPPORTED_INTERVAL_MINUTES = (1, 5, 15, 30, 60, 240, 1440, 10080, 21600)

PAIR_ALIASES = {
    "BTC-USD": "XBTUSD",
    "ETH-USD": "ETHUSD",
    "SOL-USD": "SOLUSD",
    "DOGE-USD": "XDGUSD",
}

# Kraken asset codes for the common wallet entries
ASSET_ALIASES = {
    "ZUSD": "USD",
    "XXBT": "BTC",
    "XBT": "BTC",
}

DEFAULT_LOT_SIZES = {
    "BTC-USD": LotSizeInfo(Decimal("0.00001"), 5, Decimal("0.0001"), 1),
    "ETH-USD": LotSizeInfo(Decimal("0.001"), 3, Decimal("0.01"), 2),
    "SOL-USD": LotSizeInfo(Decimal("0.01"), 2, Decimal("0.1"), 2),
    "LINK-USD": LotSizeInfo(Decimal("0.01"), 2, Decimal("0.1"), 3),
    "AVAX-USD": LotSizeInfo(Decimal("0.01"), 2, Decimal("0.1"), 2),
    "ADA-USD": LotSizeInfo(Decimal("0.1"), 1, Decimal("1"), 4),
    "XRP-USD": LotSizeInfo(Decimal("0.1"), 1, Decimal("1"), 4),
    "DOGE-USD": LotSizeInfo(Decimal("0.00000001"), 8, Decimal("0.00000001"), 6),
    "DOT-USD": LotSizeInfo(Decimal("0.01"), 2, Decimal("0.1"), 4),
}

_RATE_LIMIT_MARKERS = ("EAPI:Rate limit exceeded", "EGeneral:Too many requests", "EOrder:Rate limit exceeded")


def to_kraken_pair(symbol: str) -> str:
    return PAIR_ALIASES.get(symbol, symbol.replace("-", ""))


def from_kraken_pair(pair: str, quote: str = "USD") -> str:
    for ours, theirs in PAIR_ALIASES.items():
        if theirs == pair:
            return ours
    if pair.endswith(quote) and len(pair) > len(quote):
        return f"{pair[:-len(quote)]}-{quote}"
    return pair


def interval_to_hours(interval: str) -> Decimal:
    """``"6h"`` -> 6, ``"1d"`` -> 24, ``"15m"`` -> 0.25."""
    unit = interval[-1]
    try:
        n = Decimal(interval[:-1])
    except InvalidOperation:
        raise ValueError(f"Unsupported interval: {interval}")
    if unit == "h":
        return n
    if unit == "d":
        return n * 24
    if unit == "m":
        return n / 60
    raise ValueError(f"Unsupported interval: {interval}")


def aggregate_candles(candles: List[Candle], hours: int) -> List[Candle]:
    """Merge hourly candles into ``hours``-wide buckets aligned to the epoch."""
    if hours <= 1:
        return list(candles)
    period = hours * 3600
    out: List[Candle] = []
    group: List[Candle] = []
    group_start = None
    for c in sorted(candles, key=lambda c: c.time):
        start = int(c.time.timestamp()) // period * period
        if group and start != group_start:
            out.append(_merge(group))
            group = []
        group.append(c)
        group_start = start
    if group:
        out.append(_merge(group))
    return out


def _merge(group: List[Candle]) -> Candle:
    return Candle(
        time=group[0].time,
        open=group[0].open,
        high=max(c.high for c in group),
        low=min(c.low for c in group),
        close=group[-1].close,
        volume=sum((c.volume for c in group), Decimal("0")),
    )


class KrakenAdapter(ExchangeAdapter):
    """Async Kraken spot adapter using aiohttp with non-blocking rate-limit backoff.

    Features:
    - Private request signing (API-Key / API-Sign) as documented by Kraken's REST API.
    - Per-endpoint-group quotas via :class:`RateLimitManager`.
    - Jittered exponential backoff when Kraken reports a rate-limit error.
    - Candle aggregation for cadences Kraken does not serve natively (6h, 12h).
    - Lot-size defaults for common pairs when AssetPairs is unavailable.

    Usage:
        async with KrakenAdapter(key, secret) as adapter:
            ticker = await adapter.get_ticker("BTC-USD")
    """

    def __init__(self, api_key: str, secret: str, *, base_url: str = "https://api.kraken.com", quote_currency: str = "USD", timeout: int = 10, max_retries: int = 5, max_backoff_seconds: float = 60.0, maker_fee: Decimal = Decimal("0.0016"), rate_limiter: Optional[RateLimitManager] = None):
        self.api_key = api_key
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.quote_currency = quote_currency
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_backoff_seconds = max_backoff_seconds
        self.maker_fee = maker_fee
        self.rate_limiter = rate_limiter or RateLimitManager()
        self.session: Optional[aiohttp.ClientSession] = None
        self._last_nonce = 0

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None

    def _nonce(self) -> int:
        nonce = int(time.time() * 1000) * 1000
        if nonce <= self._last_nonce:
            nonce = self._last_nonce + 1
        self._last_nonce = nonce
        return nonce

    def _sign(self, path: str, nonce: int, post_data: str) -> str:
        """HMAC-SHA512 of path + SHA256(nonce + post_data), keyed with the decoded secret."""
        try:
            key = base64.b64decode(self.secret)
        except (ValueError, TypeError):
            raise ExchangeError("Secret must be base64-encoded for signing")
        digest = hashlib.sha256((str(nonce) + post_data).encode("utf-8")).digest()
        mac = hmac.new(key, path.encode("utf-8") + digest, hashlib.sha512)
        return base64.b64encode(mac.digest()).decode()

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        """Compute jittered exponential backoff."""
        delay = min(base * (2 ** attempt), max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    async def _request(self, path: str, params: Optional[dict] = None, *, private: bool = False, attempt: int = 0):
        """Execute a request with rate limiting and retry on rate-limit errors."""
        if not self.session:
            raise ExchangeError("Session not initialized; use 'async with' context manager")
        if private and (not self.api_key or not self.secret):
            raise ExchangeError("Kraken API credentials not configured")

        group = RateLimitManager.group_for(path)
        if not await self.rate_limiter.acquire(group, max_wait=self.max_backoff_seconds):
            raise RateLimitError(f"Local rate limit wait exceeded | group={group} path={path}")

        url = f"{self.base_url}{path}"
        params = dict(params or {})
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            if private:
                nonce = self._nonce()
                params["nonce"] = nonce
                post_data = urllib.parse.urlencode(params)
                headers = {
                    "API-Key": self.api_key,
                    "API-Sign": self._sign(path, nonce, post_data),
                    "Content-Type": "application/x-www-form-urlencoded",
                }
                ctx = self.session.post(url, data=post_data, headers=headers, timeout=timeout)
            else:
                ctx = self.session.get(url, params=params, timeout=timeout)

            async with ctx as resp:
                if resp.status == 429:
                    return await self._backoff(path, params, private, attempt, "HTTP 429")
                if not (200 <= resp.status < 300):
                    text = await resp.text()
                    raise ExchangeError(f"{resp.status}: {text}")
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ExchangeError(f"Request timeout: {path} {e}")
        except aiohttp.ClientError as e:
            raise ExchangeError(f"Request failed: {path} {e}")

        errors = payload.get("error") or []
        if errors:
            message = ", ".join(errors)
            if any(marker in message for marker in _RATE_LIMIT_MARKERS):
                params.pop("nonce", None)
                return await self._backoff(path, params, private, attempt, message)
            raise ExchangeError(f"Kraken API error: {message}")
        if "result" not in payload:
            raise ExchangeError(f"Kraken API returned no result data for {path}")
        return payload["result"]

    async def _backoff(self, path, params, private, attempt, reason):
        if attempt >= self.max_retries:
            raise RateLimitError(f"Rate limited and max backoff attempts exceeded: {reason}")
        delay = self._jittered_backoff(attempt, max_backoff=self.max_backoff_seconds)
        logger.warning(f"Kraken rate limited | path={path} attempt={attempt} sleep={delay:.2f}s reason={reason}")
        await asyncio.sleep(delay)
        return await self._request(path, params, private=private, attempt=attempt + 1)

    # --- market data ---
    async def get_ohlcv(self, symbol: str, interval: str, limit: int = 100) -> List[Candle]:
        hours = interval_to_hours(interval)
        minutes = int(hours * 60)
        aggregate = minutes not in SUPPORTED_INTERVAL_MINUTES
        fetch_minutes = 60 if aggregate else minutes

        data = await self._request("/0/public/OHLC", {"pair": to_kraken_pair(symbol), "interval": fetch_minutes})
        rows = next((v for k, v in data.items() if k != "last"), None)
        if not isinstance(rows, list):
            raise ExchangeError(f"No OHLCV data found for {symbol}")

        candles = [
            Candle(
                time=datetime.fromtimestamp(int(r[0]), tz=timezone.utc),
                open=Decimal(str(r[1])),
                high=Decimal(str(r[2])),
                low=Decimal(str(r[3])),
                close=Decimal(str(r[4])),
                volume=Decimal(str(r[6])),
            )
            for r in rows
        ]
        if aggregate:
            candles = aggregate_candles(candles, int(hours))
        return candles[-limit:]

    async def get_ticker(self, symbol: str) -> Ticker:
        data = await self._request("/0/public/Ticker", {"pair": to_kraken_pair(symbol)})
        if not data:
            raise ExchangeError(f"No ticker for {symbol}")
        t = next(iter(data.values()))
        return Ticker(
            symbol=symbol,
            price=Decimal(t["c"][0]),
            bid=Decimal(t["b"][0]),
            ask=Decimal(t["a"][0]),
        )

    # --- balances ---
    async def _balances_ex(self) -> Dict[str, Balance]:
        data = await self._request("/0/private/BalanceEx", private=True)
        out: Dict[str, Balance] = {}
        for code, entry in data.items():
            total = Decimal(str(entry.get("balance", "0")))
            hold = Decimal(str(entry.get("hold_trade", "0")))
            asset = ASSET_ALIASES.get(code, code)
            out[asset] = Balance(asset=asset, free=total - hold, locked=hold)
        return out

    async def get_all_balances(self) -> Dict[str, Balance]:
        balances = await self._balances_ex()
        return {k: v for k, v in balances.items() if v.total > 0}

    async def get_balance(self, asset: str) -> Balance:
        balances = await self._balances_ex()
        for code in (asset, f"X{asset}", f"Z{asset}"):
            if code in balances:
                return balances[code]
        return Balance(asset=asset, free=Decimal("0"))

    # --- orders ---
    async def _add_order(self, symbol: str, side: Side, quantity: Decimal, ordertype: str, price: Optional[Decimal], client_order_id: Optional[str]) -> str:
        params = {
            "pair": to_kraken_pair(symbol),
            "type": side.value,
            "ordertype": ordertype,
            "volume": str(quantity),
        }
        if price is not None:
            params["price"] = str(price)
            params["oflags"] = "post"
        # userref must be a signed int32
        if client_order_id and client_order_id.isdigit():
            params["userref"] = int(client_order_id)
        else:
            params["userref"] = int(str(int(time.time() * 1000))[-9:])
        result = await self._request("/0/private/AddOrder", params, private=True)
        txids = result.get("txid") or []
        if not txids:
            raise ExchangeError(f"AddOrder returned no txid for {symbol}")
        return txids[0]

    async def place_limit_order(self, symbol, side, quantity, price, client_order_id=None) -> str:
        return await self._add_order(symbol, side, quantity, "limit", price, client_order_id)

    async def place_market_order(self, symbol, side, quantity, client_order_id=None) -> str:
        return await self._add_order(symbol, side, quantity, "market", None, client_order_id)

    async def cancel_order(self, order_id: str) -> bool:
        try:
            await self._request("/0/private/CancelOrder", {"txid": order_id}, private=True)
            return True
        except ExchangeError as e:
            logger.warning(f"Cancel failed | order_id={order_id} error={e}")
            return False

    async def get_order_status(self, order_id: str) -> OrderResult:
        data = await self._request("/0/private/QueryOrders", {"txid": order_id}, private=True)
        order = data.get(order_id)
        if not order:
            raise ExchangeError(f"Order not found: {order_id}")

        filled_qty = Decimal(str(order.get("vol_exec") or "0"))
        raw = order.get("status")
        if raw == "closed":
            status = OrderStatus.FILLED
        elif raw in ("canceled", "expired"):
            status = OrderStatus.CANCELLED
        elif filled_qty > 0:
            status = OrderStatus.PARTIAL
        else:
            status = OrderStatus.PENDING

        if order.get("fee"):
            fee = Decimal(str(order["fee"]))
        else:
            fee = Decimal(str(order.get("cost") or "0")) * self.maker_fee
        price = Decimal(str(order.get("price") or "0"))
        return OrderResult(
            order_id=order_id,
            status=status,
            filled_quantity=filled_qty if filled_qty > 0 else None,
            filled_price=price if price > 0 else None,
            fee=fee,
        )

    async def get_open_orders(self) -> List[OpenOrder]:
        data = await self._request("/0/private/OpenOrders", private=True)
        out = []
        for order_id, o in (data.get("open") or {}).items():
            descr = o.get("descr") or {}
            qty = Decimal(str(o.get("vol") or "0"))
            out.append(OpenOrder(
                order_id=order_id,
                symbol=from_kraken_pair(descr.get("pair", "UNKNOWN"), self.quote_currency),
                side=Side.BUY if descr.get("type") == "buy" else Side.SELL,
                quantity=qty,
                remaining_quantity=qty - Decimal(str(o.get("vol_exec") or "0")),
                price=Decimal(str(descr.get("price") or "0")),
                opened_at=datetime.fromtimestamp(float(o.get("opentm") or 0), tz=timezone.utc),
                status=o.get("status") or "open",
                client_order_id=str(o["userref"]) if o.get("userref") else None,
            ))
        return out

    async def get_lot_size_info(self, symbol: str) -> LotSizeInfo:
        pair = to_kraken_pair(symbol)
        try:
            data = await self._request("/0/public/AssetPairs", {"pair": pair})
        except ExchangeError as e:
            logger.warning(f"AssetPairs unavailable, using defaults | symbol={symbol} error={e}")
            return DEFAULT_LOT_SIZES.get(symbol, DEFAULT_LOT_SIZE)

        info = data.get(pair)
        if info is None:
            info = next((v for k, v in data.items() if k.upper() == pair.upper() or pair.replace(self.quote_currency, "") in k), None)
        if info is None:
            return DEFAULT_LOT_SIZES.get(symbol, DEFAULT_LOT_SIZE)

        try:
            lot_decimals = int(info.get("lot_decimals", 8))
            lot = Decimal(str(info.get("lot_multiplier", 1)))
            ordermin = Decimal(str(info.get("ordermin") or "0"))
            price_decimals = int(info.get("pair_decimals", 8))
        except (InvalidOperation, ValueError, TypeError):
            return DEFAULT_LOT_SIZES.get(symbol, DEFAULT_LOT_SIZE)
        if lot <= 0:
            return DEFAULT_LOT_SIZES.get(symbol, DEFAULT_LOT_SIZE)

        lot_size = lot * Decimal(1).scaleb(-lot_decimals)
        return LotSizeInfo(
            lot_size=lot_size,
            lot_decimals=lot_decimals,
            min_order_size=ordermin if ordermin > 0 else lot_size,
            price_decimals=price_decimals,
        )
