"""
Managed Wealth - Pricing.

============================================================
PURPOSE
============================================================
Bounded price lookups for liquidation (best bid) and NAV
marking (mid).

Every lookup is wrapped in asyncio.wait_for with the configured
timeout. A lookup that times out, errors, or returns no usable
price degrades to the caller's fallback value and is flagged
is_fallback=True. The worker is never blocked past the timeout.

============================================================
"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Protocol, Tuple

import aiohttp

from core.clock import ClockFactory, ClockProtocol

from .config import PricingConfig
from .types import PriceQuote, PriceSource

logger = logging.getLogger(__name__)


class PriceSourceError(Exception):
    """Raised by a price source when it cannot produce a price."""


class MarketPriceSource(Protocol):
    """Order book / mark price provider."""

    async def best_bid(self, token_id: str) -> Optional[Decimal]:
        ...

    async def mark_price(self, token_id: str) -> Optional[Decimal]:
        ...


def _to_price(value: Any) -> Optional[Decimal]:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not price.is_finite() or price <= 0:
        return None
    return price


def best_bid_from_book(book: Dict[str, Any]) -> Optional[Decimal]:
    """Highest positive bid in an order book payload, None if the book has no bids."""
    bids = book.get("bids") or []
    prices = [p for p in (_to_price(level.get("price")) for level in bids if isinstance(level, dict)) if p]
    return max(prices) if prices else None


# ============================================================
# HTTP ORDER BOOK SOURCE
# ============================================================

class ClobPriceSource:
    """
    Price source backed by a CLOB HTTP API.

    GET {base_url}/book?token_id=...      -> {"bids": [{"price": "0.51", ...}], ...}
    GET {base_url}/midpoint?token_id=...  -> {"mid": "0.515"}
    """

    def __init__(self, config: Optional[PricingConfig] = None):
        self._config = config or PricingConfig()
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_json(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

        url = f"{self._config.base_url.rstrip('/')}{path}"
        async with self._session.get(url, params=params) as response:
            if response.status != 200:
                body = await response.text()
                raise PriceSourceError(f"{url} returned {response.status}: {body[:200]}")
            return await response.json()

    async def best_bid(self, token_id: str) -> Optional[Decimal]:
        book = await self._get_json("/book", {"token_id": token_id})
        return best_bid_from_book(book)

    async def mark_price(self, token_id: str) -> Optional[Decimal]:
        payload = await self._get_json("/midpoint", {"token_id": token_id})
        return _to_price(payload.get("mid"))

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None


# ============================================================
# BOUNDED LOOKUP
# ============================================================

class PriceLookup:
    """Timeout-bounded lookups with explicit fallback."""

    def __init__(
        self,
        source: MarketPriceSource,
        config: Optional[PricingConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._source = source
        self._config = config or PricingConfig()
        self._clock = clock or ClockFactory.get_clock()

    async def _bounded(self, coro, token_id: str, what: str) -> Tuple[Optional[Decimal], Optional[str]]:
        """Returns (price, fallback_reason); exactly one is None."""
        try:
            price = await asyncio.wait_for(coro, timeout=self._config.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"{what} lookup for {token_id} timed out after {self._config.timeout_seconds}s")
            return None, "PRICE_UNAVAILABLE"
        except (aiohttp.ClientError, PriceSourceError, ValueError) as e:
            logger.warning(f"{what} lookup for {token_id} failed: {e}")
            return None, "PRICE_UNAVAILABLE"
        if price is None:
            return None, "NO_BID_LIQUIDITY"
        return price, None

    def _quote(
        self,
        token_id: str,
        price: Optional[Decimal],
        reason: Optional[str],
        source: PriceSource,
        fallback: Decimal,
    ) -> PriceQuote:
        if price is None:
            return PriceQuote(
                token_id=token_id,
                price=fallback,
                source=PriceSource.FALLBACK,
                is_fallback=True,
                fetched_at=self._clock.now(),
                fallback_reason=reason,
            )
        return PriceQuote(token_id=token_id, price=price, source=source, fetched_at=self._clock.now())

    async def best_bid(self, token_id: str, fallback: Decimal) -> PriceQuote:
        price, reason = await self._bounded(self._source.best_bid(token_id), token_id, "Best bid")
        return self._quote(token_id, price, reason, PriceSource.ORDERBOOK, fallback)

    async def mark(self, token_id: str, fallback: Decimal) -> PriceQuote:
        price, reason = await self._bounded(self._source.mark_price(token_id), token_id, "Mark")
        return self._quote(token_id, price, reason, PriceSource.MARK_TO_MARKET, fallback)

    async def close(self) -> None:
        close = getattr(self._source, "close", None)
        if close is not None:
            await close()
