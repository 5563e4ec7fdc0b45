"""Process-lifetime market cache.

Markets are looked up by hash, in chunks no larger than the exchange allows
per call. Concurrent lookups of the same hash share one request. A failed
lookup is not cached: the caller sees the market as missing this time.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Optional

from .config import MAX_MARKETS_PER_REQUEST
from .models import Market

log = logging.getLogger(__name__)

MarketFetcher = Callable[[Sequence[str]], Awaitable[Sequence[Market]]]


class MarketCache:
    def __init__(self, fetch: MarketFetcher, batch_limit: int = MAX_MARKETS_PER_REQUEST) -> None:
        self._fetch = fetch
        self._batch_limit = max(1, min(batch_limit, MAX_MARKETS_PER_REQUEST))
        self._markets: dict[str, Market] = {}
        self._inflight: dict[str, asyncio.Future[Optional[Market]]] = {}
        self.lookups = 0
        self.failures = 0

    def __len__(self) -> int:
        return len(self._markets)

    async def get(self, market_hash: str) -> Optional[Market]:
        found = await self.get_many([market_hash])
        return found.get(market_hash)

    async def get_many(self, market_hashes: Iterable[str]) -> dict[str, Market]:
        """Resolve hashes to markets; unknown or failed hashes are omitted."""
        loop = asyncio.get_running_loop()
        result: dict[str, Market] = {}
        waits: dict[str, asyncio.Future[Optional[Market]]] = {}
        missing: list[str] = []

        for market_hash in dict.fromkeys(market_hashes):
            key = market_hash.lower()
            cached = self._markets.get(key)
            if cached is not None:
                result[market_hash] = cached
                continue
            fut = self._inflight.get(key)
            if fut is None:
                fut = loop.create_future()
                self._inflight[key] = fut
                missing.append(market_hash)
            waits[market_hash] = fut

        if missing:
            chunks = [missing[i:i + self._batch_limit]
                      for i in range(0, len(missing), self._batch_limit)]
            await asyncio.gather(*(self._fetch_chunk(chunk) for chunk in chunks))

        for market_hash, fut in waits.items():
            market = await fut
            if market is not None:
                result[market_hash] = market
        return result

    async def _fetch_chunk(self, chunk: list[str]) -> None:
        found: dict[str, Market] = {}
        self.lookups += 1
        try:
            for market in await self._fetch(chunk):
                found[market.market_hash.lower()] = market
        except Exception as exc:
            self.failures += 1
            log.warning("market lookup failed for %d hash(es): %s", len(chunk), exc)
        finally:
            for market_hash in chunk:
                key = market_hash.lower()
                market = found.get(key)
                if market is not None:
                    self._markets[key] = market
                fut = self._inflight.pop(key, None)
                if fut is not None and not fut.done():
                    fut.set_result(market)
