"""SX.bet REST client.

All calls go through ``_request``: JSON in, JSON out, ``X-Api-Key`` header,
explicit timeout. Transport errors and 5xx are retried with exponential
backoff; 4xx and ``status != "success"`` answers are not.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Sequence

import aiohttp

from .config import MAX_MARKETS_PER_REQUEST, ApiConfig
from .errors import ApiError, HttpStatusError
from .models import Market, Metadata, OrderResponse, SignedOrder
from .utils import sanitize_for_logging

log = logging.getLogger(__name__)

USER_AGENT = "sx-copy/1.0"

METADATA_PATH = "/metadata"
MARKETS_FIND_PATH = "/markets/find"
ORDERS_NEW_PATH = "/orders/new"
ORDERS_CANCEL_PATH = "/orders/cancel/v2"
ORDERS_CANCEL_EVENT_PATH = "/orders/cancel/event"
ORDERS_CANCEL_ALL_PATH = "/orders/cancel/all"
USER_TOKEN_PATH = "/user/token"


class SXApiClient:
    """Async client for the endpoints the copy bot needs."""

    def __init__(self, base_url: str, api_key: str, cfg: ApiConfig | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._cfg = cfg or ApiConfig()
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                    "User-Agent": USER_AGENT,
                    "X-Api-Key": self._api_key,
                },
                timeout=aiohttp.ClientTimeout(total=self._cfg.timeout_s),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, path: str, body: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        data = json.dumps(body, separators=(",", ":")) if body is not None else None
        attempts = self._cfg.max_retries + 1
        for attempt in range(attempts):
            log.debug("api %s %s body=%s", method, path, sanitize_for_logging(body))
            try:
                async with self._get_session().request(method, url, data=data) as resp:
                    raw = await resp.read()
                    text = raw.decode("utf-8", errors="replace")
                    if resp.status >= 400:
                        raise HttpStatusError(resp.status, text, method, path)
                    return self._decode_body(raw, method, path)
            except HttpStatusError as exc:
                if not exc.retryable or attempt + 1 >= attempts:
                    raise
                err: Exception = exc
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt + 1 >= attempts:
                    raise ApiError(f"request_failed method={method} path={path} error={exc!r}",
                                   path=path) from exc
                err = exc
            delay = self._cfg.backoff_s * self._cfg.backoff_multiplier ** attempt
            log.warning("api %s %s failed (%s), retrying in %.1fs", method, path, err, delay)
            await asyncio.sleep(delay)
        raise ApiError(f"request_failed method={method} path={path}", path=path)

    @staticmethod
    def _decode_body(raw: bytes, method: str, path: str) -> Any:
        if not raw:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            preview = raw[:400].decode("utf-8", errors="replace")
            raise ApiError(f"invalid_json method={method} path={path} error={exc}",
                           path=path, payload=preview) from exc

    @staticmethod
    def _expect_success(payload: Any, what: str, path: str) -> Dict[str, Any]:
        if not isinstance(payload, dict) or payload.get("status") != "success":
            raise ApiError(f"failed to {what}", path=path, payload=payload)
        return payload

    # ── Public API ──

    async def get_metadata(self) -> Metadata:
        payload = self._expect_success(await self._request("GET", METADATA_PATH),
                                       "get metadata", METADATA_PATH)
        return Metadata.from_api(payload.get("data") or {})

    async def get_markets(self, market_hashes: Sequence[str]) -> list[Market]:
        if not market_hashes:
            return []
        if len(market_hashes) > MAX_MARKETS_PER_REQUEST:
            raise ValueError(f"at most {MAX_MARKETS_PER_REQUEST} market hashes per request")
        path = f"{MARKETS_FIND_PATH}?marketHashes={','.join(market_hashes)}"
        payload = self._expect_success(await self._request("GET", path), "get markets", MARKETS_FIND_PATH)
        markets: list[Market] = []
        for row in payload.get("data") or ():
            try:
                markets.append(Market.from_api(row))
            except (ValueError, AttributeError) as exc:
                log.warning("skipping malformed market row: %s", exc)
        return markets

    async def post_orders(self, orders: Sequence[SignedOrder]) -> OrderResponse:
        if not orders:
            raise ValueError("no orders to post")
        body = {"orders": [o.to_api() for o in orders]}
        payload = self._expect_success(await self._request("POST", ORDERS_NEW_PATH, body),
                                       "post orders", ORDERS_NEW_PATH)
        return OrderResponse.from_api(payload)

    async def cancel_orders(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._expect_success(await self._request("POST", ORDERS_CANCEL_PATH, payload),
                                    "cancel orders", ORDERS_CANCEL_PATH)

    async def cancel_event_orders(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._expect_success(await self._request("POST", ORDERS_CANCEL_EVENT_PATH, payload),
                                    "cancel event orders", ORDERS_CANCEL_EVENT_PATH)

    async def cancel_all_orders(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._expect_success(await self._request("POST", ORDERS_CANCEL_ALL_PATH, payload),
                                    "cancel all orders", ORDERS_CANCEL_ALL_PATH)

    async def create_token_request(self) -> Dict[str, Any]:
        """Ably token request used to authenticate the real-time feed."""
        payload = await self._request("GET", USER_TOKEN_PATH)
        if not isinstance(payload, dict):
            raise ApiError("invalid token request response", path=USER_TOKEN_PATH, payload=payload)
        return payload.get("data", payload) if "keyName" not in payload else payload
