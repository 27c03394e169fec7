from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from tradebot.config import AlpacaMarketConfig
from tradebot.providers.base import MarketDataProvider
from tradebot.schemas import Tick, utcnow


_QUOTES = ("USDT", "USDC", "USD", "BTC")


def to_pair(symbol: str) -> str:
    """
    "BTCUSD" -> "BTC/USD". Symbols that already contain a slash pass through.
    """
    s = symbol.strip().upper()
    if "/" in s:
        return s
    for q in _QUOTES:
        if s.endswith(q) and len(s) > len(q):
            return f"{s[: -len(q)]}/{q}"
    raise ValueError(f"Unsupported crypto symbol format: {symbol}")


def from_pair(pair: str) -> str:
    return pair.replace("/", "").upper()


def _parse_ts(v: Any) -> datetime:
    if isinstance(v, (int, float)):
        return datetime.fromtimestamp(float(v) / 1000.0, tz=timezone.utc)
    if isinstance(v, str) and v:
        # Alpaca sends RFC-3339 with nanoseconds; trim to microseconds.
        s = v.replace("Z", "+00:00")
        head, sep, tail = s.partition(".")
        if sep:
            frac = tail
            tz = ""
            for marker in ("+", "-"):
                if marker in tail:
                    frac, tz = tail.split(marker, 1)
                    tz = marker + tz
                    break
            s = f"{head}.{frac[:6]}{tz}"
        return datetime.fromisoformat(s)
    return utcnow()


def parse_stream_message(message: Any) -> Optional[Tick]:
    """
    Extract a tick from a market-data stream frame.

    Understands ``{"stream": "T.BTCUSD", "data": {...}}`` trade frames,
    ``"B."`` bar frames, v1beta3 ``{"T": "t"|"b", "S": "BTC/USD", ...}``
    frames and ``{"type": "mock", "data": {...}}`` replay frames. Anything
    else (subscription acks, errors, malformed payloads) yields None.
    """
    if not isinstance(message, dict):
        return None
    try:
        if message.get("type") == "mock" and isinstance(message.get("data"), dict):
            d = message["data"]
            return Tick(
                symbol=str(d["symbol"]),
                price=float(d["price"]),
                timestamp=_parse_ts(d.get("timestamp")),
                change=float(d.get("change", 0.0)),
                change_percent=float(d.get("changePercent", d.get("change_percent", 0.0))),
            )

        stream = message.get("stream")
        data = message.get("data")
        if isinstance(stream, str) and isinstance(data, dict):
            kind, _, symbol = stream.partition(".")
            if kind == "B":
                return Tick(symbol=symbol, price=float(data["c"]), timestamp=_parse_ts(data.get("t")))
            if kind == "T":
                return Tick(symbol=symbol, price=float(data["p"]), timestamp=_parse_ts(data.get("t")))
            return None

        kind = message.get("T")
        if kind in ("t", "b") and "S" in message:
            price = message["p"] if kind == "t" else message["c"]
            return Tick(
                symbol=from_pair(str(message["S"])),
                price=float(price),
                timestamp=_parse_ts(message.get("t")),
            )
    except (KeyError, TypeError, ValueError):
        return None
    return None


class AlpacaProvider(MarketDataProvider):
    """
    Latest crypto trade via Alpaca market data (v1beta3).

    Endpoint:
      /v1beta3/crypto/{feed}/latest/trades?symbols=BTC/USD
    Change figures are measured against the first price seen this session.
    """

    def __init__(self, cfg: AlpacaMarketConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._cfg = cfg
        headers = {"Accept": "application/json"}
        key = os.getenv(cfg.key_env)
        secret = os.getenv(cfg.secret_env)
        if key and secret:
            headers["APCA-API-KEY-ID"] = key
            headers["APCA-API-SECRET-KEY"] = secret
        self._client = httpx.AsyncClient(
            base_url=cfg.base_url,
            timeout=httpx.Timeout(cfg.timeout_seconds),
            headers=headers,
            transport=transport,
        )
        self._open: dict[str, float] = {}

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_tick(self, symbol: str) -> Tick:
        pair = to_pair(symbol)
        r = await self._client.get(
            f"/v1beta3/crypto/{self._cfg.feed}/latest/trades", params={"symbols": pair}
        )
        r.raise_for_status()
        j = r.json()
        trade = (j.get("trades") or {}).get(pair)
        if not trade:
            raise ValueError(f"Empty trade data: {j!r}")

        price = float(trade["p"])
        base = self._open.setdefault(symbol, price)
        change = price - base
        return Tick(
            symbol=symbol,
            price=price,
            timestamp=_parse_ts(trade.get("t")),
            change=change,
            change_percent=change / base * 100.0 if base else 0.0,
        )
