from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable, Optional, Sequence

import websockets

from tradebot.config import AlpacaStreamConfig
from tradebot.providers.alpaca import parse_stream_message, to_pair
from tradebot.schemas import Tick


log = logging.getLogger(__name__)

TickHandler = Callable[[Tick], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class MarketDataStream:
    """
    Subscription handle for Alpaca's crypto market-data websocket.

    Authenticates (when credentials are in the environment), subscribes to
    trades and/or bars for the configured symbols and hands every parsed
    tick to ``on_tick``. Dropped connections are retried with exponential
    backoff; the attempt counter resets on every successful connect.
    """

    def __init__(
        self,
        cfg: AlpacaStreamConfig,
        symbols: Sequence[str],
        on_tick: TickHandler,
        connect: Callable[..., Any] = websockets.connect,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._cfg = cfg
        self.symbols = list(symbols)
        self._on_tick = on_tick
        self._connect = connect
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None
        self._stopped = False
        self.connected = False
        self.reconnects = 0

    def auth_message(self) -> Optional[dict[str, str]]:
        key = os.getenv(self._cfg.key_env)
        secret = os.getenv(self._cfg.secret_env)
        if not key or not secret:
            return None
        return {"action": "auth", "key": key, "secret": secret}

    def subscribe_message(self) -> dict[str, Any]:
        pairs = [to_pair(s) for s in self.symbols]
        msg: dict[str, Any] = {"action": "subscribe"}
        for channel in self._cfg.channels:
            msg[channel] = pairs
        return msg

    def start(self) -> None:
        if self._task is not None:
            return
        self._stopped = False
        self._task = asyncio.create_task(self.run(), name="market-data-stream")

    async def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> None:
        attempts = 0
        delay = self._cfg.reconnect_base_delay

        while not self._stopped:
            try:
                async with self._connect(self._cfg.url, ping_interval=self._cfg.ping_interval) as ws:
                    self.connected = True
                    if attempts:
                        log.info("Market stream reconnected after %s attempts", attempts)
                    attempts = 0
                    delay = self._cfg.reconnect_base_delay

                    auth = self.auth_message()
                    if auth is not None:
                        await ws.send(json.dumps(auth))
                    await ws.send(json.dumps(self.subscribe_message()))
                    log.info("Market stream subscribed to %s", ", ".join(self.symbols))

                    async for raw in ws:
                        await self._handle(raw)
                reason = "closed by server"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                reason = f"{type(e).__name__}: {e}"
            finally:
                self.connected = False

            if self._stopped:
                return
            attempts += 1
            self.reconnects += 1
            if attempts >= self._cfg.max_reconnect_attempts:
                log.error("Market stream giving up after %s attempts (%s)", attempts, reason)
                return
            log.warning(
                "Market stream %s, reconnecting in %.1fs (attempt %s)", reason, delay, attempts
            )
            await self._sleep(delay)
            delay = min(delay * self._cfg.reconnect_multiplier, self._cfg.reconnect_max_delay)

    async def _handle(self, raw: Any) -> None:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            log.debug("Ignoring malformed stream frame: %.200r", raw)
            return

        frames = payload if isinstance(payload, list) else [payload]
        for frame in frames:
            if isinstance(frame, dict) and frame.get("T") == "error":
                log.error("Market stream error: %s", frame.get("msg", frame))
                continue
            tick = parse_stream_message(frame)
            if tick is None:
                continue
            try:
                await self._on_tick(tick)
            except Exception:
                log.exception("Stream tick handler failed for %s", tick.symbol)
