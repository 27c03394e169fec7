from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal, Optional

from fastapi import FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tradebot.broker.base import BrokerError
from tradebot.config import Config, load_config
from tradebot.engine import ClientSession, CredentialsError, Engine
from tradebot.providers.alpaca import AlpacaProvider
from tradebot.providers.base import MarketDataProvider
from tradebot.providers.simulated import SimulatedProvider
from tradebot.schemas import OrderRequest, to_wire
from tradebot.storage import Storage
from tradebot.strategies.registry import STRATEGIES


ROOT = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = (ROOT.parent / "config" / "config.yaml").resolve()
log = logging.getLogger("uvicorn.error")


def _config_path() -> Path:
    p = os.getenv("TRADEBOT_CONFIG")
    if not p:
        return DEFAULT_CONFIG_PATH
    return Path(p).expanduser().resolve()


def _load_default_config() -> Config:
    path = _config_path()
    if not path.exists():
        log.warning("Config file %s not found, using defaults", path)
        return Config()
    return load_config(path)


def build_provider(cfg: Config) -> MarketDataProvider:
    if cfg.market_data.source == "simulated":
        return SimulatedProvider(cfg.market_data.simulated)
    if cfg.market_data.source == "alpaca":
        return AlpacaProvider(cfg.market_data.alpaca)
    raise ValueError(f"Unsupported market data source: {cfg.market_data.source}")


class ApiKeyIn(BaseModel):
    userId: int
    alpacaApiKey: str = Field(min_length=1)
    alpacaSecretKey: str = Field(min_length=1)
    environment: Literal["paper", "live"] = "paper"


class BotSettingsIn(BaseModel):
    userId: int
    isActive: bool = False
    strategy: str = "mean_reversion"
    riskLevel: int = Field(default=5, ge=1, le=10)
    tradingFrequency: Literal["low", "medium", "high"] = "medium"


class OrderIn(BaseModel):
    userId: int
    symbol: str
    qty: float = Field(gt=0)
    side: Literal["buy", "sell"]
    type: Literal["market", "limit", "stop"] = "market"
    time_in_force: Literal["day", "gtc", "ioc"] = "gtc"
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None


class ClosePositionIn(BaseModel):
    userId: int
    symbol: str = Field(min_length=1)


class LogIn(BaseModel):
    userId: int
    level: Literal["INFO", "TRADE", "SIGNAL", "ERROR", "WARNING"]
    message: str


def create_app(
    cfg: Optional[Config] = None,
    provider: Optional[MarketDataProvider] = None,
    storage: Optional[Storage] = None,
) -> FastAPI:
    cfg = cfg if cfg is not None else _load_default_config()
    logging.basicConfig(
        level=cfg.app.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    provider = provider if provider is not None else build_provider(cfg)
    engine = Engine(cfg=cfg, provider=provider, storage=storage)

    app = FastAPI(title="Crypto Trading Bot", version="0.1.0")
    app.state.cfg = cfg
    app.state.engine = engine

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(_request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={"message": "Invalid request data", "errors": errors},
        )

    @app.on_event("startup")
    async def _startup() -> None:
        engine.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await engine.stop()
        await provider.aclose()

    @app.get("/favicon.ico", include_in_schema=False)
    async def favicon() -> Response:
        # Avoid noisy 404 in logs; real favicon is optional.
        return Response(status_code=204)

    @app.get("/api/health")
    async def health() -> dict:
        return engine.health()

    @app.get("/api/market")
    async def market() -> dict:
        return engine.snapshot()

    @app.get("/api/strategies")
    async def strategies() -> list:
        return [factory().describe() for factory in STRATEGIES.values()]

    @app.get("/api/signals/{user_id}")
    async def last_signals(user_id: int) -> Any:
        return to_wire(engine.pipeline.last_signals(user_id))

    @app.get("/api/default-user")
    async def default_user() -> dict:
        return {"userId": await engine.ensure_default_user()}

    # api keys

    @app.post("/api/api-keys")
    async def save_api_keys(body: ApiKeyIn) -> dict:
        try:
            await engine.save_api_key(
                body.userId, body.alpacaApiKey, body.alpacaSecretKey, body.environment
            )
        except CredentialsError as e:
            raise HTTPException(status_code=400, detail="Invalid API keys") from e
        return {"hasApiKey": True, "environment": body.environment}

    @app.get("/api/api-keys/{user_id}")
    async def get_api_keys(user_id: int) -> dict:
        key = await engine.storage.get_api_key(user_id)
        if key is None:
            raise HTTPException(status_code=404, detail="API key not found")
        # Never echo the secrets back.
        return {"environment": key.environment, "hasApiKey": True}

    # bot settings

    @app.post("/api/bot-settings")
    async def save_bot_settings(body: BotSettingsIn) -> Any:
        settings = await engine.update_bot_settings(
            body.userId,
            is_active=body.isActive,
            strategy=body.strategy,
            risk_level=body.riskLevel,
            trading_frequency=body.tradingFrequency,
        )
        return to_wire(settings)

    @app.get("/api/bot-settings/{user_id}")
    async def get_bot_settings(user_id: int) -> Any:
        settings = await engine.storage.get_bot_settings(user_id)
        if settings is None:
            raise HTTPException(status_code=404, detail="Bot settings not found")
        return to_wire(settings)

    # positions, trades, orders

    @app.get("/api/positions/{user_id}")
    async def get_positions(user_id: int) -> Any:
        return to_wire(await engine.storage.get_positions(user_id))

    @app.post("/api/positions/close")
    async def close_position(body: ClosePositionIn) -> Any:
        try:
            result = await engine.close_position(body.userId, body.symbol)
        except CredentialsError as e:
            raise HTTPException(status_code=400, detail="API key not configured") from e
        except BrokerError as e:
            log.warning("Close position failed for user %s: %s", body.userId, e)
            raise HTTPException(status_code=500, detail="Error closing position") from e
        return to_wire(result)

    @app.get("/api/trades/{user_id}")
    async def get_trades(user_id: int, limit: Optional[int] = None) -> Any:
        return to_wire(await engine.storage.get_trades(user_id, limit))

    @app.get("/api/orders/{user_id}")
    async def list_orders(
        user_id: int, status: Literal["open", "closed", "all"] = "all", limit: int = 100
    ) -> Any:
        try:
            orders = await engine.list_orders(user_id, status, limit)
        except CredentialsError as e:
            raise HTTPException(status_code=400, detail="API key not configured") from e
        except BrokerError as e:
            log.warning("Order listing failed for user %s: %s", user_id, e)
            raise HTTPException(status_code=500, detail="Error fetching orders") from e
        return to_wire(orders)

    @app.delete("/api/orders/{user_id}/{order_id}")
    async def cancel_order(user_id: int, order_id: str) -> dict:
        try:
            await engine.cancel_order(user_id, order_id)
        except CredentialsError as e:
            raise HTTPException(status_code=400, detail="API key not configured") from e
        except BrokerError as e:
            log.warning("Cancel failed for user %s order %s: %s", user_id, order_id, e)
            raise HTTPException(status_code=500, detail="Error canceling order") from e
        return {"success": True}

    @app.post("/api/orders")
    async def submit_order(body: OrderIn) -> Any:
        req = OrderRequest(
            symbol=body.symbol,
            qty=body.qty,
            side=body.side,
            type=body.type,
            time_in_force=body.time_in_force,
            limit_price=body.limit_price,
            stop_price=body.stop_price,
        )
        try:
            order = await engine.submit_manual_order(body.userId, req)
        except CredentialsError as e:
            raise HTTPException(status_code=400, detail="API key not configured") from e
        except BrokerError as e:
            log.warning("Manual order failed for user %s: %s", body.userId, e)
            raise HTTPException(status_code=500, detail="Error submitting order") from e
        return to_wire(order)

    # metrics and logs

    @app.get("/api/metrics/{user_id}")
    async def get_metrics(user_id: int) -> Any:
        metrics = await engine.storage.get_metrics(user_id)
        if metrics is None:
            raise HTTPException(status_code=404, detail="Metrics not found")
        return to_wire(metrics)

    @app.get("/api/logs/{user_id}")
    async def get_logs(user_id: int, limit: Optional[int] = None) -> Any:
        return to_wire(await engine.storage.get_logs(user_id, limit))

    @app.post("/api/logs")
    async def create_log(body: LogIn) -> Any:
        return to_wire(await engine.system_log(body.userId, body.level, body.message))

    @app.delete("/api/logs/{user_id}")
    async def clear_logs(user_id: int) -> dict:
        await engine.system_log.clear(user_id)
        return {"success": True}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        session = ClientSession()
        log.info("WS connected: %s", websocket.client)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    await engine.handle_message(websocket, session, raw)
                except Exception:
                    # One bad frame must not take the connection down.
                    log.exception("WS message error: %s", websocket.client)
        except WebSocketDisconnect:
            log.info("WS disconnected: %s (user=%s)", websocket.client, session.user_id)
        finally:
            engine.disconnect(websocket, session)

    return app


app = create_app()
