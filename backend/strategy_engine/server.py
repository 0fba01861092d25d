"""FastAPI Server - Thin Controller Layer
Only handles API routes, request validation, and responses.
All engine logic lives in StrategyManager; this module maps its errors to
HTTP status codes and pushes its events to WebSocket clients.
"""
from fastapi import FastAPI, APIRouter, Body, Request, WebSocket, WebSocketDisconnect, HTTPException
from starlette.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from strategy_engine.candle_feed import CandleFeed
from strategy_engine.config import config
from strategy_engine.entities import Candle, TradeRecord
from strategy_engine.errors import AlreadyExistsError, NotFoundError, ValidationError
from strategy_engine.models import CandleIn, ManagerStatus, TradeIn
from strategy_engine.strategy_manager import StrategyManager

logger = logging.getLogger(__name__)

_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


# The SecretMaskingFilter redacts the WebSocket token if it ever appears in a log line.
class _SecretMaskingFilter(logging.Filter):
    """Redact known secrets from log messages before they hit any handler."""
    _MASK = "***REDACTED***"
    _SECRET_KEYS = ("ws_auth_token",)

    def filter(self, record: logging.LogRecord) -> bool:
        secrets = {
            str(v)
            for k, v in config.items()
            if k in self._SECRET_KEYS and v and len(str(v)) > 4
        }
        if not secrets or not isinstance(record.msg, str):
            return True
        msg = record.getMessage()
        masked = msg
        for secret in secrets:
            masked = masked.replace(secret, self._MASK)
        if masked != msg:
            record.msg = masked
            record.args = None
        return True


_logging_configured = False


def configure_logging() -> None:
    """Console + daily rotating file, secrets masked. Safe to call more than once."""
    global _logging_configured
    if _logging_configured:
        return

    log_dir = Path(config["log_dir"])
    log_dir.mkdir(parents=True, exist_ok=True)

    mask_filter = _SecretMaskingFilter()
    file_handler = TimedRotatingFileHandler(
        filename=str(log_dir / 'strategy_engine.log'),
        when='midnight',
        interval=1,
        backupCount=7,
        encoding='utf-8',
    )
    file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    file_handler.addFilter(mask_filter)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    console_handler.addFilter(mask_filter)
    logging.basicConfig(
        level=getattr(logging, config["log_level"], logging.INFO),
        handlers=[console_handler, file_handler],
    )

    # Reduce noisy per-request logs from http clients (used for feed polling).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    _logging_configured = True


# WebSocket Connection Manager
class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"[WS] Client connected: {websocket.client} | Total={len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(f"[WS] Client disconnected: {websocket.client} | Total={len(self.active_connections)}")

    async def broadcast(self, message: dict):
        if not self.active_connections:
            return

        logger.debug(f"[WS] Broadcasting type={message.get('type')} to {len(self.active_connections)} clients")

        # Drop broken/slow sockets instead of retrying them
        stale: List[WebSocket] = []
        for connection in list(self.active_connections):
            try:
                await asyncio.wait_for(connection.send_json(message), timeout=5)
            except asyncio.TimeoutError:
                stale.append(connection)
                logger.warning(f"[WS] Broadcast timeout for client={connection.client}; dropping client")
            except Exception:
                stale.append(connection)
                logger.exception(f"[WS] Broadcast failed for client={connection.client}; dropping client")

        for ws in stale:
            self.disconnect(ws)


# ==================== API Routes ====================

api_router = APIRouter(prefix="/api")


def _manager(request: Request) -> StrategyManager:
    return request.app.state.manager


@api_router.get("/")
async def root():
    """Health check endpoint"""
    return {"message": "Strategy Engine API", "status": "running"}


@api_router.get("/status", response_model=ManagerStatus)
async def get_status(request: Request):
    """Manager status + distributor subscription counts"""
    return _manager(request).get_status()


@api_router.get("/strategies")
async def list_strategies(request: Request):
    return _manager(request).get_active_strategies()


@api_router.post("/strategies/start")
async def start_strategy(request: Request, payload: Dict[str, Any] = Body(...)):
    try:
        strategy_id = _manager(request).start_strategy(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AlreadyExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "started", "id": strategy_id}


@api_router.post("/strategies/{strategy_id}/stop")
async def stop_strategy(strategy_id: str, request: Request):
    try:
        _manager(request).stop_strategy(strategy_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "stopped", "id": strategy_id}


@api_router.post("/strategies/{strategy_id}/pause")
async def pause_strategy(strategy_id: str, request: Request):
    try:
        changed = _manager(request).pause_strategy(strategy_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "paused" if changed else "unchanged", "id": strategy_id}


@api_router.post("/strategies/{strategy_id}/resume")
async def resume_strategy(strategy_id: str, request: Request):
    try:
        changed = _manager(request).resume_strategy(strategy_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "running" if changed else "unchanged", "id": strategy_id}


@api_router.get("/strategies/{strategy_id}/metrics")
async def strategy_metrics(strategy_id: str, request: Request):
    return _manager(request).get_strategy_metrics(strategy_id)


@api_router.post("/candles")
async def push_candle(candle: CandleIn, request: Request):
    """Push one closed candle into the engine (alternative to the polling feed)"""
    delivered = _manager(request).on_new_candle(Candle(**candle.model_dump()))
    return {"delivered": delivered}


@api_router.post("/trades")
async def record_trade(trade: TradeIn, request: Request):
    """Execution-layer fill report"""
    recorded = _manager(request).record_trade(TradeRecord(**trade.model_dump()))
    if recorded is None:
        raise HTTPException(status_code=404, detail=f"Strategy '{trade.strategy_id}' is not being tracked")
    return recorded.to_dict()


# ==================== WebSocket ====================

async def websocket_endpoint(websocket: WebSocket):
    """Push channel.

    Server messages:
      {"type": "signal",    "data": {"strategy_id", "signal": {...}}}
      {"type": "lifecycle", "data": {"kind", "strategy_id", "timestamp", "detail"}}
      {"type": "heartbeat", "timestamp": "..."}
    Client messages:
      "ping" -> "pong"
    """
    ws_manager: ConnectionManager = websocket.app.state.ws_manager

    # Optional token-based auth
    token = websocket.query_params.get('token')
    expected = config.get('ws_auth_token') or ''
    if expected:
        if not token or str(token) != str(expected):
            await websocket.accept()
            await websocket.send_json({"type": "error", "message": "unauthorized"})
            await websocket.close(code=1008)
            logger.warning(f"[WS] Unauthorized connection attempt from {websocket.client}")
            return

    await ws_manager.connect(websocket)
    client = websocket.client

    try:
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=30)
                if data == "ping":
                    await websocket.send_text("pong")
                else:
                    logger.debug(f"[WS] Ignoring unsupported message from {client}")
            except asyncio.TimeoutError:
                # No message for 30s, send heartbeat to keep connection alive
                hb = {"type": "heartbeat", "timestamp": datetime.now(timezone.utc).isoformat()}
                await websocket.send_json(hb)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.exception(f"[WS] Unexpected error for {client}: {e}")
    finally:
        ws_manager.disconnect(websocket)


# ==================== App factory ====================

def create_app(manager: Optional[StrategyManager] = None, feed: Optional[CandleFeed] = None) -> FastAPI:
    """Build the API around an explicit StrategyManager (a fresh one if not given)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = manager or StrategyManager()
        ws_manager = ConnectionManager()
        app.state.manager = engine
        app.state.ws_manager = ws_manager

        unsubscribe = [
            engine.on_signal.subscribe(
                lambda ev: ws_manager.broadcast({"type": "signal", "data": ev.to_dict()})
            ),
            engine.on_lifecycle.subscribe(
                lambda ev: ws_manager.broadcast({"type": "lifecycle", "data": ev.to_dict()})
            ),
        ]

        candle_feed = feed or CandleFeed(engine)
        app.state.feed = candle_feed
        await candle_feed.start()
        logger.info(f"[STARTUP] Strategy engine ready (paper_trading={engine.paper_trading})")

        try:
            yield
        finally:
            await candle_feed.stop()
            for unsub in unsubscribe:
                unsub()
            await engine.shutdown()
            logger.info("[SHUTDOWN] Server shut down")

    app = FastAPI(title="Strategy Engine", lifespan=lifespan)
    app.include_router(api_router)
    app.add_api_websocket_route("/ws", websocket_endpoint)
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


app = create_app()


def main() -> None:
    import uvicorn

    configure_logging()
    uvicorn.run(app, host=config["host"], port=int(config["port"]))


if __name__ == "__main__":
    main()
