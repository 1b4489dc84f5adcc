from contextlib import asynccontextmanager
import json
import logging

import colorlog
import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from minigrid import __version__ as VERSION
from minigrid.config import config
from minigrid.notifications import build_alert_sink
from minigrid.routers import grid
from minigrid.services.aggregation_store import AggregationStore
from minigrid.services.event_bus import event_bus
from minigrid.services.event_relay import bridge_store, event_relay
from minigrid.services.market_data import BinanceFuturesClient
from minigrid.services.settings_service import RedisBackend, build_settings_store
from minigrid.ws_manager import manager as ws_manager

# Configure Colored Logging
handler = colorlog.StreamHandler()
handler.setFormatter(colorlog.ColoredFormatter(
    '%(log_color)s%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    log_colors={
        'DEBUG': 'cyan',
        'INFO': 'green',
        'WARNING': 'yellow',
        'ERROR': 'red',
        'CRITICAL': 'red,bg_white',
    }
))
logger = colorlog.getLogger()
if not logger.handlers:
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Minichart Grid Starting...")
    config.validate()

    settings_store = build_settings_store(config)
    market_data = BinanceFuturesClient.from_config(config)
    store = AggregationStore(
        market_data,
        settings_store,
        alert_sink=build_alert_sink(config),
        history_limit=config.HISTORY_LIMIT,
    )
    app.state.store = store
    app.state.market_data = market_data

    detach_bridge = bridge_store(store, event_bus)
    store.on_symbol_select(lambda symbol: logger.info("🎯 Symbol selected: %s", symbol))
    await event_relay.start()
    await store.start()

    yield

    logger.info("🛑 Minichart Grid Shutting down...")
    await store.stop()
    detach_bridge()
    await event_relay.stop()
    await market_data.close()
    if isinstance(settings_store.backend, RedisBackend):
        settings_store.backend.close()


app = FastAPI(
    title="Minichart Grid API",
    description="Live candlestick grid for every Binance USD-M perpetual",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in config.ALLOWED_ORIGINS if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(grid.router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    store = websocket.app.state.store
    await websocket.send_text(json.dumps({"type": "symbols", "data": list(store.symbols)}))
    await websocket.send_text(json.dumps({"type": "settings", "data": store.settings.to_public()}))
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_text(json.dumps({"type": "error", "detail": "Invalid JSON payload"}))
                continue
            if not isinstance(msg, dict):
                continue

            symbol = str(msg.get("symbol") or "").upper()
            if msg.get("type") == "subscribe" and symbol:
                if symbol not in store.metadata:
                    await websocket.send_text(json.dumps({"type": "error", "detail": f"Unknown symbol: {symbol}"}))
                    continue
                ws_manager.subscribe_symbol(websocket, symbol)
                await websocket.send_text(json.dumps({"type": "subscribed", "symbol": symbol}))
            elif msg.get("type") == "unsubscribe" and symbol:
                ws_manager.unsubscribe_symbol(websocket, symbol)
                await websocket.send_text(json.dumps({"type": "unsubscribed", "symbol": symbol}))
            elif msg.get("type") == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"⚠️ WS Endpoint Error: {e}")
        ws_manager.disconnect(websocket)


@app.get("/health")
def health_check(request: Request):
    """Health check endpoint for Docker/orchestrators."""
    store = getattr(request.app.state, "store", None)
    return {
        "status": "healthy" if store is not None and store.is_running else "starting",
        "version": VERSION,
        "environment": config.ENVIRONMENT,
        "store": store.get_overview() if store is not None else None,
        "event_bus": event_bus.stats(),
        "websocket_clients": len(ws_manager.active_connections),
    }


if __name__ == "__main__":
    reload = not config.is_production()
    uvicorn.run("minigrid.main:app", host=config.HOST, port=config.PORT, reload=reload)
