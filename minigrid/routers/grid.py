"""
Grid Router
Read access to the aggregation store plus the handful of user actions the grid
exposes (settings, price-level alerts, alert log acknowledgement, symbol select).
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, HTTPException, Request

from minigrid.errors import ConfigurationError
from minigrid.schemas import PriceLevelsRequest
from minigrid.services.aggregation_store import AggregationStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/grid", tags=["Grid"])


def _store(request: Request) -> AggregationStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Aggregation store not ready")
    return store


def _known_symbol(store: AggregationStore, symbol: str) -> str:
    normalized = symbol.upper()
    if normalized not in store.metadata:
        raise HTTPException(status_code=404, detail=f"Unknown symbol: {normalized}")
    return normalized


@router.get("/symbols")
async def get_symbols(request: Request):
    store = _store(request)
    s = store.settings
    return {
        "symbols": list(store.symbols),
        "count": len(store.symbols),
        "sortBy": s.sort_by.value,
        "sortDirection": int(s.sort_direction),
    }


@router.get("/metadata/{symbol}")
async def get_metadata(symbol: str, request: Request):
    store = _store(request)
    symbol = _known_symbol(store, symbol)
    return store.metadata[symbol].model_dump(mode="json")


@router.get("/candles/{symbol}")
async def get_candles(symbol: str, request: Request, live: bool = False):
    """Throttled series by default; ``live=true`` returns the realtime series."""
    store = _store(request)
    symbol = _known_symbol(store, symbol)
    source = store.realtime_candles if live else store.candles
    series = source.get(symbol, ())
    return {
        "symbol": symbol,
        "interval": store.settings.interval,
        "candles": [c.model_dump(mode="json") for c in series],
    }


@router.get("/volumes")
async def get_volumes(request: Request):
    return dict(_store(request).volumes)


@router.get("/price_changes")
async def get_price_changes(request: Request):
    return dict(_store(request).price_change_percents)


@router.get("/alerts")
async def get_alerts(request: Request):
    store = _store(request)
    return {
        "alerts": [entry.model_dump(mode="json") for entry in store.alert_log],
        "unseen": store.unseen_alert_count(),
        "lastSeenISO": store.settings.alert_log_last_seen_iso,
        "symbolAlerts": store.settings.symbol_alerts,
    }


@router.post("/alerts/seen")
async def mark_alerts_seen(request: Request):
    store = _store(request)
    settings = store.mark_alerts_seen()
    return {"status": "ok", "lastSeenISO": settings.alert_log_last_seen_iso, "unseen": store.unseen_alert_count()}


@router.put("/alerts/{symbol}")
async def set_symbol_alerts(symbol: str, data: PriceLevelsRequest, request: Request):
    store = _store(request)
    symbol = _known_symbol(store, symbol)
    try:
        settings = store.set_symbol_alerts(symbol, data.levels)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"symbol": symbol, "levels": settings.symbol_alerts.get(symbol, [])}


@router.get("/settings")
async def get_settings(request: Request):
    return _store(request).settings.to_public()


@router.patch("/settings")
async def update_settings(request: Request, changes: Dict[str, Any] = Body(...)):
    store = _store(request)
    try:
        settings = store.update_settings(**changes)
    except ConfigurationError as e:
        logger.warning("Rejected settings update keys=%s err=%s", sorted(changes), e)
        raise HTTPException(status_code=400, detail=str(e))
    return settings.to_public()


@router.post("/select/{symbol}")
async def select_symbol(symbol: str, request: Request):
    store = _store(request)
    symbol = _known_symbol(store, symbol)
    store.select_symbol(symbol)
    return {"status": "selected", "symbol": symbol}
