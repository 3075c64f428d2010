import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from quote_engine import Engine, Settings, build_engine
from quote_engine.models import LookupResult, normalise_symbol

load_dotenv()
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
log = logging.getLogger("qe.app")

MAX_SYMBOLS = 50


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    """
    Build the dashboard data API.
    Pass a ready Engine to skip startup wiring (tests); otherwise one is
    built from the environment at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = engine is None
        app.state.engine = engine or await build_engine(Settings.from_env())
        log.info(f"Serving with store={app.state.engine.store.name}")
        yield
        if owned:
            await app.state.engine.close()

    app = FastAPI(
        title="Stock Dashboard Data API",
        description="Quotes and daily history with live / cached / synthetic fallback.",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _engine(request: Request) -> Engine:
        return request.app.state.engine

    def _symbol(raw: str) -> str:
        symbol = normalise_symbol(raw)
        if not symbol:
            raise HTTPException(400, "No symbol provided")
        return symbol

    def _served(result: LookupResult) -> dict:
        if not result.available:
            raise HTTPException(503, f"{result.kind.value} for {result.symbol} temporarily unavailable")
        return result.to_dict()

    @app.get("/")
    async def root():
        return {"status": "ok", "docs": "/docs", "api": "/api/quote/AAPL"}

    @app.get("/health")
    async def health(request: Request):
        eng = _engine(request)
        store_ok = await eng.store.ping()
        return {
            "status":    "healthy" if store_ok else "degraded",
            "store":     eng.store.name if store_ok else f"{eng.store.name} (unreachable)",
            "timestamp": int(time.time()),
        }

    @app.get("/api/budget", tags=["Status"])
    async def budget(request: Request):
        return await _engine(request).orchestrator.governor.status(datetime.now())

    @app.get("/api/quote/{symbol}", tags=["Prices"])
    async def get_quote(symbol: str, request: Request):
        result = await _engine(request).orchestrator.get_latest_quote(_symbol(symbol))
        return _served(result)

    @app.get("/api/quotes", tags=["Prices"])
    async def get_quotes(
        request: Request,
        symbols: str = Query(..., description="Comma-separated symbols e.g. AAPL,TSLA,BRK.B"),
    ):
        raw = [s.strip() for s in symbols.split(",") if s.strip()]
        if not raw:
            raise HTTPException(400, "No symbols provided")
        if len(raw) > MAX_SYMBOLS:
            raise HTTPException(400, f"Maximum {MAX_SYMBOLS} symbols per request")
        results = await _engine(request).orchestrator.get_quotes(raw)
        return {
            "symbols":   list(results),
            "count":     len(results),
            "timestamp": int(time.time()),
            "data":      {sym: r.to_dict() for sym, r in results.items()},
        }

    @app.get("/api/history/{symbol}", tags=["History"])
    async def get_history(symbol: str, request: Request):
        result = await _engine(request).orchestrator.get_history(_symbol(symbol))
        return _served(result)

    @app.get("/api/market-overview", tags=["Prices"])
    async def market_overview(request: Request):
        results = await _engine(request).orchestrator.get_market_overview()
        return {
            "data":        [r.to_dict() for r in results.values()],
            "lastUpdated": datetime.now().isoformat(),
        }

    @app.get("/api/stock-performance/{symbol}", tags=["History"])
    async def stock_performance(symbol: str, request: Request):
        """Chart-ready daily closes."""
        result = await _engine(request).orchestrator.get_history(_symbol(symbol))
        if not result.available:
            raise HTTPException(503, f"history for {result.symbol} temporarily unavailable")
        series = result.value
        return {
            "labels":   [d.isoformat() for d in series.dates],
            "datasets": [{
                "label": f"{result.symbol} Stock Price",
                "data":  list(series.closes),
            }],
            "isMock":   not result.is_real,
            "stale":    result.stale,
            "source":   result.source.value,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("app:app", host="0.0.0.0", port=port, reload=False, log_level="info")
