import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from signal_engine.api import candlestick_endpoint, flows_endpoint  # noqa: E402
from signal_engine.cache.flow_store import PriorityFlowStore  # noqa: E402
from signal_engine.cache.redis_client import StoreClient  # noqa: E402
from signal_engine.cache.timeframe_store import TimeframeCacheStore  # noqa: E402
from signal_engine.errors import InvalidInput, SignalEngineError, StorageError  # noqa: E402
from signal_engine.orchestrator.producer import HttpPatternProducer  # noqa: E402
from signal_engine.orchestrator.refresh import RefreshOrchestrator, RefreshResult  # noqa: E402
from signal_engine.orchestrator.refresh_schedule import RefreshScheduler  # noqa: E402
from signal_engine.orchestrator.scheduler import RefreshTicker  # noqa: E402

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
log = logging.getLogger("pf.app")

TICKER_ENABLED = os.environ.get("REFRESH_TICKER_ENABLED", "false").lower() in ("1", "true", "yes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    client    = await StoreClient.from_env().connect()
    scheduler = RefreshScheduler()
    timeframes = TimeframeCacheStore(client, scheduler)

    app.state.client       = client
    app.state.flows        = PriorityFlowStore(client)
    app.state.timeframes   = timeframes
    app.state.orchestrator = RefreshOrchestrator(timeframes, HttpPatternProducer(), scheduler)
    app.state.ticker       = None

    if TICKER_ENABLED:
        app.state.ticker = RefreshTicker(app.state.orchestrator)
        app.state.ticker.start()

    yield

    if app.state.ticker:
        app.state.ticker.stop()
    await client.close()


app = FastAPI(
    title="PerpFlow Signal Engine",
    description="Top-N institutional flows and candle-close candlestick pattern cache.",
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


@app.exception_handler(SignalEngineError)
async def signal_engine_error(request: Request, exc: SignalEngineError):
    if isinstance(exc, InvalidInput):
        status = 400
    elif isinstance(exc, StorageError):
        status = 500
    else:
        status = 502
    log.warning(f"{request.method} {request.url.path} → {status}: {exc.message}")
    return JSONResponse(status_code=status, content={"success": False, "error": exc.as_dict()})


def _refresh_response(result: RefreshResult) -> JSONResponse:
    return JSONResponse(status_code=200 if result.success else 500, content=result.to_dict())


async def _json_body(request: Request):
    try:
        return await request.json()
    except ValueError:
        raise InvalidInput("Request body must be JSON") from None


@app.get("/")
async def root():
    return {"status": "ok", "docs": "/docs", "api": "/api/institutional-flows"}


@app.get("/health")
async def health(request: Request):
    healthy = await request.app.state.client.ping()
    return {
        "status":    "healthy" if healthy else "degraded",
        "redis":     "connected" if healthy else "unavailable",
        "ticker":    request.app.state.ticker.status() if request.app.state.ticker else None,
        "timestamp": int(time.time()),
    }


# ── Institutional flows ──────────────────────────────────────

@app.get("/api/institutional-flows", tags=["Flows"])
async def get_flows(request: Request):
    return await flows_endpoint.get_flows_response(request.app.state.flows)


@app.post("/api/institutional-flows", tags=["Flows"])
async def post_flows(request: Request):
    body = await _json_body(request)
    return await flows_endpoint.ingest_flows(request.app.state.flows, body)


@app.delete("/api/institutional-flows", tags=["Flows"])
async def delete_flows(request: Request):
    return await flows_endpoint.clear_flows(request.app.state.flows)


# ── Candlestick patterns ─────────────────────────────────────

@app.get("/api/candlestick-screener", tags=["Candlestick"])
async def get_screener(request: Request):
    return await candlestick_endpoint.get_screener_response(request.app.state.timeframes)


@app.get("/api/candlestick-status", tags=["Candlestick"])
async def get_status(request: Request):
    return await candlestick_endpoint.get_status_response(request.app.state.timeframes)


@app.post("/api/candlestick-auto-update", tags=["Candlestick"])
async def auto_update(request: Request):
    result = await candlestick_endpoint.run_auto_update(request.app.state.orchestrator)
    return _refresh_response(result)


@app.get("/api/candlestick-auto-update", tags=["Candlestick"])
async def auto_update_schedule(request: Request):
    return candlestick_endpoint.get_schedule_response(request.app.state.orchestrator)


@app.post("/api/candlestick-refresh", tags=["Candlestick"])
async def manual_refresh(request: Request):
    body = await _json_body(request)
    result = await candlestick_endpoint.run_manual_refresh(request.app.state.orchestrator, body)
    return _refresh_response(result)


@app.post("/api/candlestick-init", tags=["Candlestick"])
async def initialize(request: Request):
    result = await candlestick_endpoint.run_initialize(request.app.state.orchestrator)
    return _refresh_response(result)


@app.delete("/api/candlestick-cache", tags=["Candlestick"])
async def delete_cache(request: Request):
    return await candlestick_endpoint.clear_cache(request.app.state.timeframes)


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("app:app", host="0.0.0.0", port=port, reload=False, log_level="info")
