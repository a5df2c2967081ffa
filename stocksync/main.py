# stocksync/main.py

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from stocksync.core.config import get_settings
from stocksync.core.logging_config import configure_logging
from stocksync.database import async_session
from stocksync.integrations.setup import build_pipeline
from stocksync.routes import health, sync, webhooks
from stocksync.scheduler import start_scheduler, stop_scheduler

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    pipeline = build_pipeline(async_session, settings=settings)
    await pipeline.start()
    app.state.pipeline = pipeline

    await start_scheduler(pipeline)
    try:
        yield  # This is where the app runs
    finally:
        await stop_scheduler()
        await pipeline.stop()


app = FastAPI(
    title="Multi-account Stock Sync",
    lifespan=lifespan
)


# Add middleware to handle HTTPS behind proxy
@app.middleware("http")
async def proxy_headers_middleware(request: Request, call_next):
    forwarded_proto = request.headers.get("x-forwarded-proto")
    if forwarded_proto == "https":
        request.scope["scheme"] = "https"
    response = await call_next(request)
    return response


app.include_router(webhooks.router)  # Webhooks need to be accessible without auth
app.include_router(sync.router)
app.include_router(sync.stock_router)
app.include_router(health.router)
