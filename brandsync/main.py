"""
brandsync
Main FastAPI application
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from starlette.middleware.gzip import GZipMiddleware

from brandsync import __version__
from brandsync.api import health, cron, sync, connections
from brandsync.config import get_settings
from brandsync.middleware.security_middleware import SecurityMiddleware
from brandsync.utils.logger import log

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    from brandsync.models.base import init_db
    init_db()
    log.info("Database initialized")

    scheduler_started = False
    if settings.enable_scheduler:
        from brandsync.scheduler import start_scheduler
        start_scheduler()
        scheduler_started = True

    yield

    if scheduler_started:
        from brandsync.scheduler import stop_scheduler
        stop_scheduler()
    log.info("Shutting down application")


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Data synchronization and backfill service

    - Pulls Meta Ads insights and Shopify orders, customers and products per brand
    - Tracks every unit of work in a durable job ledger with retries and leases
    - Detects and repairs coverage gaps
    - Reports per-brand sync progress
    """,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Basic Auth gate, X-Robots-Tag, Cache-Control
app.add_middleware(SecurityMiddleware)

app.add_middleware(GZipMiddleware, minimum_size=500)

app.include_router(health.router, tags=["health"])
app.include_router(cron.router)
app.include_router(sync.router)
app.include_router(connections.router)


@app.get("/robots.txt", response_class=PlainTextResponse)
async def robots_txt():
    return "User-agent: *\nDisallow: /\n"


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "brandsync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )
