import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional, TypeVar

import uvicorn
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import FileResponse, JSONResponse

from discord_stats.errors import StoreError
from discord_stats.logging_utils import RequestLoggingMiddleware
from discord_stats.metrics import get_metrics, get_metrics_content_type
from discord_stats.schemas import Channel, CountResponse, HealthResponse
from discord_stats.storage import StatsStore


logger = logging.getLogger(__name__)

WEB_DIR = Path(__file__).parent / "web"

T = TypeVar("T")


def get_store(request: Request) -> StatsStore:
    """Dependency returning the store the app was created with."""
    return request.app.state.store


def _count(store_call: Callable[[], int], label: str):
    """Run a count query, degrading to {"count": null} with a 500 on failure."""
    try:
        return CountResponse(count=store_call())
    except StoreError as e:
        logger.error(f"Error getting {label}: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"count": None},
        )


def _listing(store_call: Callable[[], T], label: str):
    """Run a list query, degrading to [] with a 500 on failure."""
    try:
        return store_call()
    except StoreError as e:
        logger.error(f"Error getting {label}: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=[],
        )


def create_app(store: StatsStore, init_db: bool = True) -> FastAPI:
    """
    Build the read-only stats API around a store.

    The store is shared with the gateway client; every query goes through
    its lock.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if init_db:
            store.init_db()
        yield

    app = FastAPI(
        title="Discord Stats",
        description="Read-only statistics over the local message log",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.store = store

    app.add_middleware(RequestLoggingMiddleware)

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    def health_ready(response: Response, store: StatsStore = Depends(get_store)) -> HealthResponse:
        """
        Readiness probe - returns 200 only if the DB is reachable and schema
        is applied, 503 otherwise.
        """
        if not store.check_db_health():
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason="Database not reachable or schema not applied"
            )
        return HealthResponse(status="ready")

    # =========================================================================
    # Count Routes
    # =========================================================================

    # Store calls are blocking, so these are plain def routes run in the
    # threadpool rather than on the event loop

    @app.get("/api/msg_count", response_model=CountResponse)
    @app.get("/api/user_msg_count", response_model=CountResponse)
    def user_msg_count(store: StatsStore = Depends(get_store)):
        """Messages authored by the tracked account."""
        return _count(store.get_user_msg_count, "user message count")

    @app.get("/api/total_msg_count", response_model=CountResponse)
    def total_msg_count(store: StatsStore = Depends(get_store)):
        return _count(store.get_msg_count, "message count")

    @app.get("/api/edit_count", response_model=CountResponse)
    def edit_count(store: StatsStore = Depends(get_store)):
        """Total number of edits across all messages."""
        return _count(store.get_edit_count, "edit count")

    @app.get("/api/deletion_count", response_model=CountResponse)
    def deletion_count(store: StatsStore = Depends(get_store)):
        return _count(store.get_deletion_count, "deletion count")

    # =========================================================================
    # Listing Routes
    # =========================================================================

    @app.get("/api/channels", response_model=list[Channel])
    def channels(store: StatsStore = Depends(get_store)):
        return _listing(store.get_channels, "channels")

    @app.get("/api/guilds", response_model=list[str])
    def guilds(store: StatsStore = Depends(get_store)):
        return _listing(store.get_guilds, "guilds")

    @app.get("/api/user_msg_count_per_day", response_model=list[tuple[str, int, int]])
    def user_msg_count_per_day(store: StatsStore = Depends(get_store)):
        """(date, guild message count, direct message count) for the tracked account."""
        return _listing(store.get_user_msgs_per_day, "user messages per day")

    @app.get("/api/total_msg_count_per_day", response_model=list[tuple[str, int, int]])
    def total_msg_count_per_day(store: StatsStore = Depends(get_store)):
        return _listing(store.get_total_msgs_per_day, "messages per day")

    # =========================================================================
    # Dashboard & Metrics Routes
    # =========================================================================

    @app.get("/", include_in_schema=False)
    async def dashboard() -> FileResponse:
        return FileResponse(WEB_DIR / "index.html", media_type="text/html")

    @app.get("/index.js", include_in_schema=False)
    async def dashboard_script() -> FileResponse:
        return FileResponse(WEB_DIR / "index.js", media_type="application/javascript")

    @app.get("/metrics")
    async def metrics() -> Response:
        """Expose Prometheus-style metrics."""
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type()
        )

    return app


def serve(app: FastAPI, host: str, port: int, log_level: Optional[str] = None) -> None:
    """Run the API with uvicorn in the calling thread."""
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        log_level=(log_level or "info").lower(),
    )
    logger.info(f"Starting webserver on {host}:{port}")
    uvicorn.Server(config).run()
