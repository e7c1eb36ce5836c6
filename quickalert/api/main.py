import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .. import __version__
from ..core.config import DATABASE_PATH, EXPIRY_SWEEP_INTERVAL_SECONDS
from ..core.exceptions import QuickAlertError
from ..core.state import build_services
from ..db.database import Database
from ..services.expiry import sweep_expired_alerts
from ..utils.security import limiter
from .routes import router

# Configure logging for the application
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
)
logger = logging.getLogger(__name__)


def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """
    Handles the exception when a rate limit is exceeded.

    Returns a JSON response with a 429 status code.
    """
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests", "error": f"Rate limit exceeded: {exc.detail}"},
    )


def _quickalert_error_handler(request: Request, exc: QuickAlertError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.error},
    )


def create_app(
    database_path: Optional[str] = None,
    sweep_interval: float = EXPIRY_SWEEP_INTERVAL_SECONDS,
) -> FastAPI:
    """
    Builds the application. Services are created in the lifespan so every app
    instance owns its own database connection and broker.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Handles application startup and shutdown events.
        """
        db = Database(database_path or DATABASE_PATH)
        await db.init()
        app.state.services = build_services(db)

        logger.info("Application startup: starting alert expiry sweep.")
        sweep_task = asyncio.create_task(sweep_expired_alerts(app.state.services.alerts, sweep_interval))
        yield
        logger.info("Application shutdown: cleaning up resources.")
        sweep_task.cancel()
        await asyncio.gather(sweep_task, return_exceptions=True)
        await db.close()

    app = FastAPI(
        title="QuickAlert Proximity Service",
        description="Community incident reports, neighbour verification and geofenced alerts, "
                    "streamed to nearby clients via Server-Sent Events.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add the Rate Limiter middleware
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(QuickAlertError, _quickalert_error_handler)
    app.add_middleware(SlowAPIMiddleware)

    @app.get("/", summary="Service Status")
    async def root():
        """Simple status message confirming the service is running."""
        return {"message": "Welcome to the QuickAlert Proximity Service"}

    @app.get("/health", summary="Health Check")
    async def health(request: Request):
        services = request.app.state.services
        return {
            "status": "ok",
            "connections": len(services.broker),
            "alerts": await services.db.count_alerts(),
        }

    app.include_router(router)
    return app


app = create_app()

# To run this application from the project's root directory:
# 1. Install dependencies: pip install -e .
# 2. Run the server: uvicorn quickalert.api.main:app --reload
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
