"""
Vibe Interactions Backend - Main FastAPI Application

Run with:
    uvicorn main:app --reload --port 8000
"""

import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from adapter.rate_limiter import RateLimiter
from api import router, set_dependencies, register_exception_handlers
from database import Database, init_db, DB_PATH
from monitoring import monitor

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class RequestMonitoringMiddleware(BaseHTTPMiddleware):
    """Middleware to monitor FastAPI requests."""

    async def dispatch(self, request: Request, call_next) -> Response:
        # Skip monitoring for docs
        if request.url.path in ["/", "/docs", "/redoc", "/openapi.json"]:
            return await call_next(request)

        start_time = time.time()

        try:
            response = await call_next(request)
            latency_ms = (time.time() - start_time) * 1000

            mon = _get_monitor()
            if mon:
                # Normalize endpoint name (remove /api/v1 prefix)
                endpoint = request.url.path.replace("/api/v1", "") or "/"
                mon.metrics.record_request(endpoint, latency_ms, error=response.status_code >= 500)

            return response

        except Exception:
            latency_ms = (time.time() - start_time) * 1000
            mon = _get_monitor()
            if mon:
                endpoint = request.url.path.replace("/api/v1", "") or "/"
                mon.metrics.record_request(endpoint, latency_ms, error=True)
            raise


# Lazy import to avoid circular dependency
def _get_monitor():
    try:
        from monitoring import monitor
        return monitor
    except ImportError:
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - setup and teardown.
    """
    logger.info("Starting Vibe Interactions backend...")

    init_db()
    database = Database()

    # Per-user comment limits are configured lazily by the comments route
    rate_limiter = RateLimiter()

    session_ttl = int(os.environ.get("SESSION_TTL_SECONDS", "3600"))
    set_dependencies(database, rate_limiter, session_ttl=session_ttl)

    monitor.set_component_status("database", "healthy", {"path": str(DB_PATH)})
    monitor.set_component_status("rate_limiter", "healthy", {"comment_limit": "10/60s per user"})

    logger.info(f"✓ Database ready at {DB_PATH}")
    logger.info(f"✓ Sessions expire after {session_ttl}s")
    logger.info("📊 Monitoring available at /api/v1/monitor/*")
    logger.info("Vibe Interactions backend ready!")

    yield  # Application runs here

    logger.info("Shutting down Vibe Interactions backend...")
    logger.info("Goodbye!")


# Create FastAPI app
app = FastAPI(
    title="Vibe Interactions API",
    description="Likes, comments and stats for vibes, mixes and posts",
    version="1.0.0",
    lifespan=lifespan,
)

register_exception_handlers(app)

# Request monitoring middleware
app.add_middleware(RequestMonitoringMiddleware)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict this
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


# Root endpoint
@app.get("/")
async def root():
    return {"name": "Vibe Interactions API", "version": "1.0.0", "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
        reload=True,
    )
