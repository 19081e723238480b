from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import HTTPException
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from service.routers import ingest
from service.config import settings
from service.db.base import TaskLedger

logger = logging.getLogger(__name__)


def create_app(ledger: TaskLedger | None = None) -> FastAPI:
    """
    Create the operations API.

    Args:
        ledger: Task ledger to use. If None, one is created from settings
            and connected (and closed) by the app lifespan.
    """
    owns_ledger = ledger is None
    ledger = ledger or settings.get_ledger()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager to handle startup and shutdown events."""
        if owns_ledger:
            await ledger.connect()
            await ledger.create_tables()
        yield
        if owns_ledger:
            await ledger.close()

    app = FastAPI(
        title="Price Ingestion Service",
        description="Operations API for retail price list ingestion",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.ledger = ledger

    # Add CORS middleware to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ingest.router, prefix="/v1")

    @app.exception_handler(404)
    async def custom_404_handler(request: Request, exc: HTTPException):
        """Custom 404 handler with helpful message directing to API docs."""
        detail = getattr(exc, "detail", None)
        if not detail or detail == "Not Found":
            detail = "Resource not found. Check documentation at /docs"
        return JSONResponse(status_code=404, content={"detail": detail})

    @app.get("/health", tags=["Service status"])
    async def health_check():
        """Health check endpoint, including task ledger connectivity."""
        try:
            reachable = await ledger.ping()
        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            reachable = False

        if not reachable:
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "ledger": "unreachable"},
            )
        return {"status": "healthy", "ledger": "ok"}

    return app


app = create_app()


def main():
    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(level=log_level)
    uvicorn.run(
        "service.main:app",
        host=settings.host,
        port=settings.port,
        log_level=log_level,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
