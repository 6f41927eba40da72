"""Application entry point: FastAPI app with the caching middleware."""

import structlog
import uvicorn
from fastapi import FastAPI

from readthrough.api.middleware import RequestContextMiddleware, ResponseCacheMiddleware
from readthrough.api.routes.cache import router as cache_router
from readthrough.config.settings import settings
from readthrough.logging import configure_logging

logger = structlog.get_logger()


def create_app(response_cache: bool = True) -> FastAPI:
    """Create the API app.

    Middleware added last runs first, so the request context is bound
    before the response cache builds its key.
    """
    app = FastAPI(title="Readthrough Cache API")

    if response_cache:
        app.add_middleware(ResponseCacheMiddleware)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(cache_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint for container orchestration."""
        return {"status": "healthy"}

    return app


def main() -> None:
    configure_logging()
    logger.info("starting_api", host=settings.api_host, port=settings.api_port)
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
