import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from loguru import logger

from carevisit.api.scheduling import router as scheduling_router
from carevisit.config.settings import settings
from carevisit.core.logger import setup_logger
from carevisit.db.session import init_db


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Create tables on startup.

    Note: FastAPI requires async for lifespan context manager,
    even if no await operations are used.
    """
    init_db()

    await asyncio.sleep(0)
    yield


def create_app() -> FastAPI:
    setup_logger(settings)

    app = FastAPI(title="CareVisit Scheduling", lifespan=lifespan)
    app.include_router(scheduling_router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all HTTP requests."""
        logger.debug(f"Request: {request.method} {request.url.path}")
        response = await call_next(request)
        logger.debug(f"Response: {response.status_code} for {request.method} {request.url.path}")
        return response

    logger.info("FastAPI application initialized")
    return app


app = create_app()
