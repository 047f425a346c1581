import time
import logging
from contextlib import asynccontextmanager
from dotenv import load_dotenv

# Load environment variables from .env file before anything else
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from courier.core.config import settings
from courier.core.logging import setup_logging, request_id_ctx
from courier.core.errors import MessageNotFoundError, UnknownChannelError, IllegalTransitionError
from courier.api.router import api_router

setup_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    from courier.core.db import SessionLocal, init_models
    from courier.modules.queue.service import QueueStore
    from courier.modules.delivery.coordinator import QueueCoordinator
    from courier.platform.provider_registry import registry

    await init_models()
    app.state.store = QueueStore(SessionLocal)
    app.state.coordinator = QueueCoordinator(
        app.state.store,
        registry.transports_for(settings.CHANNELS),
        bus=registry.event_bus(),
    )
    await app.state.coordinator.start()
    try:
        yield
    finally:
        await app.state.coordinator.stop()
        await registry.aclose()

def create_app(*, manage_workers: bool = True) -> FastAPI:
    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan if manage_workers else None)

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = request.headers.get("x-request-id", "-")
        request_id_ctx.set(rid)
        return await call_next(request)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        process_time = (time.time() - start_time) * 1000
        logger.info(
            f"Request: {request.method} {request.url.path} - Response: {response.status_code} - Time: {process_time:.2f}ms"
        )
        return response

    @app.exception_handler(MessageNotFoundError)
    async def not_found_handler(request: Request, exc: MessageNotFoundError):
        return JSONResponse(status_code=404, content={"message": f"Message not found: {exc}"})

    @app.exception_handler(UnknownChannelError)
    async def unknown_channel_handler(request: Request, exc: UnknownChannelError):
        return JSONResponse(status_code=404, content={"message": f"Channel not found: {exc}"})

    @app.exception_handler(IllegalTransitionError)
    async def conflict_handler(request: Request, exc: IllegalTransitionError):
        return JSONResponse(status_code=409, content={"message": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.critical(f"Unhandled exception for request {request.method} {request.url.path}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"message": "An internal server error occurred."},
        )

    app.include_router(api_router, prefix=settings.API_PREFIX)
    return app

app = create_app()
