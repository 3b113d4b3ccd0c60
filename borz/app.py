import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from borz.auth import SessionTokens
from borz.config import Settings, load_settings
from borz.database import init_db, make_engine, make_session_factory
from borz.errors import ChatAppError
from borz.rate_limiters.message_rate_limiter import MessageRateLimiter, get_message_rate_limiter
from borz.services.chat_stream import StreamingCoordinator
from borz.services.connection_manager import ConnectionManager
from borz.services.model_gateway import ModelGateway
from borz.subapps.auth_routes import router as auth_router
from borz.subapps.chat_routes import router as chat_router
from borz.subapps.realtime_routes import router as realtime_router


logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


_configure_logging()


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        details.append({"field": ".".join(loc), "message": err.get("msg", "")})
    return details


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatAppError)
    async def _chat_app_error(request: Request, exc: ChatAppError):
        if exc.status_code >= 500:
            logger.error("http.error: path=%s status=%d err=%s", request.url.path, exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Validation failed", "details": _validation_details(exc)})

    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception):
        logger.exception("http.unhandled: path=%s", request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


# Builds the app; tests inject their own engine, session factory, gateway and limiter
def create_app(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[Engine] = None,
    session_factory: Optional[sessionmaker] = None,
    gateway: Optional[ModelGateway] = None,
    rate_limiter: Optional[MessageRateLimiter] = None,
) -> FastAPI:
    settings = settings or load_settings()
    if session_factory is None:
        engine = engine or make_engine(settings.database_url)
        session_factory = make_session_factory(engine)
    elif engine is None:
        engine = session_factory.kw.get("bind")
    gateway = gateway or ModelGateway.from_settings(settings)
    if rate_limiter is None:
        rate_limiter = get_message_rate_limiter(settings)
    manager = ConnectionManager()
    coordinator = StreamingCoordinator(
        session_factory,
        gateway,
        manager,
        history_limit=settings.history_limit,
        replay_chunk_size=settings.replay_chunk_size,
        replay_chunk_delay_ms=settings.replay_chunk_delay_ms,
        rate_limiter=rate_limiter,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.auto_create_tables and engine is not None:
            init_db(engine)
        logger.info("app.startup: provider=%s model=%s", settings.model_provider, settings.model_name)
        yield
        await coordinator.drain()
        await gateway.close()
        logger.info("app.shutdown")

    app = FastAPI(title="Borz Chat", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.session_tokens = SessionTokens.from_settings(settings)
    app.state.gateway = gateway
    app.state.rate_limiter = rate_limiter
    app.state.connection_manager = manager
    app.state.coordinator = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)

    @app.get("/")
    def root():
        return {"message": "Borz Chat API", "status": "running"}

    @app.get("/health")
    def health():
        return {"status": "ok", "connections": manager.connection_count}

    app.include_router(auth_router)
    app.include_router(chat_router)
    app.include_router(realtime_router)
    return app


app = create_app()
