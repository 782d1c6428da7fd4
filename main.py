import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from controllers.relay_controller import describe_validation_errors, health as relay_health
from routes.relay_route import router as relay_router
from services.relay.forwarder import WebhookForwarder
from services.relay.relay_dispatcher import RelayDispatcher
from services.relay.session_registry import SessionRegistry
from services.relay.upstream_connection import Connector
from utils.relay_settings import RelaySettings

load_dotenv()  # Load environment variables from .env file if present

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOGGER = logging.getLogger("relay")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan manager to initialize:
      - the relay settings (from the environment unless injected)
      - the webhook forwarder and the session registry
      - the relay dispatcher
    and attach them to `app.state`. On shutdown every upstream connection is
    closed before the webhook client.
    """
    settings: Optional[RelaySettings] = getattr(app.state, "settings", None)
    if settings is None:
        settings = RelaySettings.from_env()
        app.state.settings = settings

    forwarder = WebhookForwarder(settings.webhook_url, timeout=settings.forward_timeout_seconds)
    registry = SessionRegistry(
        upstream_url=settings.upstream_url,
        api_key=settings.api_key,
        idle_seconds=settings.idle_seconds,
        sink=forwarder,
        connector=getattr(app.state, "connector", None),
    )
    app.state.forwarder = forwarder
    app.state.session_registry = registry
    app.state.relay_dispatcher = RelayDispatcher(
        registry,
        default_destination=settings.default_agent_id,
        ready_timeout=settings.ready_timeout_seconds,
    )

    try:
        yield
    finally:
        try:
            await registry.shutdown()
        finally:
            await forwarder.aclose()


def create_app(settings: Optional[RelaySettings] = None, connector: Optional[Connector] = None) -> FastAPI:
    """
    Create and configure the FastAPI application instance.

    `settings` and `connector` are optional overrides; by default settings come
    from the environment at startup and upstream sockets are opened with
    `websockets.connect`.
    """
    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.connector = connector

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": str(exc.detail)})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"ok": False, "error": describe_validation_errors(exc.errors())})

    @app.get("/health")
    async def health(request: Request):
        """
        Simple health check reporting the number of live sessions.
        """
        return relay_health(request)

    # Register application routers
    app.include_router(relay_router)

    return app


app = create_app()


if __name__ == "__main__":
    env_settings = RelaySettings.from_env()
    app.state.settings = env_settings
    LOGGER.info("Relay listening on :%s", env_settings.port)
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=env_settings.port, log_level=env_settings.log_level.lower())
