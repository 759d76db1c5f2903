"""RealChat Backend Application.

This is the main entry point for the RealChat backend service: authenticated,
real-time chat rooms over WebSocket with a persisted message log.

Modules:
    - auth: OTP registration, login, refresh-token rotation, session cookies
    - chat: WebSocket gatekeeper, room presence, message pipeline, history
    - storage: DuckDB-backed users, refresh tokens and message log
    - mail: verification code delivery (Brevo)
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from realchat import __version__
from realchat.auth.router import router as auth_router
from realchat.auth.sweeper import TokenSweeper
from realchat.chat.router import router as chat_router
from realchat.config import AppConfig, get_config
from realchat.container import Services, build_services
from realchat.errors import AuthError, RealChatError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# urllib3/httpx/httpcore log every TCP connection and TLS handshake.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None, config: Optional[AppConfig] = None) -> FastAPI:
    """Build the application.

    Args:
        services: Pre-built services (tests); built from ``config`` at
            startup when omitted.
        config: Configuration; defaults to ``services.config`` or the
            process-wide ``get_config()``.
    """
    if config is None:
        config = services.config if services is not None else get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in realchat.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        # Services passed in by the caller are closed by the caller.
        owns_services = getattr(app.state, "services", None) is None
        if owns_services:
            app.state.services = build_services(config)
        sweeper = TokenSweeper(app.state.services.auth, config.auth.sweep_interval_seconds)
        await sweeper.start()
        logger.info(f"Server running on http://{config.server.host}:{config.server.port}")

        yield  # Application runs here

        # Shutdown
        await sweeper.stop()
        if owns_services:
            app.state.services.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="RealChat API",
        description="Backend service for RealChat - authenticated real-time chat rooms",
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RealChatError)
    async def realchat_error_handler(request: Request, exc: RealChatError) -> JSONResponse:
        if isinstance(exc, AuthError):
            logger.info("[Auth] %s %s rejected: %s", request.method, request.url.path, exc.detail)
        elif exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Register all routers
    app.include_router(auth_router)
    app.include_router(chat_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _config = get_config()
    uvicorn.run("realchat.main:app", host=_config.server.host, port=_config.server.port)
