"""
ScriptWatch API Main Application.

FastAPI application with CORS, error handling, and lifecycle management
of the script loader.
Requires Python 3.11+.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.dependencies import get_reconciler, set_reconciler
from loader.reconciler import Reconciler, loop_executor
from runtime.engine import PythonScriptEngine
from utils.config import get_settings
from utils.logger import configure_logging, get_logger


# Initialize logging
configure_logging()
logger = get_logger("api")


def build_reconciler(loop: asyncio.AbstractEventLoop) -> Reconciler:
    """
    Create the reconciler for the configured script directory.

    Script side effects run on the given event loop.
    """
    settings = get_settings()
    directory = settings.scripts.directory
    directory.mkdir(parents=True, exist_ok=True)

    reconciler = Reconciler(
        directory,
        PythonScriptEngine(),
        executor=loop_executor(loop),
    )
    reconciler.watch([settings.scripts.init_script])
    return reconciler


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Loads the init script and everything it watches before serving,
    then polls for changes until shutdown.
    """
    settings = get_settings()
    logger.info(
        "starting_application",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
        script_directory=str(settings.scripts.directory),
    )

    try:
        reconciler = build_reconciler(asyncio.get_running_loop())
        reconciler.preload()
        reconciler.start()
        set_reconciler(reconciler)
    except OSError as e:
        logger.error("script_loader_initialization_failed", error=str(e))
        # Serve the API without a loader for graceful degradation
        set_reconciler(None)

    yield

    logger.info("shutting_down_application")
    current = get_reconciler()
    set_reconciler(None)
    if current is not None:
        current.shutdown()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    settings = get_settings()

    application = FastAPI(
        title=settings.app_name,
        description="Hot-reloading script host",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.exception(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": str(exc) if settings.is_development else "An unexpected error occurred",
            },
        )

    @application.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        reconciler = get_reconciler()
        return {
            "status": "healthy",
            "version": settings.app_version,
            "loader": "attached" if reconciler is not None else "detached",
            "polling": reconciler.is_running if reconciler is not None else False,
            "scripts": len(reconciler.scripts()) if reconciler is not None else 0,
        }

    # Import and include routers here to avoid circular imports
    from api.routes import scripts

    application.include_router(scripts.router, prefix="/scripts", tags=["Scripts"])

    return application


# Create the application instance
app = create_app()
