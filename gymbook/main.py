from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from gymbook.core.limits import limiter
from gymbook.core.init_db import init_database
from gymbook.core.error_handlers import setup_exception_handlers
from gymbook.core.database import db_manager
from gymbook.core.middleware import setup_middleware
from gymbook.core.logging_utils import (
    setup_logging,
    get_logger,
    log_business_event,
    error_tracker,
)
from gymbook.core.config import (
    validate_config,
    APP_NAME,
    APP_VERSION,
    DEBUG,
    ENVIRONMENT,
    LOG_LEVEL,
    LOG_FORMAT,
)

from gymbook.staff.routers import catalog as staff_catalog
from gymbook.staff.routers import sessions as staff_sessions
from gymbook.staff.routers import templates as staff_templates
from gymbook.staff.routers import tokens as staff_tokens
from gymbook.students.routers import bookings_router, wallet_router

# Настройка системы логирования
setup_logging(LOG_LEVEL, LOG_FORMAT)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения"""

    # Startup
    logger.info(f"Starting {APP_NAME} v{APP_VERSION}")

    try:
        validate_config()
        logger.info("Configuration validated")

        await db_manager.check_connection()
        logger.info("Database connection established")

        await init_database()
        logger.info("Database initialized")

        log_business_event(
            "application_started",
            "system",
            0,
            {"version": APP_VERSION, "environment": ENVIRONMENT},
        )

        logger.info("Application startup completed")

    except Exception as e:
        logger.error(f"Application startup failed: {str(e)}")
        error_tracker.track_error(
            "STARTUP_ERROR",
            str(e),
            {"component": "application_startup", "version": APP_VERSION},
        )
        raise

    yield

    # Shutdown
    logger.info("Shutting down application...")

    try:
        await db_manager.close_connections()
        logger.info("Database connections closed")

    except Exception as e:
        logger.error(f"Error during shutdown: {str(e)}")

    logger.info("Application shutdown completed")


app = FastAPI(
    title=APP_NAME,
    description="Gym class booking: token wallets, sessions, bookings and waitlists",
    version=APP_VERSION,
    lifespan=lifespan,
    debug=DEBUG,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:8080",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_exception_handlers(app)

setup_middleware(
    app,
    {
        "slow_request_threshold": 5.0,
        "exclude_paths": [
            "/health",
            "/docs",
            "/openapi.json",
            "/redoc",
            "/favicon.ico",
        ],
    },
)

app.state.limiter = limiter


@app.get("/health", tags=["System"])
async def health_check():
    return {
        "status": "ok",
        "version": APP_VERSION,
        "tracked_errors": error_tracker.get_stats()["total_errors"],
    }


# Include routers with API version prefix
app.include_router(staff_catalog.router, prefix="/api/v1")
app.include_router(staff_sessions.router, prefix="/api/v1")
app.include_router(staff_templates.router, prefix="/api/v1")
app.include_router(staff_tokens.router, prefix="/api/v1")
app.include_router(bookings_router, prefix="/api/v1")
app.include_router(wallet_router, prefix="/api/v1")
