"""
calsync — organization calendar bridge, application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.admin import router as admin_router
from api.cron import router as cron_router
from api.middleware import register_exception_handlers, register_middleware
from config.settings import config
from connectors.encryption import is_encryption_enabled
from connectors.routes import router as google_calendar_router
from database.session import dispose_engine

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "googleapiclient", "google.auth"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title=config.app_name,
        version="1.0.0",
        description="Mirrors organization events into members' Google Calendars.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)
    register_exception_handlers(app)

    # Routes
    app.include_router(google_calendar_router, prefix="/api/integrations/google-calendar")
    app.include_router(cron_router, prefix="/api/cron")
    app.include_router(admin_router, prefix="/api/v1/admin/calendar-connections")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.on_event("startup")
    async def on_startup():
        if not config.is_google_oauth_configured():
            logger.warning("GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET not set — calendar features disabled")
        # Initialises the cipher now so a bad key shows up at boot
        is_encryption_enabled()
        if not config.cron_secret:
            logger.warning("CRON_SECRET not set — /api/cron/calendar will reject every request")
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        await dispose_engine()

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
