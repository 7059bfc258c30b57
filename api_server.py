"""
Consultation API Server

FastAPI application exposing the session, appointment, doctor wallet and
admin withdrawal endpoints. The background scheduler runs inside the same
process unless ENABLE_SCHEDULER is turned off.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, test_connection
from handlers.admin_withdrawal_routes import router as admin_withdrawal_router
from handlers.appointment_routes import router as appointment_router
from handlers.session_routes import router as session_router
from handlers.wallet_routes import router as wallet_router
from jobs.consolidated_scheduler import get_consolidated_scheduler_instance
from utils.exception_handler import register_exception_handlers

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app(enable_scheduler: Optional[bool] = None, create_schema: bool = True) -> FastAPI:
    """Build the application; tests pass enable_scheduler=False and create_schema=False"""
    run_scheduler = Config.ENABLE_SCHEDULER if enable_scheduler is None else enable_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🔧 API worker {os.getpid()} starting ({Config.ENVIRONMENT})...")
        if not Config.validate_config():
            logger.error("❌ Configuration problems detected - check the errors above")
        if create_schema:
            create_tables()

        scheduler = None
        if run_scheduler:
            scheduler = get_consolidated_scheduler_instance()
            scheduler.start()
        else:
            logger.info("🚫 SCHEDULER: Disabled (set ENABLE_SCHEDULER=true to enable)")

        yield

        if scheduler is not None:
            scheduler.stop()
        logger.info(f"🔄 API worker {os.getpid()} shutting down...")

    app = FastAPI(
        title="Teleconsult Session & Billing API",
        description="Consultation session lifecycle, metered billing and doctor payouts",
        lifespan=lifespan,
    )
    register_exception_handlers(app)

    app.include_router(session_router)
    app.include_router(appointment_router)
    app.include_router(wallet_router)
    app.include_router(admin_withdrawal_router)

    @app.get("/health")
    def health_check():
        """Liveness plus a database round trip"""
        if not test_connection():
            return JSONResponse(
                content={"status": "degraded", "database": "unreachable"},
                status_code=503,
            )
        return {"status": "ok", "database": "ok", "environment": Config.ENVIRONMENT}

    return app


app = create_app()


def run():
    """Console entry point"""
    logger.info(f"🚀 Starting API server on {Config.HOST}:{Config.PORT}")
    uvicorn.run("api_server:app", host=Config.HOST, port=Config.PORT, log_level=Config.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
