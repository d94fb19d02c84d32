"""
FastAPI server for the activity platform
Exposes the participant actions and runs the background scheduler
"""
import logging
import os
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load .env before config reads the environment
load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, test_connection
from jobs.scheduler import ActivityScheduler
from routes.activity_routes import router as activity_router
from routes.wallet_routes import router as wallet_router
from services.escrow_service import seed_award_types
from services.stage_graph import seed_builtin_templates

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logging.getLogger('apscheduler').setLevel(logging.WARNING)
logging.getLogger('httpx').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables, seed builtin templates and award types, start jobs
    Shutdown: stop the scheduler
    """
    Config.log_environment_config()
    create_tables()
    seeded = seed_builtin_templates()
    seed_award_types()
    logger.info(f"✅ Startup complete: {len(seeded)} builtin templates seeded")

    scheduler = None
    if Config.ENABLE_SCHEDULER:
        scheduler = ActivityScheduler()
        scheduler.start()
    app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        scheduler.stop()
    logger.info("🔄 Server shutting down...")


app = FastAPI(
    title="Peer Review Activity Server",
    description="Token ledger, escrow and stage progression for paper review activities",
    lifespan=lifespan
)

app.include_router(activity_router)
app.include_router(wallet_router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    database_ok = test_connection()
    status_code = 200 if database_ok else 503
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "healthy" if database_ok else "degraded",
            "database": "connected" if database_ok else "unavailable",
            "environment": Config.ENVIRONMENT,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=Config.HOST, port=Config.PORT)
