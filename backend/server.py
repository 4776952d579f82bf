"""
Sales Targets - API Backend
Rollover automatique des objectifs commerciaux (mensuel / trimestriel / annuel)

Démarre avec:
    uvicorn server:app --host 0.0.0.0 --port 8001 --reload
"""

from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
import logging

from config import (
    CORS_ORIGINS,
    TARGET_SCHEDULER_CATCHUP,
    TARGET_SCHEDULER_ENABLED,
    client,
)
from routes import targets
from scheduler_service import task_scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create the main app without a prefix
app = FastAPI(
    title="Sales Targets",
    description="Objectifs commerciaux récurrents et rollover des périodes",
    version="1.0.0"
)

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")
api_router.include_router(targets.router)


@api_router.get("/")
async def root():
    return {"name": "Sales Targets API", "status": "running", "docs": "/docs"}


app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    try:
        await task_scheduler.engine.store.ensure_indexes()
        logger.info("✅ Index MongoDB créés")
    except Exception as e:
        logger.error(f"❌ Could not create indexes: {e}")

    if TARGET_SCHEDULER_ENABLED:
        task_scheduler.start(catch_up=TARGET_SCHEDULER_CATCHUP)
        logger.info("🎯 Target scheduler initialized and running")
    else:
        logger.info("Target scheduler disabled (TARGET_SCHEDULER_ENABLED=false)")


@app.on_event("shutdown")
async def shutdown():
    await task_scheduler.shutdown()
    logger.info("🎯 Target scheduler stopped")
    client.close()
