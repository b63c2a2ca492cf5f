"""
Soul Evolution Service - FastAPI application
"""
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.endpoints.soul import router as soul_router
from database import init_models
from logging_config import get_logger
from scheduler import start_scheduler, shutdown_scheduler

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    if os.getenv("SOUL_SCHEDULER_ENABLED", "true").lower() == "true":
        start_scheduler()
    logger.info("soul_evolution_started")
    yield
    shutdown_scheduler()
    logger.info("soul_evolution_stopped")


app = FastAPI(title="Soul Evolution", lifespan=lifespan)

# SECURITY: Limit CORS to specific origins
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:8000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
)

app.include_router(soul_router)


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
