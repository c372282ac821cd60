from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supervisor_desk.core.config import settings
from supervisor_desk.core.dependencies import get_coordinator, get_knowledge_store
from supervisor_desk.core.logging import LOG_FORMAT
from supervisor_desk.routers.help_request import router as router_help_requests
from supervisor_desk.routers.knowledge_base import router as router_knowledge_base
import logging

logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)

# Silence noisy loggers
for noisy in ["uvicorn.access", "uvicorn.error", "asyncio", "httpx"]:
    logging.getLogger(noisy).setLevel(logging.ERROR)

logger = logging.getLogger("fastapi_server")
logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Seed the knowledge base and run the timeout sweep for the app's lifetime"""
    if settings.seed_knowledge_base:
        get_knowledge_store().seed_initial_data()

    coordinator = get_coordinator()
    await coordinator.start()
    try:
        yield
    finally:
        await coordinator.stop()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Supervisor dashboard dev server
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
# Include routers
app.include_router(router_help_requests)
app.include_router(router_knowledge_base)


@app.get("/")
async def root():
    return {"status": "running"}


@app.get("/health")
async def health():
    coordinator = get_coordinator()
    return {
        "status": "healthy",
        "timeout_sweep": "running" if coordinator.is_running else "stopped"
    }
