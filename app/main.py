import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.database import close_db, init_db
from app.routers import reports, scans, triage
from app.services.container import build_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting triage orchestration service...")
    await init_db()
    logger.info("Database initialized")
    app.state.services = await build_services()
    logger.info("Workflow runner registered")
    yield
    await app.state.services.bus.drain()
    await close_db()
    logger.info("Triage orchestration service shut down")


app = FastAPI(
    title="Triage Orchestrator",
    description="Multi-agent clinical triage: history, imaging, diagnosis and coding",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(triage.router)
app.include_router(reports.router)
app.include_router(scans.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
