import logging
from dataclasses import dataclass

from fastapi import Request

from app.database import DatabaseAdapter, get_db
from app.services.event_bus import EventBus
from app.services.llm import LLMClient, ReasoningService, VisionService
from app.services.orchestrator import TriageOrchestrator
from app.services.retry import RetryPolicy
from app.services.storage import ObjectStorage, build_storage
from app.services.workflow import WorkflowRunner

logger = logging.getLogger(__name__)


@dataclass
class Services:
    db: DatabaseAdapter
    reasoning: ReasoningService
    vision: VisionService
    storage: ObjectStorage
    bus: EventBus
    orchestrator: TriageOrchestrator
    runner: WorkflowRunner


async def build_services(
    db: DatabaseAdapter | None = None,
    reasoning: ReasoningService | None = None,
    vision: VisionService | None = None,
    storage: ObjectStorage | None = None,
    retry_policy: RetryPolicy | None = None,
) -> Services:
    """Wire the service graph once; callers may substitute any collaborator."""
    db = db or await get_db()
    if reasoning is None or vision is None:
        client = LLMClient()
        if not client.available():
            logger.warning("No LLM provider configured; agents will return fallback results")
        reasoning = reasoning or client
        vision = vision or client
    storage = storage or build_storage()
    bus = EventBus()
    orchestrator = TriageOrchestrator(db, reasoning, vision, storage)
    runner = WorkflowRunner(db, orchestrator, bus, retry_policy)
    runner.register()
    return Services(
        db=db,
        reasoning=reasoning,
        vision=vision,
        storage=storage,
        bus=bus,
        orchestrator=orchestrator,
        runner=runner,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the container built at start-up."""
    return request.app.state.services
