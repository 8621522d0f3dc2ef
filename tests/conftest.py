import os

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory DB and no external API keys for tests
os.environ["OPENAI_API_KEY"] = ""
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["LLM_PROVIDER"] = "auto"
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["DATABASE_URL"] = ""
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["AWS_S3_BUCKET_NAME"] = ""

from app.database import close_db, init_db
from app.main import app
from app.services.container import build_services
from app.services.retry import RetryPolicy
from app.services.storage import PassthroughStorage
from tests.factories import fake_reasoning, fake_vision

# No sleeping between retries in tests
FAST_RETRY = RetryPolicy(max_attempts=3, backoff_seconds=0, timeout_seconds=5)


@pytest_asyncio.fixture
async def db():
    """Provide a fresh in-memory database for each test."""
    import app.database as db_mod

    # Close any existing connection
    if db_mod._db is not None:
        try:
            await db_mod._db.close()
        except Exception:
            pass
    db_mod._db = None

    # Override module-level config directly (avoids fragile importlib.reload)
    db_mod.DATABASE_PATH = ":memory:"
    db_mod.DATABASE_URL = ""
    db_mod.SEED_DEMO_DATA = False

    await init_db()
    database = await db_mod.get_db()
    yield database
    await close_db()


@pytest.fixture
def reasoning():
    """Reasoning double answering every prompt with its payload defaults."""
    return fake_reasoning()


@pytest.fixture
def vision():
    return fake_vision({"findings": "Clear lung fields", "severity": "NORMAL", "confidence": 0.9})


@pytest_asyncio.fixture
async def services(db, reasoning, vision):
    """Service container wired to the test database and LLM doubles."""
    container = await build_services(
        db=db,
        reasoning=reasoning,
        vision=vision,
        storage=PassthroughStorage(),
        retry_policy=FAST_RETRY,
    )
    yield container
    await container.bus.drain()


@pytest_asyncio.fixture
async def async_client(services):
    """Provide an async httpx client for async HTTP tests."""
    app.state.services = services
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
