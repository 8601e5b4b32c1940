import httpx
import pytest

from resumable_chat.core.config import Settings
from resumable_chat.main import app, build_services
from resumable_chat.services.chat import ChatService
from resumable_chat.services.generation import GenerationDriver
from resumable_chat.services.resume import ResumeCoordinator
from resumable_chat.services.stream_registry import StreamRegistry
from resumable_chat.services.stream_transport import InMemoryStreamTransport

from tests.fake_mongo import FakeDatabase
from tests.helpers import ScriptedModel


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def transport():
    return InMemoryStreamTransport(retention_seconds=60, max_lifetime_seconds=300)


@pytest.fixture
def model():
    return ScriptedModel()


@pytest.fixture
def settings():
    return Settings(ENABLE_STREAMING=True, USE_TOOLS=False, GENERATION_TIMEOUT_SECONDS=5)


@pytest.fixture
def chat_service(db):
    return ChatService(db)


@pytest.fixture
def registry(db):
    return StreamRegistry(db)


@pytest.fixture
def driver(chat_service, registry, transport, model):
    return GenerationDriver(chat_service, registry, transport, model, timeout_seconds=5)


@pytest.fixture
def coordinator(chat_service, registry, transport):
    return ResumeCoordinator(chat_service, registry, transport, freshness_seconds=15)


@pytest.fixture
def wired_app(db, settings, transport, model):
    build_services(app, db, settings, transport, model)
    return app


@pytest.fixture
async def client(wired_app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=wired_app), base_url="http://test") as c:
        yield c
    await wired_app.state.generation_driver.shutdown(timeout=1)
