import httpx
import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from invoice_pipeline.core import config as config_module
from invoice_pipeline.core.config import get_settings
from invoice_pipeline.core.storage import get_object_store


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Tests mutate env vars and clear the settings cache; never leak a cached
    # Settings or pipeline configuration across tests.
    get_settings.cache_clear()
    get_object_store.cache_clear()
    config_module._active_config = None
    yield
    get_settings.cache_clear()
    get_object_store.cache_clear()
    config_module._active_config = None


@pytest.fixture(autouse=True)
def _reset_alert_tracker():
    from invoice_pipeline.utils.alerting import alert_tracker

    alert_tracker.reset()
    yield
    alert_tracker.reset()


@pytest.fixture
def session_factory():
    """Fresh in-memory database with every table created."""
    from invoice_pipeline.models.invoice import Base

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def record_store(session_factory):
    from invoice_pipeline.services.record_store import SqlRecordStore

    return SqlRecordStore(session_factory)


@pytest.fixture
def object_store():
    from invoice_pipeline.core.storage import InMemoryObjectStore

    return InMemoryObjectStore()


@pytest.fixture
def document_locator(object_store):
    return object_store.put(b"\x89PNG fake invoice scan", filename="fatura.png", content_type="image/png")


@pytest_asyncio.fixture
async def client():
    """In-process ASGI client; dependency overrides are installed by each test."""
    from invoice_pipeline.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
