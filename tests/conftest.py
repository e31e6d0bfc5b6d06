import httpx
import pytest
import pytest_asyncio

from tampinha.cache import MemoryCache
from tampinha.config import Settings
from tampinha.main import build_services, create_app
from tests.helpers import Clock, InterleavingCache

SECRET = "test_secret_do_not_use"


@pytest.fixture
def settings(tmp_path):
    return Settings(database_url=f"sqlite:///{tmp_path / 'ledger.db'}", code_secret=SECRET)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest_asyncio.fixture(scope="function")
async def services(settings, cache, clock):
    s = build_services(settings, cache=cache, clock=clock)
    try:
        yield s
    finally:
        s.engine.dispose()


@pytest.fixture
def interleaving():
    return InterleavingCache()


@pytest_asyncio.fixture(scope="function")
async def racing_services(settings, interleaving, clock):
    s = build_services(settings, cache=interleaving, clock=clock)
    try:
        yield s
    finally:
        s.engine.dispose()


@pytest.fixture
def app(settings, cache, clock):
    app = create_app(settings, cache=cache, clock=clock)
    yield app
    app.state.services.engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=10.0) as c:
        yield c
