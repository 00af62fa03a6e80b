"""Shared pytest fixtures for Loom tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from loom.config import Settings
from loom.db.connection import Database
from loom.generation.service import GenerationService
from loom.lifecycle.router import get_lifecycle_manager
from loom.lifecycle.service import LifecycleManager
from loom.main import app
from loom.models import GenerationSettings
from loom.providers.registry import clear_providers, register_provider
from loom.transfer.router import get_transfer_codec
from loom.transfer.service import TransferCodec
from loom.trees.branching import BranchMutator
from loom.trees.paths import PathBuilder
from loom.trees.router import (
    get_branch_mutator,
    get_generation_service,
    get_path_builder,
    get_settings,
    get_tree_store,
)
from loom.trees.store import TreeStore
from tests.fixtures import FakeClock, FakeProvider


@pytest.fixture
async def db():
    """In-memory database for tests."""
    database = await Database.connect(":memory:")
    yield database
    await database.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def store(db, clock):
    return TreeStore(db, clock=clock)


@pytest.fixture
async def paths(store):
    return PathBuilder(store)


@pytest.fixture
async def mutator(store):
    return BranchMutator(store)


@pytest.fixture
async def gen_service(store, mutator, paths):
    return GenerationService(store, mutator, paths)


@pytest.fixture
async def lifecycle(store):
    return LifecycleManager(store)


@pytest.fixture
async def codec(store):
    return TransferCodec(store)


@pytest.fixture
def settings():
    return Settings(generation=GenerationSettings(model="fake-model"), default_provider="fake")


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
async def client(store, paths, mutator, gen_service, lifecycle, codec, settings, fake_provider):
    """Async test client with in-memory DB and FakeProvider wired into the app."""
    clear_providers()
    register_provider(fake_provider)

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_tree_store] = lambda: store
    app.dependency_overrides[get_path_builder] = lambda: paths
    app.dependency_overrides[get_branch_mutator] = lambda: mutator
    app.dependency_overrides[get_generation_service] = lambda: gen_service
    app.dependency_overrides[get_lifecycle_manager] = lambda: lifecycle
    app.dependency_overrides[get_transfer_codec] = lambda: codec
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()
    clear_providers()
