"""Loom FastAPI application entry point."""

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from anthropic import AsyncAnthropic, AsyncAnthropicBedrock
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from loom.config import Settings
from loom.db.connection import Database
from loom.generation.service import GenerationService
from loom.lifecycle.router import get_lifecycle_manager
from loom.lifecycle.router import router as lifecycle_router
from loom.lifecycle.service import LifecycleManager
from loom.providers.anthropic import AnthropicProvider
from loom.providers.registry import clear_providers, get_all_providers, register_provider
from loom.transfer.router import get_transfer_codec
from loom.transfer.router import router as transfer_router
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
from loom.trees.router import router as trees_router
from loom.trees.store import TreeStore

logger = logging.getLogger(__name__)

settings = Settings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage database lifecycle and service wiring."""
    db = await Database.connect(settings.db_path)

    store = TreeStore(db)
    paths = PathBuilder(store)
    mutator = BranchMutator(store)
    gen_service = GenerationService(store, mutator, paths)
    lifecycle = LifecycleManager(store, retention_ms=settings.retention_ms)
    codec = TransferCodec(store)

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_tree_store] = lambda: store
    app.dependency_overrides[get_path_builder] = lambda: paths
    app.dependency_overrides[get_branch_mutator] = lambda: mutator
    app.dependency_overrides[get_generation_service] = lambda: gen_service
    app.dependency_overrides[get_lifecycle_manager] = lambda: lifecycle
    app.dependency_overrides[get_transfer_codec] = lambda: codec

    # Providers are discovered from credentials in the environment
    if os.environ.get("ANTHROPIC_API_KEY"):
        register_provider(AnthropicProvider(AsyncAnthropic()))

    if aws_region := os.environ.get("AWS_REGION"):
        register_provider(AnthropicProvider(
            AsyncAnthropicBedrock(aws_region=aws_region), name="bedrock"
        ))

    if not get_all_providers():
        logger.warning("No model provider configured; generation endpoints will fail")

    await lifecycle.purge_expired()

    app.state.db = db
    yield

    clear_providers()
    await db.close()


app = FastAPI(
    title="Loom",
    description="Branching conversation trees with regeneration and edit-as-branch",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Lifecycle first: /deleted must win over /{conversation_id}.
app.include_router(lifecycle_router)
app.include_router(transfer_router)
app.include_router(trees_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "version": "0.1.0"}


@app.get("/api/providers")
async def providers() -> list[dict]:
    return [{"name": p.name, "available": True} for p in get_all_providers()]
