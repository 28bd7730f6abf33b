"""Dependencies exposing the process-wide service clients stored on app.state."""

from __future__ import annotations

import httpx
from fastapi import FastAPI, Request

from config import settings
from services.auth_provider import SupabaseAuthClient
from services.generation import GenerationOrchestrator
from services.providers import build_providers
from services.storage import SupabaseStorageClient


def init_service_clients(app: FastAPI) -> None:
    """Construct the shared HTTP client and the services built on it."""
    http_client = httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS, follow_redirects=True)
    app.state.http_client = http_client
    app.state.auth_client = SupabaseAuthClient(http_client)
    app.state.storage_client = SupabaseStorageClient(http_client)
    app.state.orchestrator = GenerationOrchestrator(build_providers(http_client), http_client)


async def close_service_clients(app: FastAPI) -> None:
    http_client = getattr(app.state, "http_client", None)
    if http_client is not None:
        await http_client.aclose()
        app.state.http_client = None


def _state_client(request: Request, name: str):
    # ASGI transports used by scripts and tests skip lifespan; build on first use.
    if getattr(request.app.state, name, None) is None:
        init_service_clients(request.app)
    return getattr(request.app.state, name)


def get_auth_client(request: Request) -> SupabaseAuthClient:
    return _state_client(request, "auth_client")


def get_storage_client(request: Request) -> SupabaseStorageClient:
    return _state_client(request, "storage_client")


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return _state_client(request, "orchestrator")
