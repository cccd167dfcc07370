from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from esp_integration.config import settings
from esp_integration.context import build_integration_context
from esp_integration.db import create_supabase_client
from esp_integration.observability import configure_logging, log_event
from esp_integration.routers import (
    account_features,
    campaigns,
    connections,
    internal,
    providers,
    webhooks,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    # Tests install their own context before the app starts.
    if getattr(app.state, "integration", None) is None:
        app.state.integration = build_integration_context(settings, create_supabase_client(settings))
    ctx = app.state.integration
    log_event(
        "esp_integration_started",
        providers=ctx.registry.registered_providers(),
        vault_configured=ctx.vault.configured,
    )
    yield


app = FastAPI(title="ESP Integration Layer", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(webhooks.router)
app.include_router(providers.router)
app.include_router(connections.router)
app.include_router(connections.oauth_callback_router)
app.include_router(campaigns.router)
app.include_router(account_features.router)
app.include_router(internal.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "esp-integration"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
