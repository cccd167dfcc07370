import asyncio
import base64
from datetime import datetime, timezone

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from fastapi.testclient import TestClient

from esp_integration.config import Settings
from esp_integration.context import build_integration_context
from esp_integration.domain.capabilities import ProviderCapabilities
from esp_integration.domain.errors import ProviderError
from esp_integration.models.campaigns import EspCampaign, EspWorkflow
from esp_integration.models.credentials import Credentials
from esp_integration.main import app
from esp_integration.observability import reset_metrics
from esp_integration.providers.base import ProviderAdapter


UNIQUE_KEYS = {
    "accounts": ("key",),
    "esp_oauth_connections": ("account_key", "provider"),
    "esp_api_key_connections": ("account_key", "provider"),
    "campaign_email_stats": ("provider", "account_id", "campaign_id"),
    "esp_webhook_event_ledger": ("provider", "event_key"),
    "esp_provider_oauth_credentials": ("provider",),
    "esp_account_provider_links": ("account_key", "provider"),
}

STATS_COLUMNS = (
    "delivered_count",
    "opened_count",
    "clicked_count",
    "bounced_count",
    "complained_count",
    "unsubscribed_count",
)


def _ts(value):
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, table_name: str, db: "FakeSupabase"):
        self.table_name = table_name
        self.db = db
        self.operation = "select"
        self.payload = None
        self.on_conflict = None
        self.filters = []

    def select(self, _fields: str = "*"):
        self.operation = "select"
        return self

    def insert(self, payload: dict):
        self.operation = "insert"
        self.payload = payload
        return self

    def upsert(self, payload: dict, on_conflict: str | None = None):
        self.operation = "upsert"
        self.payload = payload
        self.on_conflict = on_conflict
        return self

    def update(self, payload: dict):
        self.operation = "update"
        self.payload = payload
        return self

    def delete(self):
        self.operation = "delete"
        return self

    def eq(self, key: str, value):
        self.filters.append(("eq", key, value))
        return self

    def neq(self, key: str, value):
        self.filters.append(("neq", key, value))
        return self

    def in_(self, key: str, values):
        self.filters.append(("in", key, list(values)))
        return self

    def lt(self, key: str, value):
        self.filters.append(("lt", key, value))
        return self

    def _matches(self, row: dict) -> bool:
        for kind, key, value in self.filters:
            if kind == "eq" and row.get(key) != value:
                return False
            if kind == "neq" and row.get(key) == value:
                return False
            if kind == "in" and row.get(key) not in value:
                return False
            if kind == "lt" and (row.get(key) is None or _ts(row.get(key)) >= _ts(value)):
                return False
        return True

    def _find(self, table: list, row: dict, keys: tuple) -> dict | None:
        for existing in table:
            if all(existing.get(k) == row.get(k) for k in keys):
                return existing
        return None

    def execute(self):
        self.db.calls.append((self.table_name, self.operation))
        if (self.table_name, self.operation) in self.db.failures:
            raise Exception(f"simulated {self.operation} failure on {self.table_name}")
        table = self.db.tables.setdefault(self.table_name, [])
        keys = UNIQUE_KEYS.get(self.table_name, ("id",))

        if self.operation == "insert":
            row = dict(self.payload or {})
            if self._find(table, row, keys) is not None:
                raise Exception("duplicate key value violates unique constraint")
            table.append(row)
            return FakeResponse([dict(row)])

        if self.operation == "upsert":
            row = dict(self.payload or {})
            conflict_keys = tuple(self.on_conflict.split(",")) if self.on_conflict else keys
            existing = self._find(table, row, conflict_keys)
            if existing is not None:
                existing.update(row)
                return FakeResponse([dict(existing)])
            table.append(row)
            return FakeResponse([dict(row)])

        if self.operation == "update":
            updated = []
            for row in table:
                if self._matches(row):
                    row.update(self.payload or {})
                    updated.append(dict(row))
            return FakeResponse(updated)

        if self.operation == "delete":
            removed = [row for row in table if self._matches(row)]
            self.db.tables[self.table_name] = [row for row in table if not self._matches(row)]
            return FakeResponse([dict(row) for row in removed])

        return FakeResponse([dict(row) for row in table if self._matches(row)])


class FakeRpc:
    def __init__(self, db: "FakeSupabase", name: str, params: dict):
        self.db = db
        self.name = name
        self.params = params

    def execute(self):
        self.db.calls.append((self.name, "rpc"))
        if self.db.rpc_failure and self.db.rpc_failure(self.params):
            raise Exception("simulated rpc failure")
        if self.name == "increment_campaign_email_stats":
            return FakeResponse(self.db.increment_stats(self.params))
        if self.name == "backfill_campaign_email_stats":
            return FakeResponse(self.db.backfill_stats(self.params))
        raise Exception(f"unknown function {self.name}")


class FakeSupabase:
    def __init__(self, tables: dict | None = None):
        self.tables = tables or {}
        self.calls = []
        self.failures = set()
        self.rpc_failure = None

    def table(self, table_name: str):
        return FakeQuery(table_name, self)

    def rpc(self, name: str, params: dict):
        return FakeRpc(self, name, params)

    def _stats_row_for(self, params: dict) -> dict:
        table = self.tables.setdefault("campaign_email_stats", [])
        for existing in table:
            if (
                existing["provider"] == params["p_provider"]
                and existing["account_id"] == params["p_account_id"]
                and existing["campaign_id"] == params["p_campaign_id"]
            ):
                return existing
        row = {
            "provider": params["p_provider"],
            "account_id": params["p_account_id"],
            "campaign_id": params["p_campaign_id"],
            **{name: 0 for name in STATS_COLUMNS},
            "first_delivered_at": None,
            "last_event_at": None,
        }
        table.append(row)
        return row

    def increment_stats(self, params: dict):
        column = params["p_column"]
        if column not in STATS_COLUMNS:
            raise Exception(f"unknown stats column {column}")
        occurred_at = params["p_occurred_at"]
        row = self._stats_row_for(params)
        row[column] += 1
        if column == "delivered_count":
            current = row["first_delivered_at"]
            if current is None or _ts(occurred_at) < _ts(current):
                row["first_delivered_at"] = occurred_at
        if row["last_event_at"] is None or _ts(occurred_at) > _ts(row["last_event_at"]):
            row["last_event_at"] = occurred_at
        return None

    def backfill_stats(self, params: dict):
        row = self._stats_row_for(params)
        for column in STATS_COLUMNS:
            if params.get(f"p_{column}") is not None:
                row[column] = params[f"p_{column}"]
        first = params.get("p_first_delivered_at")
        if first is not None and (row["first_delivered_at"] is None or _ts(first) < _ts(row["first_delivered_at"])):
            row["first_delivered_at"] = first
        last = params.get("p_last_event_at")
        if last is not None and (row["last_event_at"] is None or _ts(last) > _ts(row["last_event_at"])):
            row["last_event_at"] = last
        return None

    def stats_row(self, provider: str, account_id: str, campaign_id: str) -> dict | None:
        for row in self.tables.get("campaign_email_stats", []):
            if (row["provider"], row["account_id"], row["campaign_id"]) == (provider, account_id, campaign_id):
                return row
        return None


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@pytest.fixture(scope="session")
def ghl_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ghl_public_key_pem(ghl_private_key):
    return (
        ghl_private_key.public_key()
        .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
        .decode("ascii")
    )


@pytest.fixture
def sign_ghl(ghl_private_key):
    def _sign(body: bytes) -> str:
        signature = ghl_private_key.sign(body, padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode("ascii")

    return _sign


@pytest.fixture
def settings(ghl_public_key_pem):
    return Settings(
        _env_file=None,
        internal_api_key="internal-key",
        esp_token_secret="primary-token-secret",
        esp_oauth_state_secret="oauth-state-secret",
        default_esp_provider="ghl",
        ghl_client_id="ghl-client",
        ghl_client_secret="ghl-secret",
        ghl_redirect_uri="https://esp.example.com/api/esp/connections/ghl/callback",
        ghl_webhook_public_key=ghl_public_key_pem,
        klaviyo_webhook_secret="klaviyo-secret",
    )


@pytest.fixture
def fake_db():
    return FakeSupabase(
        {
            "accounts": [
                {"key": "acme", "dealer": "Acme Motors", "esp_provider": "ghl"},
                {"key": "bolt", "dealer": "Bolt Auto", "esp_provider": None},
                {"key": "_template", "dealer": "Internal", "esp_provider": None},
            ]
        }
    )


@pytest.fixture
def ctx(settings, fake_db):
    return build_integration_context(settings, fake_db)


@pytest.fixture
def client(ctx):
    app.state.integration = ctx
    yield TestClient(app)
    app.state.integration = None
    app.dependency_overrides.clear()


@pytest.fixture
def internal_headers():
    return {"X-Internal-Api-Key": "internal-key"}


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()


class StubContacts:
    def __init__(self, adapter: "StubAdapter"):
        self.adapter = adapter

    async def resolve_credentials(self, account_key: str):
        token = self.adapter.tokens.get(account_key)
        if token is None:
            return None
        return Credentials(provider="stub", token=token, location_id=f"loc-{account_key}", auth_mode="api_key")

    async def fetch_contact_count(self, credentials):
        return await self.adapter.call(credentials, self.adapter.contact_counts.get(credentials.location_id, 100))


class StubCampaigns:
    def __init__(self, adapter: "StubAdapter"):
        self.adapter = adapter

    async def fetch_campaigns(self, credentials, force_refresh: bool = False):
        self.adapter.force_refresh_calls.append(force_refresh)
        campaigns = [c.model_copy(update={"location_id": credentials.location_id}) for c in self.adapter.campaign_list]
        return await self.adapter.call(credentials, campaigns)

    async def fetch_analytics(self, credentials, campaign):
        self.adapter.probed.append(campaign.id)
        delay = self.adapter.analytics_delays.get(campaign.id, 0)
        if delay:
            await asyncio.sleep(delay)
        analytics = self.adapter.analytics.get(campaign.id)
        if isinstance(analytics, Exception):
            raise analytics
        return analytics


class StubWorkflows:
    def __init__(self, adapter: "StubAdapter"):
        self.adapter = adapter

    async def fetch_workflows(self, credentials):
        workflow = EspWorkflow(id="wf-1", name="Welcome", status="published", location_id=credentials.location_id)
        return await self.adapter.call(credentials, [workflow])


class StubAdapter(ProviderAdapter):
    """In-memory provider: tokens per account, "boom" tokens raise, optional latency."""

    provider = "stub"
    capabilities = ProviderCapabilities(auth="api_key", contacts=True, campaigns=True, workflows=True)

    def __init__(self, tokens: dict | None = None, delay: float = 0):
        self.tokens = tokens or {}
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.force_refresh_calls = []
        self.probed = []
        self.contact_counts = {}
        self.campaign_list = [
            EspCampaign(id="cmp-1", name="Spring Sale", status="completed", location_id="", sent_at="2026-01-05T10:00:00+00:00"),
        ]
        self.analytics = {}
        self.analytics_delays = {}
        self.contacts = StubContacts(self)
        self.campaigns = StubCampaigns(self)
        self.workflows = StubWorkflows(self)

    async def call(self, credentials, value):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if credentials.token == "boom":
                raise ProviderError("upstream exploded", status_code=502)
            return value
        finally:
            self.in_flight -= 1


@pytest.fixture
def stub_adapter():
    return StubAdapter(tokens={"acme": "t-acme", "bolt": "t-bolt"})


@pytest.fixture
def stub_ctx(settings, fake_db, stub_adapter):
    fake_db.tables["accounts"] = [
        {"key": "acme", "dealer": "Acme Motors", "esp_provider": "stub"},
        {"key": "bolt", "dealer": "Bolt Auto", "esp_provider": "stub"},
        {"key": "_internal", "dealer": "Internal", "esp_provider": "stub"},
    ]
    app_settings = settings.model_copy(update={"default_esp_provider": "stub"})
    return build_integration_context(app_settings, fake_db, adapters=[stub_adapter])


@pytest.fixture
def stub_client(stub_ctx):
    app.state.integration = stub_ctx
    yield TestClient(app)
    app.state.integration = None
    app.dependency_overrides.clear()
