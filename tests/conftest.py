"""Test configuration and fixtures."""

import asyncio
import itertools
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

# Set test environment variables BEFORE importing the app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id.apps.googleusercontent.com"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ["GOOGLE_ADS_DEVELOPER_TOKEN"] = "test-developer-token"
os.environ["CONVERSION_LABEL_DELAY_SECONDS"] = "0"

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from oneclicktag.config import get_settings
from oneclicktag.connectors.exceptions import RemoteConflictError, RemoteNotFoundError
from oneclicktag.credentials.types import TokenBundle
from oneclicktag.credentials.vault import CredentialVault
from oneclicktag.database.migrations import create_tables
from oneclicktag.models.ads_account_link import AdsAccountLink
from oneclicktag.models.tenant import Tenant
from oneclicktag.provisioning.orchestrator import ProvisioningOrchestrator

USER_ID = "user-1"
CUSTOMER_ID = "1234567890"
CONVERSION_ID = "987654321"

# Bound at import so tests patching asyncio.sleep only see the code under test
_real_sleep = asyncio.sleep


# ---------------------------------------------------------------------------
# In-memory Google APIs
# ---------------------------------------------------------------------------

class FakeApi:
    """Shared failure injection: ``fail("op", exc)`` raises once on ``op``."""

    def __init__(self):
        self.calls: List[tuple] = []
        self._failures: Dict[str, List[Exception]] = {}
        self._ids = itertools.count(1)

    def fail(self, op: str, *errors: Exception):
        self._failures.setdefault(op, []).extend(errors)

    async def _enter(self, op: str, *args):
        self.calls.append((op,) + args)
        # Let concurrent callers interleave like real network calls do
        await _real_sleep(0)
        pending = self._failures.get(op)
        if pending:
            raise pending.pop(0)

    def next_id(self) -> str:
        return str(next(self._ids))

    def count(self, op: str, *args) -> int:
        return sum(1 for call in self.calls if call[: len(args) + 1] == (op,) + args)


class FakeTagManager(FakeApi):
    """Entities are stored per container, so they outlive the workspace that
    created them, as with versions published from a GTM workspace."""

    def __init__(self, containers: Optional[List[Dict[str, Any]]] = None):
        super().__init__()
        self.accounts = [{"accountId": "100", "name": "Acme"}]
        self.containers = {
            "100": containers
            if containers is not None
            else [{"containerId": "200", "name": "acme.example", "usageContext": ["web"]}]
        }
        self.workspaces: Dict[str, List[Dict[str, Any]]] = {}
        self.entities: Dict[tuple, List[Dict[str, Any]]] = {}
        self.published: List[str] = []

    @staticmethod
    def _container(workspace: str) -> str:
        return workspace.split("/workspaces/")[0]

    def _require_workspace(self, workspace: str):
        workspace_id = workspace.split("/")[-1]
        live = self.workspaces.get(self._container(workspace), [])
        if not any(w["workspaceId"] == workspace_id for w in live):
            raise RemoteNotFoundError(f"workspace {workspace_id} not found", api="tagmanager")

    async def list_accounts(self):
        await self._enter("list_accounts")
        return list(self.accounts)

    async def list_containers(self, account_id):
        await self._enter("list_containers", account_id)
        return list(self.containers.get(account_id, []))

    async def list_workspaces(self, container):
        await self._enter("list_workspaces", container)
        return list(self.workspaces.get(container, []))

    async def create_workspace(self, container, name, description):
        await self._enter("create_workspace", container, name)
        existing = self.workspaces.setdefault(container, [])
        if any(w["name"] == name for w in existing):
            raise RemoteConflictError("Workspace name already exists", api="tagmanager")
        workspace = {"workspaceId": self.next_id(), "name": name, "description": description}
        existing.append(workspace)
        return workspace

    def entities_of(self, kind: str, container: str = "accounts/100/containers/200"):
        return self.entities.get((container, kind), [])

    async def list_entities(self, workspace, kind):
        await self._enter("list_entities", kind)
        self._require_workspace(workspace)
        return list(self.entities_of(kind, self._container(workspace)))

    async def create_entity(self, workspace, kind, body):
        await self._enter("create_entity", kind, body["name"])
        self._require_workspace(workspace)
        existing = self.entities.setdefault((self._container(workspace), kind), [])
        if any(e["name"] == body["name"] for e in existing):
            raise RemoteConflictError(f"Duplicate name: {body['name']}", api="tagmanager")
        id_field = {"variables": "variableId", "triggers": "triggerId", "tags": "tagId", "clients": "clientId"}[kind]
        entity = dict(body, **{id_field: self.next_id()})
        existing.append(entity)
        return entity

    async def delete_entity(self, workspace, kind, entity_id):
        await self._enter("delete_entity", kind, entity_id)
        self._require_workspace(workspace)
        existing = self.entities.get((self._container(workspace), kind), [])
        for entity in existing:
            if entity_id in entity.values():
                existing.remove(entity)
                return
        raise RemoteNotFoundError(f"{kind} {entity_id} not found", api="tagmanager")

    async def enable_built_in_variables(self, workspace, types):
        await self._enter("enable_built_in_variables", tuple(types))
        self._require_workspace(workspace)

    async def create_version(self, workspace, name, notes=None):
        await self._enter("create_version", name)
        self._require_workspace(workspace)
        container = self._container(workspace)
        workspace_id = workspace.split("/")[-1]
        self.workspaces[container] = [
            w for w in self.workspaces.get(container, []) if w["workspaceId"] != workspace_id
        ]
        version_id = self.next_id()
        return {
            "containerVersion": {
                "containerVersionId": version_id,
                "path": f"{container}/versions/{version_id}",
            },
            "compilerError": False,
        }

    async def publish_version(self, version_path):
        await self._enter("publish_version", version_path)
        self.published.append(version_path)
        return {}


class FakeAnalytics(FakeApi):
    def __init__(self):
        super().__init__()
        self.summaries = [{"account": "accounts/300", "displayName": "Acme Analytics"}]
        self.properties: Dict[str, List[Dict[str, Any]]] = {"accounts/300": []}
        self.streams: Dict[str, List[Dict[str, Any]]] = {}

    async def list_account_summaries(self):
        await self._enter("list_account_summaries")
        return list(self.summaries)

    async def list_properties(self, account):
        await self._enter("list_properties", account)
        return list(self.properties.get(account, []))

    async def create_property(self, account, display_name, time_zone, currency_code):
        await self._enter("create_property", account, display_name)
        existing = self.properties.setdefault(account, [])
        if any(p["displayName"] == display_name for p in existing):
            raise RemoteConflictError("Property already exists", api="analyticsadmin")
        prop = {
            "name": f"properties/{self.next_id()}",
            "displayName": display_name,
            "timeZone": time_zone,
            "currencyCode": currency_code,
        }
        existing.append(prop)
        return prop

    async def list_data_streams(self, property_name):
        await self._enter("list_data_streams", property_name)
        return list(self.streams.get(property_name, []))

    async def create_web_data_stream(self, property_name, display_name, default_uri):
        await self._enter("create_web_data_stream", property_name, display_name)
        existing = self.streams.setdefault(property_name, [])
        if any(s["displayName"] == display_name for s in existing):
            raise RemoteConflictError("Data stream already exists", api="analyticsadmin")
        stream_id = self.next_id()
        stream = {
            "name": f"{property_name}/dataStreams/{stream_id}",
            "type": "WEB_DATA_STREAM",
            "displayName": display_name,
            "webStreamData": {"measurementId": f"G-TEST{stream_id}", "defaultUri": default_uri},
        }
        existing.append(stream)
        return stream


def tag_snippets(label: str, conversion_id: str = CONVERSION_ID) -> List[Dict[str, str]]:
    return [
        {
            "type": "WEBPAGE",
            "pageFormat": "HTML",
            "globalSiteTag": f"<script>gtag('config', 'AW-{conversion_id}');</script>",
            "eventSnippet": (
                "<script>gtag('event', 'conversion', "
                f"{{'send_to': 'AW-{conversion_id}/{label}'}});</script>"
            ),
        }
    ]


class FakeAds(FakeApi):
    """Conversion actions expose their tag snippets after ``label_delay`` reads."""

    def __init__(self, customers: Optional[Dict[str, Dict[str, Any]]] = None):
        super().__init__()
        self.customers = customers if customers is not None else {
            CUSTOMER_ID: {
                "id": CUSTOMER_ID,
                "descriptiveName": "Acme Ads",
                "currencyCode": "EUR",
                "timeZone": "Europe/Berlin",
                "manager": False,
                "status": "ENABLED",
            }
        }
        self.actions: Dict[str, List[Dict[str, Any]]] = {}
        self.labels: Dict[str, List[Dict[str, Any]]] = {}
        self.label_delay = 0
        self._reads: Dict[str, int] = {}

    def _visible(self, action: Dict[str, Any]) -> Dict[str, Any]:
        reads = self._reads.get(action["id"], 0)
        if reads < self.label_delay:
            return {k: v for k, v in action.items() if k != "tagSnippets"}
        return dict(action)

    def add_action(self, customer_id: str, name: str, label: Optional[str] = "ExistingLabel"):
        action_id = self.next_id()
        action = {
            "id": action_id,
            "name": name,
            "resourceName": f"customers/{customer_id}/conversionActions/{action_id}",
            "status": "ENABLED",
            "tagSnippets": tag_snippets(label) if label else [],
        }
        self.actions.setdefault(customer_id, []).append(action)
        return action

    async def list_accessible_customers(self):
        await self._enter("list_accessible_customers")
        return list(self.customers)

    async def get_customer(self, customer_id):
        await self._enter("get_customer", customer_id)
        return self.customers.get(customer_id)

    async def find_conversion_action(self, customer_id, name):
        await self._enter("find_conversion_action", customer_id, name)
        for action in self.actions.get(customer_id, []):
            if action["name"] == name:
                return self._visible(action)
        return None

    async def get_conversion_action(self, customer_id, conversion_action_id):
        await self._enter("get_conversion_action", customer_id, conversion_action_id)
        for action in self.actions.get(customer_id, []):
            if action["id"] == conversion_action_id:
                visible = self._visible(action)
                self._reads[action["id"]] = self._reads.get(action["id"], 0) + 1
                return visible
        return None

    async def create_conversion_action(self, customer_id, resource):
        await self._enter("create_conversion_action", customer_id, resource["name"])
        if any(a["name"] == resource["name"] for a in self.actions.get(customer_id, [])):
            raise RemoteConflictError("DUPLICATE_NAME", api="googleads")
        return self.add_action(customer_id, resource["name"], label="NewLabel")["resourceName"]

    async def remove_conversion_action(self, customer_id, resource_name):
        await self._enter("remove_conversion_action", customer_id, resource_name)
        self.actions[customer_id] = [
            a for a in self.actions.get(customer_id, []) if a["resourceName"] != resource_name
        ]

    async def find_label(self, customer_id, name):
        await self._enter("find_label", customer_id, name)
        for label in self.labels.get(customer_id, []):
            if label["name"] == name:
                return label
        return None

    async def create_label(self, customer_id, name, description=""):
        await self._enter("create_label", customer_id, name)
        existing = self.labels.setdefault(customer_id, [])
        if any(label["name"] == name for label in existing):
            raise RemoteConflictError("DUPLICATE_LABEL_NAME", api="googleads")
        label = {"name": name, "resourceName": f"customers/{customer_id}/labels/{self.next_id()}"}
        existing.append(label)
        return label["resourceName"]


class FakeClientFactory:
    """Hands out the same fake per API and records the credentials used."""

    def __init__(self, gtm=None, analytics=None, ads=None):
        self.gtm = gtm or FakeTagManager()
        self.analytics_api = analytics or FakeAnalytics()
        self.ads_api = ads or FakeAds()
        self.credentials = []

    def tag_manager(self, credential):
        self.credentials.append(credential)
        return self.gtm

    def analytics(self, credential):
        self.credentials.append(credential)
        return self.analytics_api

    def ads(self, credential):
        self.credentials.append(credential)
        return self.ads_api


class FakeOAuthClient:
    def __init__(self):
        self.refreshed: List[str] = []
        self.revoked: List[str] = []
        self.refresh_error: Optional[Exception] = None
        self.revoke_error: Optional[Exception] = None
        self.issued_refresh_token: Optional[str] = None

    def get_auth_url(self, state, scopes=None):
        return f"https://accounts.google.com/o/oauth2/v2/auth?state={state}"

    async def exchange_code(self, code):
        return TokenBundle(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            scope="openid",
        )

    async def refresh_access_token(self, refresh_token):
        self.refreshed.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenBundle(
            access_token=f"refreshed-{len(self.refreshed)}",
            refresh_token=self.issued_refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def revoke_token(self, token):
        self.revoked.append(token)
        if self.revoke_error is not None:
            raise self.revoke_error


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
async def session_factory(tmp_path):
    """A file-backed SQLite database per test.

    NullPool gives every session its own connection, so concurrent tasks
    really race on the database.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'oneclicktag.db'}", poolclass=NullPool
    )
    await create_tables(engine)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def tenant(session_factory):
    async with session_factory() as session:
        tenant = Tenant(
            id=uuid.uuid4(),
            slug="acme",
            name="Acme",
            website_url="https://acme.example",
        )
        session.add(tenant)
        await session.commit()
    return tenant


@pytest.fixture
async def ads_link(session_factory, tenant):
    async with session_factory() as session:
        link = AdsAccountLink(
            tenant_id=tenant.id,
            customer_id=CUSTOMER_ID,
            descriptive_name="Acme Ads",
            currency_code="EUR",
            is_primary=True,
        )
        session.add(link)
        await session.commit()
    return link


@pytest.fixture
def fake_oauth():
    return FakeOAuthClient()


@pytest.fixture
def fake_clients():
    return FakeClientFactory()


@pytest.fixture
def vault(session_factory, fake_oauth):
    return CredentialVault(session_factory, fake_oauth)


@pytest.fixture
async def connected(vault, tenant):
    """Store one Google grant for USER_ID across all scopes."""
    await vault.store_credential(
        USER_ID,
        tenant.id,
        TokenBundle(
            access_token="access-token",
            refresh_token="refresh-token",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        ),
    )
    return tenant


@pytest.fixture
def orchestrator(session_factory, settings, fake_oauth, vault, fake_clients):
    return ProvisioningOrchestrator(
        session_factory,
        settings=settings,
        oauth_client=fake_oauth,
        vault=vault,
        clients=fake_clients,
    )
