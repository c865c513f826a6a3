"""Integration tests for the HTTP surface."""

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from oneclicktag.api.dependencies import get_orchestrator
from oneclicktag.connectors.exceptions import (
    ConfigurationError,
    CredentialInvalidError,
    InvalidRequestError,
    NotConnectedError,
    RecordNotFoundError,
    RemoteConflictError,
    RemoteNotFoundError,
    RemoteRejectedError,
    RemoteTransientError,
)
from oneclicktag.credentials.vault import ConnectionStatus
from oneclicktag.main import app
from oneclicktag.models.conversion_action import ConversionStatus
from oneclicktag.models.oauth_credential import CredentialScope
from oneclicktag.models.tracking import TrackingStatus
from oneclicktag.provisioning.aggregator import AccountSummary
from oneclicktag.provisioning.conversions import ConversionActionResult
from oneclicktag.provisioning.orchestrator import ProvisioningResult, TeardownResult
from oneclicktag.provisioning.tag_graph import TagGraphArtifacts

TENANT_ID = uuid.uuid4()
HEADERS = {"X-User-Id": "user-1", "X-Tenant-Id": str(TENANT_ID)}


@pytest.fixture
def orchestrator():
    return MagicMock()


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def _conversion(status=ConversionStatus.READY):
    ready = status == ConversionStatus.READY
    return ConversionActionResult(
        conversion_action_id="9",
        resource_name="customers/1234567890/conversionActions/9",
        conversion_id="987654321" if ready else None,
        conversion_label="AbCdEf" if ready else None,
        status=status,
    )


class TestHealthEndpoint:
    def test_health_check(self, client: TestClient):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert "version" in data


class TestOAuthRoutes:
    def test_authorize(self, client, orchestrator):
        orchestrator.get_auth_url.return_value = "https://accounts.google.com/o/oauth2/v2/auth?state=s"

        response = client.get("/api/v1/oauth/google/authorize", params={"state": "s"})

        assert response.status_code == 200
        assert response.json()["url"].endswith("state=s")

    def test_callback_connects(self, client, orchestrator):
        orchestrator.connect = AsyncMock(return_value=list(CredentialScope))

        response = client.get(
            "/api/v1/oauth/google/callback", params={"code": "c", "state": "s"}, headers=HEADERS
        )

        assert response.status_code == 200
        assert set(response.json()["connected_scopes"]) == {"tag_manager", "ads", "analytics"}
        orchestrator.connect.assert_awaited_once_with("user-1", TENANT_ID, "c")

    def test_identity_headers_are_required(self, client, orchestrator):
        response = client.get("/api/v1/oauth/google/status")
        assert response.status_code == 422

    def test_tenant_header_must_be_uuid(self, client, orchestrator):
        response = client.get("/api/v1/oauth/google/status", headers={"X-User-Id": "u", "X-Tenant-Id": "acme"})
        assert response.status_code == 400

    def test_status(self, client, orchestrator):
        expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
        orchestrator.connection_status = AsyncMock(return_value={
            CredentialScope.ADS: ConnectionStatus(CredentialScope.ADS, "connected", expires),
            CredentialScope.ANALYTICS: ConnectionStatus(CredentialScope.ANALYTICS, "invalid"),
        })

        response = client.get("/api/v1/oauth/google/status", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["ads"]["state"] == "connected"
        assert data["analytics"]["state"] == "invalid"

    def test_revoke(self, client, orchestrator):
        orchestrator.revoke_all = AsyncMock(return_value=3)

        response = client.delete("/api/v1/oauth/google", headers=HEADERS)

        assert response.json() == {"revoked_credentials": 3}


class TestProvisioningRoutes:
    def test_list_accounts(self, client, orchestrator):
        orchestrator.list_accounts = AsyncMock(return_value=[
            AccountSummary(CredentialScope.ADS, "1234567890", "Acme Ads", {"currency_code": "EUR"})
        ])

        response = client.get("/api/v1/google/ads/accounts", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()[0]["attributes"]["currency_code"] == "EUR"
        orchestrator.list_accounts.assert_awaited_once_with("user-1", TENANT_ID, CredentialScope.ADS)

    def test_unknown_scope(self, client, orchestrator):
        response = client.get("/api/v1/google/youtube/accounts", headers=HEADERS)
        assert response.status_code == 422

    def test_conversion_action_ready(self, client, orchestrator):
        orchestrator.ensure_conversion_action = AsyncMock(return_value=_conversion())

        response = client.post(
            "/api/v1/google/ads/accounts/1234567890/conversion-actions",
            json={"name": "Purchase", "category": "PURCHASE"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["conversion_label"] == "AbCdEf"
        definition = orchestrator.ensure_conversion_action.await_args.args[3]
        assert definition.name == "Purchase"
        assert definition.category == "PURCHASE"

    def test_conversion_action_label_pending_is_accepted(self, client, orchestrator):
        orchestrator.ensure_conversion_action = AsyncMock(return_value=_conversion(ConversionStatus.LABEL_PENDING))

        response = client.post(
            "/api/v1/google/ads/accounts/1234567890/conversion-actions",
            json={"name": "Purchase"},
            headers=HEADERS,
        )

        assert response.status_code == 202
        assert response.json()["status"] == "label_pending"

    def test_remove_conversion_action(self, client, orchestrator):
        orchestrator.remove_conversion_action = AsyncMock(return_value=None)

        response = client.delete(
            "/api/v1/google/ads/accounts/1234567890/conversion-actions/Purchase", headers=HEADERS
        )

        assert response.status_code == 204
        orchestrator.remove_conversion_action.assert_awaited_once_with(
            "user-1", TENANT_ID, "1234567890", "Purchase"
        )

    def test_reset_reference(self, client, orchestrator):
        orchestrator.reset_reference = AsyncMock(return_value=None)

        response = client.delete(
            "/api/v1/google/references/ads_label",
            params={"customer_id": "1234567890"},
            headers=HEADERS,
        )

        assert response.status_code == 204
        orchestrator.reset_reference.assert_awaited_once_with(
            "user-1", TENANT_ID, "ads_label", customer_id="1234567890"
        )

    def test_reset_unknown_reference(self, client, orchestrator):
        orchestrator.reset_reference = AsyncMock(
            side_effect=InvalidRequestError("Unknown reference 'everything'")
        )

        response = client.delete("/api/v1/google/references/everything", headers=HEADERS)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_provision(self, client, orchestrator):
        tracking_id = uuid.uuid4()
        artifacts = TagGraphArtifacts(workspace_id="7", trigger_id="12", ga4_tag_id="13", container_version_id="4")
        orchestrator.provision_tracking = AsyncMock(
            return_value=ProvisioningResult(tracking_id, TrackingStatus.ACTIVE, artifacts, _conversion())
        )

        response = client.post(f"/api/v1/trackings/{tracking_id}/provision", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "active"
        assert data["tag_ids"] == {"ga4": "13", "ads": None}
        assert data["conversion"]["conversion_id"] == "987654321"

    def test_provision_label_pending(self, client, orchestrator):
        tracking_id = uuid.uuid4()
        orchestrator.provision_tracking = AsyncMock(
            return_value=ProvisioningResult(tracking_id, TrackingStatus.LABEL_PENDING, TagGraphArtifacts())
        )

        response = client.post(f"/api/v1/trackings/{tracking_id}/provision", headers=HEADERS)

        assert response.status_code == 202
        assert response.json()["status"] == "label_pending"

    def test_disable_and_delete(self, client, orchestrator):
        tracking_id = uuid.uuid4()
        result = TeardownResult(tracking_id, deleted=[("tags", "13"), ("triggers", "12")], published=True)
        orchestrator.disable_tracking = AsyncMock(return_value=result)
        orchestrator.delete_tracking = AsyncMock(return_value=result)

        disabled = client.post(f"/api/v1/trackings/{tracking_id}/disable", headers=HEADERS)
        deleted = client.delete(f"/api/v1/trackings/{tracking_id}", headers=HEADERS)

        assert disabled.json()["deleted"] == [["tags", "13"], ["triggers", "12"]]
        assert deleted.status_code == 200
        orchestrator.delete_tracking.assert_awaited_once_with("user-1", TENANT_ID, tracking_id)


class TestErrorMapping:
    @pytest.mark.parametrize(
        "error, status_code",
        [
            (NotConnectedError("ads"), 409),
            (CredentialInvalidError("revoked", scope="ads"), 401),
            (RemoteTransientError("backend error", api="googleads", status_code=503), 503),
            (RemoteConflictError("exists", api="tagmanager"), 409),
            (RemoteRejectedError("bad", api="tagmanager", status_code=400), 422),
            (RemoteRejectedError("forbidden", api="tagmanager", status_code=403), 403),
            (RemoteRejectedError("quota", api="googleads", status_code=429), 429),
            (RemoteNotFoundError("gone", api="tagmanager"), 404),
            (ConfigurationError("no developer token"), 500),
            (RecordNotFoundError("no tracking"), 404),
        ],
    )
    def test_error_kinds(self, client, orchestrator, error, status_code):
        orchestrator.provision_tracking = AsyncMock(side_effect=error)

        response = client.post(f"/api/v1/trackings/{uuid.uuid4()}/provision", headers=HEADERS)

        assert response.status_code == status_code
        assert response.json()["error"] == error.kind
        assert response.json()["message"] == str(error)

    def test_provider_error_is_included(self, client, orchestrator):
        payload = {"error": {"code": 403, "message": "The caller does not have permission"}}
        orchestrator.list_accounts = AsyncMock(
            side_effect=RemoteRejectedError("denied", api="analyticsadmin", status_code=403, provider_error=payload)
        )

        response = client.get("/api/v1/google/analytics/accounts", headers=HEADERS)

        assert response.status_code == 403
        assert response.json()["provider_error"] == payload
