"""Tests for the reconciliation driver.

The reconciler is wired to in-memory fakes, so these tests exercise the
whole fan-out from YAML to role assignments and API permissions.
"""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from azure.core.exceptions import HttpResponseError
from azure_mock import (
    MICROSOFT_GRAPH_APP_ROLES,
    PROJECT_ID,
    PROJECT_NAME,
    MockAuthorizationClient,
    MockAuthorizationState,
    MockAzureContext,
    MockDirectoryState,
    MockGraphServiceClient,
    MockResourceClient,
    MockResourceGraphClient,
    MockResourceGroupState,
    MockServiceEndpointClient,
)
from conftest import SUBSCRIPTION_ID, TENANT_ID

from access_controller.config import AZURE_DEVOPS_RESOURCE_SCOPE, Config
from access_controller.directory import DirectoryClient, PrincipalNotFoundError
from access_controller.operations import GrantOutcome, GrantResult
from access_controller.reconciler import ConnectionResult, Reconciler, RunResult
from access_controller.resource_graph import ResourceGraphQuerier, ResourceGroupLookup
from access_controller.security import SecretlessViolationError
from access_controller.service_connections import (
    ServiceConnectionAction,
    ServiceConnectionError,
    ServiceConnectionManager,
)

MG_SCOPE = "/providers/Microsoft.Management/managementGroups/mg-platform"
SUBSCRIPTION_SCOPE = f"/subscriptions/{SUBSCRIPTION_ID}"
RG_SCOPE = f"{SUBSCRIPTION_SCOPE}/resourceGroups/rg-app"

PLATFORM_YAML = f"""
sc-platform:
  description: Platform deployments
  subscriptionId: {SUBSCRIPTION_ID}
  subscriptionName: Platform
  managementGroups:
    - name: mg-platform
      roles: [Reader]
  subscriptions:
    - id: {SUBSCRIPTION_ID}
      roles: [Contributor]
      resourceGroups:
        - name: rg-app
          roles: [Reader]
  apiPermissions:
    - api: Microsoft Graph
      permissions: [User.Read.All]
"""


class FakeAzure:
    """In-memory Azure DevOps, Entra ID and Azure state for one test."""

    def __init__(self) -> None:
        self.directory = MockDirectoryState()
        self.devops = MockServiceEndpointClient(self.directory)
        self.resource_graph = MockResourceGraphClient()
        self.resource_groups = MockResourceGroupState()
        self.authorization = MockAuthorizationState()
        self.authorization_error: Exception | None = None

        self.directory.add_microsoft_graph()
        self.resource_graph.add_management_group("mg-platform", "Platform")
        self.resource_graph.add_subscription(SUBSCRIPTION_ID, "Platform")
        self.resource_groups.add(SUBSCRIPTION_ID, "rg-app")

    def authorization_client(self, subscription_id: str) -> MockAuthorizationClient:
        client = MockAuthorizationClient(self.authorization, subscription_id)
        client.fail_with(self.authorization_error)
        return client

    def reconciler(self, config: Config) -> Reconciler:
        return Reconciler(
            config,
            service_connections=ServiceConnectionManager(
                self.devops,
                project_id=PROJECT_ID,
                project_name=PROJECT_NAME,
                tenant_id=TENANT_ID,
                dry_run=config.dry_run,
                poll_interval_seconds=0,
            ),
            directory=DirectoryClient(
                MockGraphServiceClient(self.directory),
                lookup_attempts=2,
                lookup_interval_seconds=0,
            ),
            resource_graph=ResourceGraphQuerier(self.resource_graph),
            resource_groups=ResourceGroupLookup(
                lambda subscription_id: MockResourceClient(self.resource_groups, subscription_id)
            ),
            authorization_client_factory=self.authorization_client,
        )


@pytest.fixture
def azure() -> FakeAzure:
    return FakeAzure()


def write_spec(config_dir: Path, content: str, filename: str = "connections.yml") -> None:
    (config_dir / filename).write_text(content)


class TestApply:
    """Tests for a full apply run."""

    @pytest.mark.asyncio
    async def test_creates_connection_and_grants(
        self, azure: FakeAzure, config_dir: Path, make_config
    ) -> None:
        write_spec(config_dir, PLATFORM_YAML)

        result = await azure.reconciler(make_config()).run()

        assert result.success
        connection = result.connections[0]
        assert connection.action is ServiceConnectionAction.CREATED
        assert [(g.target, g.grant, g.outcome) for g in connection.grants] == [
            (MG_SCOPE, "Reader", GrantOutcome.CREATED),
            (SUBSCRIPTION_SCOPE, "Contributor", GrantOutcome.CREATED),
            (RG_SCOPE, "Reader", GrantOutcome.CREATED),
            ("Microsoft Graph", "User.Read.All", GrantOutcome.CREATED),
        ]
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_grants_go_to_provisioned_principal(
        self, azure: FakeAzure, config_dir: Path, make_config
    ) -> None:
        """Test that access is granted to the principal Azure DevOps created."""
        write_spec(config_dir, PLATFORM_YAML)

        result = await azure.reconciler(make_config()).run()

        principal = result.connections[0].principal
        sp = next(s for s in azure.directory.service_principals if s.display_name == "sc-platform")
        assert principal.object_id == sp.id
        assert principal.synthetic is False
        assert {a.principal_id for a in azure.authorization.assignments} == {sp.id}
        assert str(azure.directory.assignments[0].principal_id) == sp.id
        assert str(azure.directory.assignments[0].app_role_id) == (
            MICROSOFT_GRAPH_APP_ROLES["User.Read.All"]
        )

    @pytest.mark.asyncio
    async def test_second_run_is_noop(
        self, azure: FakeAzure, config_dir: Path, make_config
    ) -> None:
        write_spec(config_dir, PLATFORM_YAML)
        reconciler = azure.reconciler(make_config())

        await reconciler.run()
        second = await reconciler.run()

        connection = second.connections[0]
        assert connection.action is ServiceConnectionAction.UNCHANGED
        assert connection.created == 0
        assert connection.existing == 4
        assert len(azure.devops.created) == 1
        assert len(azure.authorization.create_calls) == 3
        assert len(azure.directory.post_calls) == 1

    @pytest.mark.asyncio
    async def test_connections_processed_in_file_order(
        self, azure: FakeAzure, config_dir: Path, make_config
    ) -> None:
        write_spec(
            config_dir,
            f"sc-b:\n  subscriptionId: {SUBSCRIPTION_ID}\n  subscriptionName: Platform\n",
            "b.yml",
        )
        write_spec(
            config_dir,
            f"sc-a:\n  subscriptionId: {SUBSCRIPTION_ID}\n  subscriptionName: Platform\n",
            "a.yml",
        )

        result = await azure.reconciler(make_config()).run()

        assert [c.name for c in result.connections] == ["sc-a", "sc-b"]
        assert [e.name for e in azure.devops.created] == ["sc-a", "sc-b"]

    @pytest.mark.asyncio
    async def test_empty_config_dir(self, azure: FakeAzure, make_config) -> None:
        result = await azure.reconciler(make_config()).run()

        assert result.success
        assert result.connections == []


class TestMissingTargets:
    """Tests for grants whose target does not exist."""

    @pytest.mark.asyncio
    async def test_missing_management_group_is_warning(
        self, config_dir: Path, make_config
    ) -> None:
        azure = FakeAzure()
        azure.resource_graph = MockResourceGraphClient()
        azure.resource_graph.add_subscription(SUBSCRIPTION_ID, "Platform")
        write_spec(config_dir, PLATFORM_YAML)

        result = await azure.reconciler(make_config()).run()

        grants = result.connections[0].grants
        assert grants[0].outcome is GrantOutcome.SKIPPED
        assert "mg-platform" in grants[0].warning
        assert [g.outcome for g in grants[1:]] == [GrantOutcome.CREATED] * 3
        assert result.success

    @pytest.mark.asyncio
    async def test_missing_subscription_skips_resource_groups(
        self, config_dir: Path, make_config
    ) -> None:
        """Test that a missing subscription skips its resource groups without lookups."""
        azure = FakeAzure()
        azure.resource_graph = MockResourceGraphClient()
        azure.resource_graph.add_management_group("mg-platform")
        write_spec(config_dir, PLATFORM_YAML)

        result = await azure.reconciler(make_config()).run()

        grants = result.connections[0].grants
        assert [(g.target, g.outcome) for g in grants[1:3]] == [
            (SUBSCRIPTION_SCOPE, GrantOutcome.SKIPPED),
            (RG_SCOPE, GrantOutcome.SKIPPED),
        ]
        assert azure.resource_groups.checks == []
        assert len(result.warnings) == 2

    @pytest.mark.asyncio
    async def test_missing_resource_group_is_warning(
        self, config_dir: Path, make_config
    ) -> None:
        azure = FakeAzure()
        azure.resource_groups = MockResourceGroupState()
        write_spec(config_dir, PLATFORM_YAML)

        result = await azure.reconciler(make_config()).run()

        grants = result.connections[0].grants
        assert grants[2].target == RG_SCOPE
        assert grants[2].outcome is GrantOutcome.SKIPPED
        assert "rg-app" in grants[2].warning
        assert grants[3].outcome is GrantOutcome.CREATED


class TestDryRun:
    """Tests for dry-run mode."""

    @pytest.mark.asyncio
    async def test_absent_connection_uses_synthetic_principal(
        self, azure: FakeAzure, config_dir: Path, make_config
    ) -> None:
        """Test that a dry run plans every grant and writes nothing."""
        write_spec(config_dir, PLATFORM_YAML)

        result = await azure.reconciler(make_config(dry_run=True)).run()

        connection = result.connections[0]
        assert connection.action is ServiceConnectionAction.PLANNED_CREATE
        assert connection.principal.synthetic is True
        assert connection.planned == 4
        assert azure.devops.created == []
        assert azure.authorization.create_calls == []
        assert azure.directory.post_calls == []

    @pytest.mark.asyncio
    async def test_synthetic_principal_not_looked_up(
        self, azure: FakeAzure, config_dir: Path, make_config
    ) -> None:
        write_spec(config_dir, PLATFORM_YAML)

        await azure.reconciler(make_config(dry_run=True)).run()

        assert not any("appId" in q for q in azure.directory.queries)

    @pytest.mark.asyncio
    async def test_missing_targets_still_reported(
        self, config_dir: Path, make_config
    ) -> None:
        azure = FakeAzure()
        azure.resource_groups = MockResourceGroupState()
        write_spec(config_dir, PLATFORM_YAML)

        result = await azure.reconciler(make_config(dry_run=True)).run()

        assert len(result.warnings) == 1
        assert "rg-app" in result.warnings[0]


class TestErrors:
    """Tests for fatal errors."""

    @pytest.mark.asyncio
    async def test_sdk_error_aborts_run(
        self,
        azure: FakeAzure,
        config_dir: Path,
        make_config,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test that an ARM failure propagates after provenance is logged."""
        error = HttpResponseError(message="AuthorizationFailed")
        error.status_code = 403
        azure.authorization_error = error
        write_spec(config_dir, PLATFORM_YAML)

        with caplog.at_level(logging.INFO, logger="access_controller"):
            with pytest.raises(HttpResponseError):
                await azure.reconciler(make_config()).run()

        provenance = [r for r in caplog.records if r.getMessage() == "Reconciliation provenance"]
        assert len(provenance) == 1
        assert provenance[0].levelno == logging.ERROR
        assert provenance[0].provenance["error_type"] == "HttpResponseError"

    @pytest.mark.asyncio
    async def test_principal_not_found_is_fatal(
        self, azure: FakeAzure, config_dir: Path, make_config
    ) -> None:
        unknown_app_id = "99999999-8888-7777-6666-555555555555"
        azure.devops.add_endpoint(
            "sc-manual",
            app_id=unknown_app_id,
            subscription_id=SUBSCRIPTION_ID,
            subscription_name="Platform",
        )
        write_spec(
            config_dir,
            f"sc-manual:\n"
            f"  subscriptionId: {SUBSCRIPTION_ID}\n"
            f"  subscriptionName: Platform\n"
            f"  servicePrincipalId: {unknown_app_id}\n",
        )

        with pytest.raises(PrincipalNotFoundError):
            await azure.reconciler(make_config()).run()

        assert azure.authorization.create_calls == []

    @pytest.mark.asyncio
    async def test_existing_connection_without_principal_is_fatal(
        self, azure: FakeAzure, config_dir: Path, make_config
    ) -> None:
        """Test that no placeholder principal is granted anything in an apply run."""
        azure.devops.add_endpoint(
            "sc-platform",
            app_id=None,
            description="Platform deployments",
            subscription_id=SUBSCRIPTION_ID,
            subscription_name="Platform",
        )
        write_spec(config_dir, PLATFORM_YAML)

        with pytest.raises(ServiceConnectionError) as exc_info:
            await azure.reconciler(make_config()).run()

        assert "no service principal" in str(exc_info.value)
        assert azure.authorization.create_calls == []
        assert azure.directory.post_calls == []

    @pytest.mark.asyncio
    async def test_existing_connection_without_principal_in_dry_run(
        self, azure: FakeAzure, config_dir: Path, make_config
    ) -> None:
        azure.devops.add_endpoint(
            "sc-platform",
            app_id=None,
            description="Platform deployments",
            subscription_id=SUBSCRIPTION_ID,
            subscription_name="Platform",
        )
        write_spec(config_dir, PLATFORM_YAML)

        result = await azure.reconciler(make_config(dry_run=True)).run()

        assert result.connections[0].principal.synthetic is True
        assert result.connections[0].planned == 4

    @pytest.mark.asyncio
    async def test_error_stops_later_connections(
        self, azure: FakeAzure, config_dir: Path, make_config
    ) -> None:
        azure.devops.failure = RuntimeError("TF400813: not authorized")
        write_spec(config_dir, PLATFORM_YAML)

        with pytest.raises(RuntimeError):
            await azure.reconciler(make_config()).run()

        assert azure.authorization.assignments == []


class TestResults:
    """Tests for result aggregation."""

    def test_connection_counts(self) -> None:
        result = ConnectionResult(
            name="sc",
            grants=[
                GrantResult("role_assignment", "/s", "Reader", GrantOutcome.CREATED),
                GrantResult("role_assignment", "/s", "Contributor", GrantOutcome.EXISTS),
                GrantResult("api_permission", "Graph", "X", GrantOutcome.SKIPPED, "missing"),
            ],
        )

        assert result.created == 1
        assert result.existing == 1
        assert result.planned == 0
        assert result.warnings == ["missing"]

    def test_run_result_without_end_time(self) -> None:
        result = RunResult()

        assert result.duration_seconds == 0.0
        assert result.success


class TestFromConfig:
    """Tests for the managed identity wiring."""

    @pytest.mark.asyncio
    async def test_end_to_end_with_mocked_sdks(self, config_dir: Path, make_config) -> None:
        write_spec(config_dir, PLATFORM_YAML)

        with MockAzureContext(polls_until_ready=0) as ctx:
            ctx.directory.add_microsoft_graph()
            ctx.resource_graph.add_management_group("mg-platform")
            ctx.resource_graph.add_subscription(SUBSCRIPTION_ID)
            ctx.resource_groups.add(SUBSCRIPTION_ID, "rg-app")

            result = await Reconciler.from_config(make_config()).run()

            assert (AZURE_DEVOPS_RESOURCE_SCOPE,) in ctx.credential.scopes_requested

        assert result.connections[0].created == 4
        assert {a.scope for a in ctx.authorization.assignments} == {
            MG_SCOPE,
            SUBSCRIPTION_SCOPE,
            RG_SCOPE,
        }

    def test_secretless_violation(
        self, monkeypatch: pytest.MonkeyPatch, make_config
    ) -> None:
        monkeypatch.setenv("AZURE_CLIENT_SECRET", "hunter2")

        with MockAzureContext():
            with pytest.raises(SecretlessViolationError):
                Reconciler.from_config(make_config())
