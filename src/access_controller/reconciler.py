"""Reconciliation driver for service connections and their access.

For every service connection definition, in file order:
1. Assert the Azure DevOps service connection
2. Resolve its service principal (a synthetic one only in a dry run)
3. Assert role assignments at management group scope
4. Assert role assignments at subscription and resource group scope
5. Assert API permissions

Missing targets are warnings collected in the result. SDK and
authentication errors abort the run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resourcegraph import ResourceGraphClient
from msgraph import GraphServiceClient

from .api_permissions import ApiPermissionManager
from .config import Config
from .directory import DirectoryClient, ServicePrincipal, synthetic_service_principal
from .models import ServiceConnectionSpec, SubscriptionAccess
from .operations import GrantOutcome, GrantResult
from .provenance import RunProvenance, get_provenance_logger
from .resource_graph import ResourceGraphQuerier, ResourceGroupLookup
from .role_assignments import RoleAssignmentManager
from .security import get_managed_identity_credential
from .service_connections import (
    ServiceConnectionAction,
    ServiceConnectionError,
    ServiceConnectionManager,
    connect_azure_devops,
)
from .spec_loader import load_service_connections

logger = logging.getLogger(__name__)

GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]


@dataclass
class ConnectionResult:
    """Result of reconciling one service connection and its grants."""

    name: str
    action: ServiceConnectionAction | None = None
    principal: ServicePrincipal | None = None
    grants: list[GrantResult] = field(default_factory=list)

    def _count(self, outcome: GrantOutcome) -> int:
        return sum(1 for g in self.grants if g.outcome is outcome)

    @property
    def created(self) -> int:
        return self._count(GrantOutcome.CREATED)

    @property
    def existing(self) -> int:
        return self._count(GrantOutcome.EXISTS)

    @property
    def planned(self) -> int:
        return self._count(GrantOutcome.PLANNED)

    @property
    def warnings(self) -> list[str]:
        return [g.warning for g in self.grants if g.warning]


@dataclass
class RunResult:
    """Result of a reconciliation run."""

    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    connections: list[ConnectionResult] = field(default_factory=list)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def warnings(self) -> list[str]:
        return [w for c in self.connections for w in c.warnings]


class Reconciler:
    """Applies service connection definitions to Azure DevOps and Azure.

    All clients are injected so the fan-out can run against fakes; use
    :meth:`from_config` to build one against the real services.
    """

    def __init__(
        self,
        config: Config,
        *,
        service_connections: ServiceConnectionManager,
        directory: DirectoryClient,
        resource_graph: ResourceGraphQuerier,
        resource_groups: ResourceGroupLookup,
        authorization_client_factory: Callable[[str], Any],
    ) -> None:
        """Initialize the reconciler.

        Args:
            config: Validated configuration.
            service_connections: Azure DevOps service connection manager.
            directory: Entra ID directory client.
            resource_graph: Management group and subscription lookups.
            resource_groups: Resource group existence checks.
            authorization_client_factory: Builds an authorization client
                for a subscription ID.
        """
        self._config = config
        self._service_connections = service_connections
        self._directory = directory
        self._resource_graph = resource_graph
        self._resource_groups = resource_groups
        self._authorization_client_factory = authorization_client_factory
        self._api_permissions = ApiPermissionManager(directory, dry_run=config.dry_run)
        self._provenance_logger = get_provenance_logger()

    @classmethod
    def from_config(cls, config: Config) -> Reconciler:
        """Build a reconciler with managed identity clients.

        Raises:
            SecretlessViolationError: If credential secrets are in the environment.
            AzureDevOpsServiceError: If the Azure DevOps project cannot be read.
        """
        # SECURITY: Secretless architecture - always use managed identity
        credential = get_managed_identity_credential(config.managed_identity_client_id)

        connection = connect_azure_devops(config.organization_url, credential)

        return cls(
            config,
            service_connections=ServiceConnectionManager.from_connection(connection, config),
            directory=DirectoryClient(GraphServiceClient(credentials=credential, scopes=GRAPH_SCOPES)),
            resource_graph=ResourceGraphQuerier(
                ResourceGraphClient(credential=credential),
                timeout_seconds=config.api_timeout_seconds,
            ),
            resource_groups=ResourceGroupLookup(
                lambda subscription_id: ResourceManagementClient(
                    credential=credential, subscription_id=subscription_id
                ),
                timeout_seconds=config.api_timeout_seconds,
            ),
            authorization_client_factory=lambda subscription_id: AuthorizationManagementClient(
                credential=credential, subscription_id=subscription_id
            ),
        )

    @property
    def config(self) -> Config:
        return self._config

    async def run(self) -> RunResult:
        """Reconcile every service connection found in the config directory.

        Raises:
            SpecLoadError: If the configuration cannot be loaded.
            Exception: Any SDK or authentication error, after the
                provenance record has been logged.
        """
        result = RunResult(dry_run=self._config.dry_run)
        provenance = self._provenance_logger.create_provenance(
            organization=self._config.organization,
            project=self._config.project,
            dry_run=self._config.dry_run,
        )

        logger.info(
            "Starting reconciliation",
            extra={
                "config_dir": str(self._config.config_dir),
                "project": self._config.project,
                "dry_run": self._config.dry_run,
            },
        )

        try:
            specs = load_service_connections(self._config.config_dir)
            provenance.service_connections = len(specs)

            for spec in specs.values():
                connection_result = await self.reconcile_connection(spec, provenance)
                result.connections.append(connection_result)

        except Exception as e:
            result.error = e
            provenance.error = str(e)
            provenance.error_type = type(e).__name__
            logger.error(
                "Reconciliation failed",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            raise

        finally:
            result.end_time = datetime.now(UTC)
            provenance.duration_seconds = result.duration_seconds
            self._provenance_logger.log_provenance(provenance)

        self._log_result(result)
        return result

    async def reconcile_connection(
        self,
        spec: ServiceConnectionSpec,
        provenance: RunProvenance | None = None,
    ) -> ConnectionResult:
        """Reconcile one service connection and fan out its grants.

        The service connection is asserted and its principal resolved
        before any grant is attempted.
        """
        result = ConnectionResult(name=spec.name)

        state = await self._service_connections.assert_service_connection(spec)
        result.action = state.action
        if provenance is not None and state.action in (
            ServiceConnectionAction.CREATED,
            ServiceConnectionAction.UPDATED,
        ):
            provenance.service_connections_changed += 1

        principal = await self._resolve_principal(spec, state.app_id)
        result.principal = principal

        role_assignments = RoleAssignmentManager(
            self._authorization_client_factory(spec.subscription_id),
            dry_run=self._config.dry_run,
            timeout_seconds=self._config.api_timeout_seconds,
        )

        for mg in spec.management_groups:
            result.grants.extend(
                await self._assert_management_group(role_assignments, mg.name, mg.roles, principal)
            )

        for subscription in spec.subscriptions:
            result.grants.extend(
                await self._assert_subscription(role_assignments, subscription, principal)
            )

        for api_permission in spec.api_permissions:
            result.grants.extend(
                await self._api_permissions.assert_api_permission(principal, api_permission)
            )

        if provenance is not None:
            for grant in result.grants:
                self._provenance_logger.log_grant(provenance, spec.name, grant)

        logger.info(
            "Service connection reconciled",
            extra={
                "service_connection": spec.name,
                "action": state.action.value,
                "grants_created": result.created,
                "grants_existing": result.existing,
                "grants_planned": result.planned,
                "warnings": len(result.warnings),
            },
        )
        return result

    async def _resolve_principal(
        self, spec: ServiceConnectionSpec, app_id: str | None
    ) -> ServicePrincipal:
        if app_id is None:
            if not self._config.dry_run:
                raise ServiceConnectionError(
                    f"Service connection '{spec.name}' has no service principal to grant access to"
                )
            principal = synthetic_service_principal(spec.name)
            logger.info(
                "Dry run: using synthetic service principal",
                extra={"service_connection": spec.name, "object_id": principal.object_id},
            )
            return principal
        return await self._directory.resolve_principal(app_id)

    async def _assert_management_group(
        self,
        role_assignments: RoleAssignmentManager,
        name: str,
        roles: list[str],
        principal: ServicePrincipal,
    ) -> list[GrantResult]:
        group = await self._resource_graph.find_management_group(name)
        if group is None:
            return self._skip_all(roles, name, f"Management group '{name}' not found")

        return [
            await role_assignments.assert_role_assignment(group.resource_id, role, principal)
            for role in roles
        ]

    async def _assert_subscription(
        self,
        role_assignments: RoleAssignmentManager,
        subscription: SubscriptionAccess,
        principal: ServicePrincipal,
    ) -> list[GrantResult]:
        found = await self._resource_graph.find_subscription(subscription.id)
        if found is None:
            warning = f"Subscription '{subscription.id}' not found"
            grants = self._skip_all(subscription.roles, subscription.scope, warning)
            for rg in subscription.resource_groups:
                grants.extend(
                    self._skip_all(rg.roles, rg.scope(subscription.id), warning, log=False)
                )
            return grants

        grants = [
            await role_assignments.assert_role_assignment(subscription.scope, role, principal)
            for role in subscription.roles
        ]

        for rg in subscription.resource_groups:
            scope = rg.scope(subscription.id)
            if not await self._resource_groups.exists(subscription.id, rg.name):
                grants.extend(
                    self._skip_all(
                        rg.roles,
                        scope,
                        f"Resource group '{rg.name}' not found in subscription {subscription.id}",
                    )
                )
                continue
            for role in rg.roles:
                grants.append(await role_assignments.assert_role_assignment(scope, role, principal))

        return grants

    @staticmethod
    def _skip_all(
        roles: list[str], target: str, warning: str, *, log: bool = True
    ) -> list[GrantResult]:
        if log:
            logger.warning(warning, extra={"target": target})
        return [
            GrantResult("role_assignment", target, role, GrantOutcome.SKIPPED, warning)
            for role in roles
        ]

    def _log_result(self, result: RunResult) -> None:
        logger.info(
            "Reconciliation complete",
            extra={
                "dry_run": result.dry_run,
                "service_connections": len(result.connections),
                "grants_created": sum(c.created for c in result.connections),
                "grants_planned": sum(c.planned for c in result.connections),
                "warnings": len(result.warnings),
                "duration_seconds": result.duration_seconds,
            },
        )
