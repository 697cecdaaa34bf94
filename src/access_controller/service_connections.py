"""Azure DevOps service connections (Azure Resource Manager endpoints).

A service connection is asserted by name within one project:
- absent: created with workload identity federation
- present but drifted: description and subscription data are updated
- present and matching: left untouched

The service principal behind the connection is what the role and
permission fan-out grants access to, so this step always runs first.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from azure.core.credentials import TokenCredential
from azure.devops.connection import Connection
from azure.devops.v7_1.service_endpoint.models import (
    EndpointAuthorization,
    ProjectReference,
    ServiceEndpoint,
    ServiceEndpointProjectReference,
)
from msrest.authentication import BasicTokenAuthentication

from .config import (
    AZURE_DEVOPS_RESOURCE_SCOPE,
    AZURE_MANAGEMENT_URL,
    DEFAULT_API_TIMEOUT_SECONDS,
    DEFAULT_READY_TIMEOUT_SECONDS,
    READY_POLL_INTERVAL_SECONDS,
    Config,
)
from .models import ServiceConnectionSpec
from .operations import run_blocking

logger = logging.getLogger(__name__)

ENDPOINT_TYPE = "azurerm"
AUTHORIZATION_SCHEME = "WorkloadIdentityFederation"
AZURE_ENVIRONMENT = "AzureCloud"
SCOPE_LEVEL = "Subscription"

# Refresh the Azure DevOps token this long before it expires
TOKEN_REFRESH_MARGIN_SECONDS = 300


class ServiceConnectionError(Exception):
    """Raised when a service connection cannot be brought to a usable state."""

    pass


class ServiceConnectionAction(str, Enum):
    """What the assert step did to a service connection."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    PLANNED_CREATE = "planned_create"
    PLANNED_UPDATE = "planned_update"


@dataclass(frozen=True)
class ServiceConnectionState:
    """Result of asserting a service connection.

    Attributes:
        name: Service connection name
        action: What was done (or would be done in a dry run)
        endpoint_id: Azure DevOps endpoint ID, None if not created yet
        app_id: Application ID of the backing service principal, None if
            the connection does not exist yet
        drifted_fields: Fields that differed from the definition
    """

    name: str
    action: ServiceConnectionAction
    endpoint_id: str | None = None
    app_id: str | None = None
    drifted_fields: tuple[str, ...] = ()


class CredentialTokenAuthentication(BasicTokenAuthentication):
    """Bearer token authentication backed by an azure-identity credential.

    msrest signs every request through :meth:`signed_session`, so a token
    close to expiry is replaced before the request goes out. Readiness
    polling can outlive a single token.
    """

    def __init__(self, credential: TokenCredential, scope: str) -> None:
        self._credential = credential
        self._scope = scope
        self._expires_on = 0
        super().__init__({"access_token": self._acquire()})

    def _acquire(self) -> str:
        access_token = self._credential.get_token(self._scope)
        self._expires_on = access_token.expires_on
        logger.debug(
            "Acquired Azure DevOps access token",
            extra={"expires_on": access_token.expires_on},
        )
        return access_token.token

    def signed_session(self, session: Any = None) -> Any:
        if time.time() >= self._expires_on - TOKEN_REFRESH_MARGIN_SECONDS:
            self.token = {"access_token": self._acquire()}
        return super().signed_session(session)


def connect_azure_devops(organization_url: str, credential: TokenCredential) -> Connection:
    """Open an Azure DevOps connection with an Entra ID bearer token.

    The first token is acquired here, so authentication failures surface
    before any definition is processed.
    """
    return Connection(
        base_url=organization_url,
        creds=CredentialTokenAuthentication(credential, AZURE_DEVOPS_RESOURCE_SCOPE),
    )


def _status_field(status: Any, key: str) -> str | None:
    if status is None:
        return None
    if isinstance(status, dict):
        return status.get(key)
    return getattr(status, key, None)


class ServiceConnectionManager:
    """Create-or-update Azure Resource Manager service connections."""

    def __init__(
        self,
        client: Any,
        *,
        project_id: str,
        project_name: str,
        tenant_id: str,
        dry_run: bool = False,
        timeout_seconds: int = DEFAULT_API_TIMEOUT_SECONDS,
        ready_timeout_seconds: int = DEFAULT_READY_TIMEOUT_SECONDS,
        poll_interval_seconds: float = READY_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the manager.

        Args:
            client: Azure DevOps ServiceEndpointClient.
            project_id: ID of the project that owns the connections.
            project_name: Name of that project.
            tenant_id: Entra ID tenant of the service principals.
            dry_run: Report changes without applying them.
            timeout_seconds: Timeout for a single API call.
            ready_timeout_seconds: Max wait for a new connection to become ready.
            poll_interval_seconds: Delay between readiness checks.
        """
        self._client = client
        self._project_id = project_id
        self._project_name = project_name
        self._tenant_id = tenant_id
        self._dry_run = dry_run
        self._timeout_seconds = timeout_seconds
        self._ready_timeout_seconds = ready_timeout_seconds
        self._poll_interval_seconds = poll_interval_seconds

    @classmethod
    def from_connection(cls, connection: Connection, config: Config) -> ServiceConnectionManager:
        """Build a manager for the configured project.

        Raises:
            AzureDevOpsServiceError: If the project cannot be read.
        """
        core_client = connection.clients_v7_1.get_core_client()
        project = core_client.get_project(config.project)
        return cls(
            connection.clients_v7_1.get_service_endpoint_client(),
            project_id=project.id,
            project_name=project.name,
            tenant_id=config.tenant_id,
            dry_run=config.dry_run,
            timeout_seconds=config.api_timeout_seconds,
            ready_timeout_seconds=config.ready_timeout_seconds,
        )

    async def get(self, name: str) -> ServiceEndpoint | None:
        """Find a service connection by name in the project."""
        endpoints = await run_blocking(
            lambda: self._client.get_service_endpoints_by_names(
                project=self._project_name, endpoint_names=[name]
            ),
            self._timeout_seconds,
            "Service connection lookup",
        )
        for endpoint in endpoints or []:
            if (endpoint.name or "").lower() == name.lower():
                return endpoint
        return None

    def build_endpoint(self, spec: ServiceConnectionSpec) -> ServiceEndpoint:
        """Build the endpoint payload for a definition."""
        parameters = {"tenantid": self._tenant_id}
        if spec.service_principal_id:
            parameters["serviceprincipalid"] = spec.service_principal_id

        return ServiceEndpoint(
            name=spec.name,
            type=ENDPOINT_TYPE,
            url=AZURE_MANAGEMENT_URL,
            description=spec.description,
            owner="library",
            is_shared=False,
            authorization=EndpointAuthorization(
                scheme=AUTHORIZATION_SCHEME,
                parameters=parameters,
            ),
            data={
                "environment": AZURE_ENVIRONMENT,
                "scopeLevel": SCOPE_LEVEL,
                "subscriptionId": spec.subscription_id,
                "subscriptionName": spec.subscription_name,
                "creationMode": spec.creation_mode,
            },
            service_endpoint_project_references=[
                ServiceEndpointProjectReference(
                    name=spec.name,
                    description=spec.description,
                    project_reference=ProjectReference(
                        id=self._project_id, name=self._project_name
                    ),
                )
            ],
        )

    @staticmethod
    def drifted_fields(existing: ServiceEndpoint, spec: ServiceConnectionSpec) -> list[str]:
        """Fields of an existing connection that differ from the definition."""
        data = existing.data or {}
        drifted = []
        if (existing.description or "") != spec.description:
            drifted.append("description")
        if (data.get("subscriptionId") or "").lower() != spec.subscription_id:
            drifted.append("subscriptionId")
        if (data.get("subscriptionName") or "") != spec.subscription_name:
            drifted.append("subscriptionName")
        return drifted

    @staticmethod
    def service_principal_app_id(endpoint: ServiceEndpoint) -> str | None:
        """Application ID of the service principal behind an endpoint."""
        if endpoint.authorization is None:
            return None
        parameters = endpoint.authorization.parameters or {}
        return parameters.get("serviceprincipalid") or None

    async def assert_service_connection(
        self, spec: ServiceConnectionSpec
    ) -> ServiceConnectionState:
        """Ensure a service connection matches its definition.

        In a dry run nothing is written; an absent connection is reported
        with ``app_id=None`` so the caller can substitute a placeholder.

        Raises:
            ServiceConnectionError: If a created connection fails or never
                becomes ready.
            AzureDevOpsServiceError: If an API call fails.
        """
        existing = await self.get(spec.name)

        if existing is None:
            if self._dry_run:
                logger.info(
                    "Dry run: would create service connection",
                    extra={"service_connection": spec.name, "creation_mode": spec.creation_mode},
                )
                return ServiceConnectionState(spec.name, ServiceConnectionAction.PLANNED_CREATE)

            created = await run_blocking(
                lambda: self._client.create_service_endpoint(self.build_endpoint(spec)),
                self._timeout_seconds,
                "Service connection creation",
            )
            logger.info(
                "Created service connection",
                extra={"service_connection": spec.name, "endpoint_id": created.id},
            )
            ready = await self._wait_until_ready(created)
            return ServiceConnectionState(
                spec.name,
                ServiceConnectionAction.CREATED,
                endpoint_id=ready.id,
                app_id=self.service_principal_app_id(ready),
            )

        drifted = self.drifted_fields(existing, spec)
        if not drifted:
            return ServiceConnectionState(
                spec.name,
                ServiceConnectionAction.UNCHANGED,
                endpoint_id=existing.id,
                app_id=self.service_principal_app_id(existing),
            )

        if self._dry_run:
            logger.info(
                "Dry run: would update service connection",
                extra={"service_connection": spec.name, "drifted_fields": drifted},
            )
            return ServiceConnectionState(
                spec.name,
                ServiceConnectionAction.PLANNED_UPDATE,
                endpoint_id=existing.id,
                app_id=self.service_principal_app_id(existing),
                drifted_fields=tuple(drifted),
            )

        existing.description = spec.description
        existing.data = {
            **(existing.data or {}),
            "subscriptionId": spec.subscription_id,
            "subscriptionName": spec.subscription_name,
        }
        updated = await run_blocking(
            lambda: self._client.update_service_endpoint(existing, existing.id),
            self._timeout_seconds,
            "Service connection update",
        )
        logger.info(
            "Updated service connection",
            extra={"service_connection": spec.name, "drifted_fields": drifted},
        )
        return ServiceConnectionState(
            spec.name,
            ServiceConnectionAction.UPDATED,
            endpoint_id=existing.id,
            app_id=self.service_principal_app_id(updated) or self.service_principal_app_id(existing),
            drifted_fields=tuple(drifted),
        )

    async def _wait_until_ready(self, endpoint: ServiceEndpoint) -> ServiceEndpoint:
        """Poll a new service connection until Azure DevOps reports it ready.

        Automatic creation provisions the app registration in the
        background; the service principal ID is only known afterwards.
        """
        start_time = time.monotonic()
        current = endpoint

        while True:
            state = _status_field(current.operation_status, "state")
            if state and state.lower() == "failed":
                message = _status_field(current.operation_status, "statusMessage")
                raise ServiceConnectionError(
                    f"Service connection '{endpoint.name}' failed to provision: {message}"
                )

            if current.is_ready and self.service_principal_app_id(current):
                return current

            if time.monotonic() - start_time >= self._ready_timeout_seconds:
                raise ServiceConnectionError(
                    f"Service connection '{endpoint.name}' not ready "
                    f"after {self._ready_timeout_seconds}s"
                )

            logger.debug(
                "Waiting for service connection to become ready",
                extra={"service_connection": endpoint.name, "state": state},
            )
            await asyncio.sleep(self._poll_interval_seconds)

            endpoint_id = endpoint.id
            current = await run_blocking(
                lambda: self._client.get_service_endpoint_details(
                    project=self._project_name, endpoint_id=endpoint_id
                ),
                self._timeout_seconds,
                "Service connection status check",
            )
