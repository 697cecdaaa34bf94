"""Entra ID (Azure AD) directory access through Microsoft Graph.

Holds the service principal record that flows from the service connection
step into the role and permission fan-out, and the dry-run shim that
replaces it when the service connection does not exist yet.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from kiota_abstractions.base_request_configuration import RequestConfiguration
from msgraph import GraphServiceClient
from msgraph.generated.models.app_role_assignment import AppRoleAssignment
from msgraph.generated.service_principals.service_principals_request_builder import (
    ServicePrincipalsRequestBuilder,
)

from .config import PRINCIPAL_LOOKUP_ATTEMPTS, PRINCIPAL_LOOKUP_INTERVAL_SECONDS, is_guid

logger = logging.getLogger(__name__)

# Namespace for deterministic placeholder identities in dry-run mode
DRY_RUN_NAMESPACE = uuid.UUID("5b1f0b3e-7c55-4f0e-9d8a-2a4c1f6f1d00")

SERVICE_PRINCIPAL_FIELDS = ["id", "appId", "displayName", "appRoles"]


class PrincipalNotFoundError(Exception):
    """Raised when a service connection's service principal cannot be resolved."""

    pass


@dataclass(frozen=True)
class ServicePrincipal:
    """Identity behind a service connection.

    Attributes:
        object_id: Directory object ID (used for role assignments)
        app_id: Application (client) ID
        display_name: Display name
        synthetic: True for the dry-run placeholder, which must never be
            sent to a mutating API
    """

    object_id: str
    app_id: str
    display_name: str
    synthetic: bool = False


def synthetic_service_principal(service_connection_name: str) -> ServicePrincipal:
    """Build the placeholder principal used when a dry run skips creation.

    The GUIDs are derived from the service connection name, so repeated dry
    runs produce the same identifiers.
    """
    return ServicePrincipal(
        object_id=str(uuid.uuid5(DRY_RUN_NAMESPACE, f"{service_connection_name}:object")),
        app_id=str(uuid.uuid5(DRY_RUN_NAMESPACE, f"{service_connection_name}:app")),
        display_name=f"{service_connection_name} (dry run)",
        synthetic=True,
    )


def require_real_principal(principal: ServicePrincipal, dry_run: bool) -> None:
    """Refuse to grant anything to the placeholder principal outside a dry run.

    Raises:
        PrincipalNotFoundError: If a synthetic principal reaches an apply run.
    """
    if principal.synthetic and not dry_run:
        raise PrincipalNotFoundError(
            f"Refusing to grant access to synthetic principal {principal.object_id}"
        )


def _odata_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class DirectoryClient:
    """Thin async wrapper over the Graph service principal endpoints."""

    def __init__(
        self,
        client: GraphServiceClient,
        *,
        lookup_attempts: int = PRINCIPAL_LOOKUP_ATTEMPTS,
        lookup_interval_seconds: float = PRINCIPAL_LOOKUP_INTERVAL_SECONDS,
    ) -> None:
        self._client = client
        self._lookup_attempts = lookup_attempts
        self._lookup_interval_seconds = lookup_interval_seconds

    async def _query_service_principals(self, odata_filter: str) -> list[Any]:
        query_parameters = (
            ServicePrincipalsRequestBuilder.ServicePrincipalsRequestBuilderGetQueryParameters(
                filter=odata_filter,
                select=SERVICE_PRINCIPAL_FIELDS,
            )
        )
        request_configuration = RequestConfiguration(query_parameters=query_parameters)
        response = await self._client.service_principals.get(
            request_configuration=request_configuration
        )
        if response is None or not response.value:
            return []
        return list(response.value)

    async def find_service_principal(self, app_id: str) -> Any | None:
        """Find a service principal by application ID."""
        matches = await self._query_service_principals(f"appId eq {_odata_literal(app_id)}")
        return matches[0] if matches else None

    async def find_api(self, api: str) -> Any | None:
        """Find an API's service principal by application ID or display name.

        Returns None when nothing matches or a display name is ambiguous.
        """
        if is_guid(api):
            return await self.find_service_principal(api)

        matches = await self._query_service_principals(f"displayName eq {_odata_literal(api)}")
        if len(matches) > 1:
            logger.warning(
                "API display name is ambiguous, use its application ID instead",
                extra={"api": api, "matches": len(matches)},
            )
            return None
        return matches[0] if matches else None

    async def resolve_principal(self, app_id: str) -> ServicePrincipal:
        """Resolve the service principal of an application.

        Freshly created app registrations take a while to replicate, so the
        lookup is retried a bounded number of times.

        Raises:
            PrincipalNotFoundError: If the principal never shows up.
        """
        for attempt in range(1, self._lookup_attempts + 1):
            sp = await self.find_service_principal(app_id)
            if sp is not None:
                return ServicePrincipal(
                    object_id=str(sp.id),
                    app_id=str(sp.app_id),
                    display_name=sp.display_name or "",
                )

            if attempt < self._lookup_attempts:
                logger.debug(
                    "Service principal not yet replicated, waiting",
                    extra={"app_id": app_id, "attempt": attempt},
                )
                await asyncio.sleep(self._lookup_interval_seconds)

        raise PrincipalNotFoundError(
            f"Service principal for application {app_id} not found "
            f"after {self._lookup_attempts} attempts"
        )

    async def list_app_role_assignments(self, principal_object_id: str) -> list[Any]:
        """List app role assignments granted to a principal, following paging."""
        builder = self._client.service_principals.by_service_principal_id(
            principal_object_id
        ).app_role_assignments

        assignments: list[Any] = []
        response = await builder.get()
        while response is not None:
            assignments.extend(response.value or [])
            next_link = getattr(response, "odata_next_link", None)
            if not next_link:
                break
            response = await builder.with_url(next_link).get()
        return assignments

    async def create_app_role_assignment(
        self,
        resource_object_id: str,
        principal_object_id: str,
        app_role_id: str,
    ) -> Any:
        """Grant an app role of a resource (API) to a principal."""
        body = AppRoleAssignment(
            principal_id=uuid.UUID(principal_object_id),
            resource_id=uuid.UUID(resource_object_id),
            app_role_id=uuid.UUID(app_role_id),
        )
        return await self._client.service_principals.by_service_principal_id(
            resource_object_id
        ).app_role_assigned_to.post(body)
