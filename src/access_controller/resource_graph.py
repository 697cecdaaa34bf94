"""Azure Resource Graph queries for scope resolution.

Role assignments reference management groups and subscriptions by name or
ID. Resource Graph resolves both in one fast query against the
``resourcecontainers`` table, including management groups that are only
known by display name. Resource groups are checked directly against ARM in
their subscription.

SECURITY:
- Query results are bounded to prevent OOM
- User-supplied names are escaped before they are placed in KQL
- All queries have timeouts enforced
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from azure.core.exceptions import AzureError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.resourcegraph.models import (
    QueryRequest,
    QueryRequestOptions,
    ResultFormat,
)

from .config import DEFAULT_API_TIMEOUT_SECONDS, MAX_GRAPH_QUERY_RESULTS
from .operations import run_blocking

logger = logging.getLogger(__name__)

MANAGEMENT_GROUP_TYPE = "microsoft.management/managementgroups"
SUBSCRIPTION_TYPE = "microsoft.resources/subscriptions"


@dataclass(frozen=True)
class ManagementGroupInfo:
    """A management group found in Resource Graph.

    Attributes:
        resource_id: ARM scope, /providers/Microsoft.Management/managementGroups/{name}
        name: Management group ID
        display_name: Display name
    """

    resource_id: str
    name: str
    display_name: str


@dataclass(frozen=True)
class SubscriptionInfo:
    """A subscription visible to the caller."""

    resource_id: str
    subscription_id: str
    name: str


def _kql_literal(value: str) -> str:
    """Quote a value as a KQL string literal."""
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


class ResourceGraphQuerier:
    """Azure Resource Graph client for scope lookups."""

    def __init__(
        self,
        client: ResourceGraphClient,
        timeout_seconds: int = DEFAULT_API_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._timeout_seconds = timeout_seconds

    async def find_management_group(self, name: str) -> ManagementGroupInfo | None:
        """Find a management group by ID or display name.

        An exact ID match wins over a display name match. A display name
        shared by several management groups resolves to None.
        """
        literal = _kql_literal(name)
        query = f"""
        resourcecontainers
        | where type =~ '{MANAGEMENT_GROUP_TYPE}'
        | where name =~ {literal} or tostring(properties.displayName) =~ {literal}
        | project id, name, displayName = tostring(properties.displayName)
        | limit {MAX_GRAPH_QUERY_RESULTS}
        """
        rows = await self._execute_query(query.strip())

        groups = [
            ManagementGroupInfo(
                resource_id=row.get("id", ""),
                name=row.get("name", ""),
                display_name=row.get("displayName", ""),
            )
            for row in rows
        ]

        for group in groups:
            if group.name.lower() == name.lower():
                return group

        if len(groups) > 1:
            logger.warning(
                "Management group display name is ambiguous",
                extra={"management_group": name, "matches": [g.name for g in groups]},
            )
            return None

        return groups[0] if groups else None

    async def find_subscription(self, subscription_id: str) -> SubscriptionInfo | None:
        """Find a subscription the caller can see."""
        query = f"""
        resourcecontainers
        | where type =~ '{SUBSCRIPTION_TYPE}'
        | where subscriptionId =~ {_kql_literal(subscription_id)}
        | project id, subscriptionId, name
        | limit 1
        """
        rows = await self._execute_query(query.strip())
        if not rows:
            return None

        row = rows[0]
        return SubscriptionInfo(
            resource_id=row.get("id", ""),
            subscription_id=row.get("subscriptionId", subscription_id),
            name=row.get("name", ""),
        )

    async def _execute_query(self, query: str) -> list[dict[str, Any]]:
        """Execute a Resource Graph query.

        Raises:
            AzureError: If the query fails.
            TimeoutError: If the query exceeds the timeout.
        """
        request = QueryRequest(
            query=query,
            options=QueryRequestOptions(
                result_format=ResultFormat.OBJECT_ARRAY,
                top=MAX_GRAPH_QUERY_RESULTS,
            ),
        )

        try:
            response = await run_blocking(
                lambda: self._client.resources(request),
                self._timeout_seconds,
                "Resource Graph query",
            )
        except AzureError as e:
            logger.error("Resource Graph query failed", extra={"error": str(e)})
            raise

        if response.data is None:
            return []

        # response.data is a list of dictionaries when using OBJECT_ARRAY format
        if isinstance(response.data, list):
            return response.data

        return []


class ResourceGroupLookup:
    """Resource group existence checks, one ARM client per subscription."""

    def __init__(
        self,
        client_factory: Callable[[str], ResourceManagementClient],
        timeout_seconds: int = DEFAULT_API_TIMEOUT_SECONDS,
    ) -> None:
        self._client_factory = client_factory
        self._timeout_seconds = timeout_seconds
        self._clients: dict[str, ResourceManagementClient] = {}

    def _client(self, subscription_id: str) -> ResourceManagementClient:
        if subscription_id not in self._clients:
            self._clients[subscription_id] = self._client_factory(subscription_id)
        return self._clients[subscription_id]

    async def exists(self, subscription_id: str, resource_group_name: str) -> bool:
        """Check whether a resource group exists in a subscription."""
        client = self._client(subscription_id)
        return await run_blocking(
            lambda: client.resource_groups.check_existence(resource_group_name),
            self._timeout_seconds,
            "Resource group existence check",
        )
