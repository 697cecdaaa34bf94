"""Pydantic models for service connection definitions.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. ARM scope strings for every level of the fan-out
"""

from __future__ import annotations

import os
import re
from typing import Annotated

from pydantic import BaseModel, Field, field_validator

from .config import MAX_RESOURCE_GROUP_NAME_LENGTH, MAX_SERVICE_CONNECTION_NAME_LENGTH, is_guid

# =============================================================================
# Security policy
# =============================================================================

# SECURITY: Roles that allow granting further access are denied by default
HIGH_PRIVILEGE_ROLES: frozenset[str] = frozenset({
    "Owner",
    "User Access Administrator",
    "Role Based Access Control Administrator",
})

_HIGH_PRIVILEGE_KEYS = frozenset(r.lower() for r in HIGH_PRIVILEGE_ROLES)

# SECURITY: Management groups that cover the whole tenant
ROOT_MG_PATTERNS: tuple[str, ...] = (
    "Tenant Root Group",
    "Root Management Group",
)

VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]+$"


def _flag_enabled(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("true", "1", "yes")


def _validate_roles(roles: list[str]) -> list[str]:
    """Reject duplicate and high-privilege role names."""
    seen: set[str] = set()
    for role in roles:
        if not role.strip():
            raise ValueError("role names must not be empty")
        key = role.strip().lower()
        if key in seen:
            raise ValueError(f"role '{role}' is listed more than once")
        seen.add(key)

        if key in _HIGH_PRIVILEGE_KEYS and not _flag_enabled("ALLOW_HIGH_PRIVILEGE_ROLES"):
            raise ValueError(
                f"Role '{role}' is a high-privilege role and is denied by default. "
                f"Use a more specific role (e.g., 'Contributor', 'Reader') "
                f"or set ALLOW_HIGH_PRIVILEGE_ROLES=true to override."
            )
    return roles


# =============================================================================
# Role assignment targets
# =============================================================================


class ManagementGroupAccess(BaseModel):
    """Roles granted at a management group.

    The name may be the management group ID or its display name.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    roles: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_not_root(cls, v: str) -> str:
        """Deny the tenant root management group unless explicitly allowed."""
        if _flag_enabled("ALLOW_BROAD_RBAC_SCOPES"):
            return v
        for root_pattern in ROOT_MG_PATTERNS:
            if v.strip().lower() == root_pattern.lower():
                raise ValueError(
                    f"Role assignment at root management group '{v}' is denied. "
                    f"Scope to a child management group or subscription instead."
                )
        return v

    @field_validator("roles")
    @classmethod
    def validate_roles(cls, v: list[str]) -> list[str]:
        return _validate_roles(v)


class ResourceGroupAccess(BaseModel):
    """Roles granted at a resource group."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=MAX_RESOURCE_GROUP_NAME_LENGTH)]
    roles: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_RESOURCE_GROUP_PATTERN, v) or v.endswith("."):
            raise ValueError(f"invalid resource group name: {v}")
        return v

    @field_validator("roles")
    @classmethod
    def validate_roles(cls, v: list[str]) -> list[str]:
        return _validate_roles(v)

    def scope(self, subscription_id: str) -> str:
        return f"/subscriptions/{subscription_id}/resourceGroups/{self.name}"


class SubscriptionAccess(BaseModel):
    """Roles granted at a subscription and at its resource groups."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str
    roles: list[str] = Field(default_factory=list)
    resource_groups: list[ResourceGroupAccess] = Field(
        default_factory=list, alias="resourceGroups"
    )

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not is_guid(v):
            raise ValueError(f"subscription id must be a GUID: {v}")
        return v.lower()

    @field_validator("roles")
    @classmethod
    def validate_roles(cls, v: list[str]) -> list[str]:
        return _validate_roles(v)

    @property
    def scope(self) -> str:
        return f"/subscriptions/{self.id}"


class ApiPermission(BaseModel):
    """Application permissions (app roles) on an API.

    ``api`` is the API's application ID or the display name of its
    service principal, e.g. ``Microsoft Graph``.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    api: Annotated[str, Field(min_length=1)]
    permissions: list[str] = Field(default_factory=list)

    @field_validator("permissions")
    @classmethod
    def validate_permissions(cls, v: list[str]) -> list[str]:
        if len({p.lower() for p in v}) != len(v):
            raise ValueError("permissions must be unique")
        return v


# =============================================================================
# Service connection
# =============================================================================


class ServiceConnectionSpec(BaseModel):
    """Desired state of one Azure Resource Manager service connection.

    The connection authenticates with workload identity federation. When
    ``servicePrincipalId`` is set the existing app registration is used
    (manual creation mode), otherwise Azure DevOps creates one.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=MAX_SERVICE_CONNECTION_NAME_LENGTH)]
    description: str = ""
    subscription_id: str = Field(alias="subscriptionId")
    subscription_name: Annotated[str, Field(min_length=1, alias="subscriptionName")]
    service_principal_id: str | None = Field(None, alias="servicePrincipalId")

    management_groups: list[ManagementGroupAccess] = Field(
        default_factory=list, alias="managementGroups"
    )
    subscriptions: list[SubscriptionAccess] = Field(default_factory=list)
    api_permissions: list[ApiPermission] = Field(default_factory=list, alias="apiPermissions")

    @field_validator("subscription_id")
    @classmethod
    def validate_subscription_id(cls, v: str) -> str:
        if not is_guid(v):
            raise ValueError(f"subscriptionId must be a GUID: {v}")
        return v.lower()

    @field_validator("service_principal_id")
    @classmethod
    def validate_service_principal_id(cls, v: str | None) -> str | None:
        if v is not None and not is_guid(v):
            raise ValueError(f"servicePrincipalId must be a GUID: {v}")
        return v.lower() if v else v

    @property
    def creation_mode(self) -> str:
        return "Manual" if self.service_principal_id else "Automatic"

    @property
    def grant_count(self) -> int:
        """Number of individual grants this definition asks for."""
        count = sum(len(mg.roles) for mg in self.management_groups)
        for sub in self.subscriptions:
            count += len(sub.roles)
            count += sum(len(rg.roles) for rg in sub.resource_groups)
        count += sum(len(api.permissions) for api in self.api_permissions)
        return count
