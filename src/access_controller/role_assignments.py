"""Azure RBAC role assignments for service connection principals.

Every assignment is created only after checking that the principal does not
already hold the role at exactly that scope. Assignment names are derived
from principal, role and scope, so a concurrent writer produces a conflict
(409) instead of a duplicate grant.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from azure.core.exceptions import HttpResponseError
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters

from .config import DEFAULT_API_TIMEOUT_SECONDS
from .directory import ServicePrincipal, require_real_principal
from .operations import GrantOutcome, GrantResult, run_blocking
from .security import audit_grant

logger = logging.getLogger(__name__)

PRINCIPAL_TYPE = "ServicePrincipal"


def role_definition_guid(role_definition_id: str) -> str:
    """Return the trailing GUID of a role definition resource ID.

    The same built-in role has a different resource ID prefix at every
    scope; the GUID is what identifies it.
    """
    return role_definition_id.rstrip("/").rsplit("/", 1)[-1].lower()


def assignment_name(scope: str, principal_id: str, role_definition_id: str) -> str:
    """Deterministic role assignment name for (scope, principal, role)."""
    key = f"{scope.lower()}:{principal_id.lower()}:{role_definition_guid(role_definition_id)}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, key))


class RoleAssignmentManager:
    """Create-if-absent role assignments at management group, subscription
    and resource group scope."""

    def __init__(
        self,
        client: AuthorizationManagementClient,
        *,
        dry_run: bool = False,
        timeout_seconds: int = DEFAULT_API_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._dry_run = dry_run
        self._timeout_seconds = timeout_seconds
        self._role_cache: dict[tuple[str, str], Any | None] = {}

    async def find_role_definition(self, scope: str, role_name: str) -> Any | None:
        """Look up a role definition by display name at a scope."""
        key = (scope.lower(), role_name.lower())
        if key in self._role_cache:
            return self._role_cache[key]

        escaped = role_name.replace("'", "''")
        definitions = await run_blocking(
            lambda: list(
                self._client.role_definitions.list(scope, filter=f"roleName eq '{escaped}'")
            ),
            self._timeout_seconds,
            "Role definition lookup",
        )
        definition = next(
            (d for d in definitions if (d.role_name or "").lower() == role_name.lower()),
            None,
        )
        self._role_cache[key] = definition
        return definition

    async def _has_assignment(
        self, scope: str, principal: ServicePrincipal, role_definition_id: str
    ) -> bool:
        assignments = await run_blocking(
            lambda: list(
                self._client.role_assignments.list_for_scope(
                    scope, filter=f"principalId eq '{principal.object_id}'"
                )
            ),
            self._timeout_seconds,
            "Role assignment listing",
        )
        wanted_role = role_definition_guid(role_definition_id)
        for assignment in assignments:
            # list_for_scope also returns inherited and child assignments
            if (assignment.scope or "").lower() != scope.lower():
                continue
            if (assignment.principal_id or "").lower() != principal.object_id.lower():
                continue
            if role_definition_guid(assignment.role_definition_id or "") == wanted_role:
                return True
        return False

    async def assert_role_assignment(
        self,
        scope: str,
        role_name: str,
        principal: ServicePrincipal,
    ) -> GrantResult:
        """Ensure the principal holds a role at a scope.

        A role that does not exist at the scope yields a SKIPPED result with
        a warning. API failures propagate.

        Raises:
            PrincipalNotFoundError: If the principal is synthetic and this
                is not a dry run.
        """
        require_real_principal(principal, self._dry_run)

        definition = await self.find_role_definition(scope, role_name)
        if definition is None:
            warning = f"Role definition '{role_name}' not found at {scope}"
            logger.warning(warning, extra={"scope": scope, "role": role_name})
            return GrantResult(
                kind="role_assignment",
                target=scope,
                grant=role_name,
                outcome=GrantOutcome.SKIPPED,
                warning=warning,
            )

        # A synthetic principal is never sent to ARM, it cannot hold anything yet
        if not principal.synthetic and await self._has_assignment(
            scope, principal, definition.id
        ):
            logger.debug(
                "Role assignment already present",
                extra={"scope": scope, "role": role_name, "principal_id": principal.object_id},
            )
            return GrantResult("role_assignment", scope, role_name, GrantOutcome.EXISTS)

        if self._dry_run:
            logger.info(
                "Dry run: would create role assignment",
                extra={"scope": scope, "role": role_name, "principal_id": principal.object_id},
            )
            result = GrantResult("role_assignment", scope, role_name, GrantOutcome.PLANNED)
            audit_grant(principal.object_id, result)
            return result

        parameters = RoleAssignmentCreateParameters(
            role_definition_id=definition.id,
            principal_id=principal.object_id,
            principal_type=PRINCIPAL_TYPE,
        )
        name = assignment_name(scope, principal.object_id, definition.id)

        try:
            await run_blocking(
                lambda: self._client.role_assignments.create(scope, name, parameters),
                self._timeout_seconds,
                "Role assignment creation",
            )
        except HttpResponseError as e:
            # Role assignment may already exist (409 Conflict) - that's OK
            if e.status_code == 409:
                logger.info(
                    "Role assignment already exists",
                    extra={"scope": scope, "role": role_name},
                )
                return GrantResult("role_assignment", scope, role_name, GrantOutcome.EXISTS)
            logger.error(
                f"Failed to create role assignment {role_name} at {scope}: {e}",
                extra={"status_code": e.status_code},
            )
            raise

        logger.info(
            "Created role assignment",
            extra={"scope": scope, "role": role_name, "principal_id": principal.object_id},
        )
        result = GrantResult("role_assignment", scope, role_name, GrantOutcome.CREATED)
        audit_grant(principal.object_id, result)
        return result
