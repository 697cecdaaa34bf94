"""Application permissions (app role assignments) on Entra ID APIs."""

from __future__ import annotations

import logging
from typing import Any

from msgraph.generated.models.o_data_errors.o_data_error import ODataError

from .directory import DirectoryClient, ServicePrincipal, require_real_principal
from .models import ApiPermission
from .operations import GrantOutcome, GrantResult
from .security import audit_grant

logger = logging.getLogger(__name__)

APPLICATION_MEMBER_TYPE = "Application"


def _is_duplicate_assignment(error: ODataError) -> bool:
    """Graph reports an existing app role assignment as 409 or as a 400
    with an 'already exists' message."""
    if error.response_status_code == 409:
        return True
    message = ""
    if error.error is not None and error.error.message:
        message = error.error.message
    return error.response_status_code == 400 and "already exists" in message.lower()


def find_app_role(api_sp: Any, permission: str) -> Any | None:
    """Find an enabled application app role by its value (e.g. User.Read.All)."""
    for role in api_sp.app_roles or []:
        if (role.value or "").lower() != permission.lower():
            continue
        if role.is_enabled is False:
            continue
        if APPLICATION_MEMBER_TYPE not in (role.allowed_member_types or []):
            continue
        return role
    return None


class ApiPermissionManager:
    """Create-if-absent app role assignments for a service principal."""

    def __init__(self, directory: DirectoryClient, *, dry_run: bool = False) -> None:
        self._directory = directory
        self._dry_run = dry_run

    async def assert_api_permission(
        self,
        principal: ServicePrincipal,
        api_permission: ApiPermission,
    ) -> list[GrantResult]:
        """Ensure the principal holds every listed permission on the API.

        A missing API or permission yields SKIPPED results with a warning.
        """
        require_real_principal(principal, self._dry_run)

        api_sp = await self._directory.find_api(api_permission.api)
        if api_sp is None:
            warning = f"API '{api_permission.api}' not found in the directory"
            logger.warning(warning, extra={"api": api_permission.api})
            return [
                GrantResult(
                    "api_permission",
                    api_permission.api,
                    permission,
                    GrantOutcome.SKIPPED,
                    warning,
                )
                for permission in api_permission.permissions
            ]

        existing: set[tuple[str, str]] = set()
        if not principal.synthetic:
            for assignment in await self._directory.list_app_role_assignments(
                principal.object_id
            ):
                existing.add(
                    (str(assignment.resource_id).lower(), str(assignment.app_role_id).lower())
                )

        results = []
        for permission in api_permission.permissions:
            results.append(
                await self._assert_one(principal, api_permission.api, api_sp, permission, existing)
            )
        return results

    async def _assert_one(
        self,
        principal: ServicePrincipal,
        api_name: str,
        api_sp: Any,
        permission: str,
        existing: set[tuple[str, str]],
    ) -> GrantResult:
        app_role = find_app_role(api_sp, permission)
        if app_role is None:
            warning = f"Application permission '{permission}' not found on API '{api_name}'"
            logger.warning(warning, extra={"api": api_name, "permission": permission})
            return GrantResult(
                "api_permission", api_name, permission, GrantOutcome.SKIPPED, warning
            )

        resource_id = str(api_sp.id).lower()
        app_role_id = str(app_role.id).lower()

        if (resource_id, app_role_id) in existing:
            return GrantResult("api_permission", api_name, permission, GrantOutcome.EXISTS)

        if self._dry_run:
            logger.info(
                "Dry run: would grant API permission",
                extra={
                    "api": api_name,
                    "permission": permission,
                    "principal_id": principal.object_id,
                },
            )
            result = GrantResult("api_permission", api_name, permission, GrantOutcome.PLANNED)
            audit_grant(principal.object_id, result)
            return result

        try:
            await self._directory.create_app_role_assignment(
                resource_object_id=resource_id,
                principal_object_id=principal.object_id,
                app_role_id=app_role_id,
            )
        except ODataError as e:
            if _is_duplicate_assignment(e):
                logger.info(
                    "API permission already granted",
                    extra={"api": api_name, "permission": permission},
                )
                return GrantResult("api_permission", api_name, permission, GrantOutcome.EXISTS)
            raise

        existing.add((resource_id, app_role_id))
        logger.info(
            "Granted API permission",
            extra={"api": api_name, "permission": permission, "principal_id": principal.object_id},
        )
        result = GrantResult("api_permission", api_name, permission, GrantOutcome.CREATED)
        audit_grant(principal.object_id, result)
        return result
