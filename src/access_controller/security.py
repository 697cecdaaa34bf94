"""Credential policy and grant auditing.

The tool runs inside a pipeline agent and authenticates to Azure DevOps,
Microsoft Graph and Azure Resource Manager with that agent's managed
identity. The service connections it creates use workload identity
federation. Neither side ever holds a secret, so a secret showing up in the
environment means someone wired the run up the wrong way.

SECURITY INVARIANTS:
1. No client secret, certificate, password or Azure DevOps PAT in the environment
2. ManagedIdentityCredential is the only credential type handed out
3. Every created or planned grant produces an audit record
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from azure.identity import ManagedIdentityCredential

from .operations import GrantResult

logger = logging.getLogger(__name__)

# Variable -> kind of credential it carries
FORBIDDEN_CREDENTIAL_ENV_VARS: dict[str, str] = {
    "AZURE_CLIENT_SECRET": "service principal secret",
    "AZURE_CLIENT_CERTIFICATE_PATH": "service principal certificate",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD": "service principal certificate",
    "AZURE_USERNAME": "user password",
    "AZURE_PASSWORD": "user password",
    "AZURE_DEVOPS_EXT_PAT": "Azure DevOps personal access token",
}

SECRETLESS_VIOLATION_MESSAGE = """
SECURITY VIOLATION DETECTED

Detected: {detected}

Service connections and the Azure access of their service principals are
managed from a pipeline that authenticates with a managed identity only.
Secret-, certificate-, password- and PAT-based authentication is refused.

RESOLUTION:
  1. Remove the variables listed above from the pipeline and agent
  2. Run the agent with a system- or user-assigned managed identity
  3. Grant that identity access to Azure DevOps, Entra ID and the target scopes

See: https://learn.microsoft.com/azure/active-directory/managed-identities
"""


class SecretlessViolationError(Exception):
    """Raised when a credential is found in the environment.

    Fatal: nothing may be called once this is raised.
    """

    pass


def find_credential_env_vars(environ: Mapping[str, str] | None = None) -> list[str]:
    """Names of forbidden credential variables that are set and non-empty."""
    environ = os.environ if environ is None else environ
    return [name for name in FORBIDDEN_CREDENTIAL_ENV_VARS if environ.get(name)]


def enforce_secretless_architecture() -> None:
    """Refuse to continue when any credential variable is set.

    All offending variables are reported at once, not just the first.

    Raises:
        SecretlessViolationError: If a credential variable is present.
    """
    detected = find_credential_env_vars()
    if detected:
        logger.critical(
            "Secretless architecture violation",
            extra={
                "security_event": "credential_detected",
                "env_vars": detected,
                "action": "startup_blocked",
            },
        )
        raise SecretlessViolationError(
            SECRETLESS_VIOLATION_MESSAGE.format(
                detected=", ".join(
                    f"{name} ({FORBIDDEN_CREDENTIAL_ENV_VARS[name]})" for name in detected
                )
            )
        )

    logger.info(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified", "credential_type": "ManagedIdentity"},
    )


def get_managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """The only way to obtain a credential in this codebase.

    Args:
        client_id: Client ID of a user-assigned managed identity. The
            agent's system-assigned identity is used when omitted.

    Raises:
        SecretlessViolationError: If credential variables are present.
    """
    enforce_secretless_architecture()

    if not client_id:
        logger.info("Using system-assigned managed identity")
        return ManagedIdentityCredential()

    logger.info(
        "Using user-assigned managed identity",
        extra={"client_id": client_id[:8] + "..."},
    )
    return ManagedIdentityCredential(client_id=client_id)


def audit_grant(principal_id: str, result: GrantResult) -> None:
    """Write the audit record for a created or planned grant.

    Records are flagged with ``security_audit`` so a SIEM can pick them out
    of the JSON log stream.
    """
    logger.info(
        f"Security audit: {result.kind}",
        extra={
            "security_audit": True,
            "event_type": result.kind,
            "principal_id": principal_id,
            "target_resource": result.target,
            "action": result.grant,
            "result": result.outcome.value,
        },
    )
