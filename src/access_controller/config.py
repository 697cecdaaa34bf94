"""Configuration management with validation.

Configuration is read from the environment once at startup and validated
before any Azure API is touched.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_API_TIMEOUT_SECONDS = 120
MIN_API_TIMEOUT_SECONDS = 10
MAX_API_TIMEOUT_SECONDS = 900

# Automatic workload identity federation creates the app registration
# asynchronously, so the service connection is polled until it is ready.
DEFAULT_READY_TIMEOUT_SECONDS = 300
MAX_READY_TIMEOUT_SECONDS = 1800
READY_POLL_INTERVAL_SECONDS = 5

# Entra ID replication delay for freshly created service principals
PRINCIPAL_LOOKUP_ATTEMPTS = 6
PRINCIPAL_LOOKUP_INTERVAL_SECONDS = 10

# Security constraints - enforced limits to prevent abuse
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max YAML file
MAX_PROJECT_FILE_SIZE_BYTES = 5 * 1024 * 1024  # 5MB max project file
MAX_GRAPH_QUERY_RESULTS = 1000
MAX_SERVICE_CONNECTION_NAME_LENGTH = 256
MAX_RESOURCE_GROUP_NAME_LENGTH = 90

# Azure DevOps first-party application, used as token audience
AZURE_DEVOPS_RESOURCE_SCOPE = "499b84ac-1321-427f-aa17-267ca6975798/.default"
AZURE_MANAGEMENT_URL = "https://management.azure.com/"

# Input validation patterns
VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_ORGANIZATION_URL_PATTERN = (
    r"^https://(dev\.azure\.com/[A-Za-z0-9][A-Za-z0-9-]{0,49}|"
    r"[A-Za-z0-9][A-Za-z0-9-]{0,49}\.visualstudio\.com)/?$"
)


def is_guid(value: str | None) -> bool:
    """Return True if value is a GUID in canonical form."""
    return bool(value) and re.match(VALID_GUID_PATTERN, value.lower()) is not None


@dataclass(frozen=True)
class Config:
    """Runtime configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    organization_url: str
    project: str
    tenant_id: str

    # Directory holding the *.yml service connection definitions
    config_dir: Path = field(default_factory=lambda: Path("/config"))

    # Optional user-assigned managed identity
    managed_identity_client_id: str | None = None

    # Timing
    api_timeout_seconds: int = DEFAULT_API_TIMEOUT_SECONDS
    ready_timeout_seconds: int = DEFAULT_READY_TIMEOUT_SECONDS

    # Behavior
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.organization_url:
            errors.append("AZURE_DEVOPS_ORGANIZATION_URL is required")
        elif not re.match(VALID_ORGANIZATION_URL_PATTERN, self.organization_url):
            errors.append(
                "AZURE_DEVOPS_ORGANIZATION_URL must be https://dev.azure.com/<org> "
                f"or https://<org>.visualstudio.com: {self.organization_url}"
            )

        if not self.project:
            errors.append("AZURE_DEVOPS_PROJECT is required")

        if not self.tenant_id:
            errors.append("AZURE_TENANT_ID is required")
        elif not is_guid(self.tenant_id):
            errors.append(f"AZURE_TENANT_ID must be a valid GUID: {self.tenant_id}")

        if self.managed_identity_client_id and not is_guid(self.managed_identity_client_id):
            errors.append(
                f"AZURE_CLIENT_ID must be a valid GUID: {self.managed_identity_client_id}"
            )

        if not (MIN_API_TIMEOUT_SECONDS <= self.api_timeout_seconds <= MAX_API_TIMEOUT_SECONDS):
            errors.append(
                f"API_TIMEOUT must be between {MIN_API_TIMEOUT_SECONDS} "
                f"and {MAX_API_TIMEOUT_SECONDS} seconds"
            )

        if not (0 < self.ready_timeout_seconds <= MAX_READY_TIMEOUT_SECONDS):
            errors.append(
                "SERVICE_CONNECTION_READY_TIMEOUT must be between 1 "
                f"and {MAX_READY_TIMEOUT_SECONDS} seconds"
            )

        if not self.config_dir.is_dir():
            errors.append(f"Config directory does not exist: {self.config_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def organization(self) -> str:
        """Organization name extracted from the organization URL."""
        url = self.organization_url.rstrip("/")
        if ".visualstudio.com" in url:
            return url.removeprefix("https://").split(".", 1)[0]
        return url.rsplit("/", 1)[-1]

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Keyword overrides (e.g. from command line options) replace the
        environment values before validation runs.

        Environment Variables:
            AZURE_DEVOPS_ORGANIZATION_URL: Organization URL (https://dev.azure.com/<org>)
            AZURE_DEVOPS_PROJECT: Project that owns the service connections
            AZURE_TENANT_ID: Entra ID tenant of the service principals
            AZURE_CLIENT_ID: Optional user-assigned managed identity client ID
            CONFIG_DIR: Directory with *.yml definitions (default: /config)
            API_TIMEOUT: Timeout for a single API call in seconds (default: 120)
            SERVICE_CONNECTION_READY_TIMEOUT: Max wait for a new service
                connection to become ready in seconds (default: 300)
            DRY_RUN: If "true", report intended changes without applying them
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        values: dict[str, Any] = dict(
            organization_url=os.environ.get("AZURE_DEVOPS_ORGANIZATION_URL", ""),
            project=os.environ.get("AZURE_DEVOPS_PROJECT", ""),
            tenant_id=os.environ.get("AZURE_TENANT_ID", ""),
            config_dir=Path(os.environ.get("CONFIG_DIR", "/config")),
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            api_timeout_seconds=get_int("API_TIMEOUT", DEFAULT_API_TIMEOUT_SECONDS),
            ready_timeout_seconds=get_int(
                "SERVICE_CONNECTION_READY_TIMEOUT", DEFAULT_READY_TIMEOUT_SECONDS
            ),
            dry_run=get_bool("DRY_RUN", False),
        )
        values.update(overrides)
        return cls(**values)
