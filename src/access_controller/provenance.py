"""Run provenance for audit and compliance.

Every reconciliation run is stamped with where its configuration came from
(git commit, branch, repository), which version of the tool applied it and
what it changed. Each individual grant is logged as its own record so that
"who gave this principal Contributor on X?" can be answered from logs alone.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .operations import GrantOutcome, GrantResult

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
TOOL_VERSION = os.environ.get("AZAC_VERSION", "dev")


@dataclass
class GrantSummary:
    """Counts of grant outcomes across a run."""

    created_count: int = 0
    existing_count: int = 0
    planned_count: int = 0
    skipped_count: int = 0

    def add(self, result: GrantResult) -> None:
        if result.outcome is GrantOutcome.CREATED:
            self.created_count += 1
        elif result.outcome is GrantOutcome.EXISTS:
            self.existing_count += 1
        elif result.outcome is GrantOutcome.PLANNED:
            self.planned_count += 1
        else:
            self.skipped_count += 1


@dataclass
class RunProvenance:
    """Provenance record for one reconciliation run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    tool_version: str = TOOL_VERSION
    instance_id: str = ""

    # Git source of truth
    git_commit_sha: str = ""
    git_branch: str = ""
    git_repo: str = ""

    organization: str = ""
    project: str = ""
    dry_run: bool = False

    service_connections: int = 0
    service_connections_changed: int = 0
    grant_summary: GrantSummary = field(default_factory=GrantSummary)
    warning_count: int = 0

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs provenance records to the structured log stream."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")
        self._git_repo = os.environ.get("GIT_REPO", "")
        self._instance_id = os.environ.get("CONTAINER_INSTANCE_ID", "")

    def create_provenance(self, organization: str, project: str, dry_run: bool) -> RunProvenance:
        """Create a new provenance record for a run."""
        return RunProvenance(
            tool_version=TOOL_VERSION,
            instance_id=self._instance_id,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            git_repo=self._git_repo,
            organization=organization,
            project=project,
            dry_run=dry_run,
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record.

        Failed runs are logged at ERROR, runs with skipped grants at WARNING.
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.warning_count > 0:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "project": provenance.project,
                "dry_run": provenance.dry_run,
                "grants_created": provenance.grant_summary.created_count,
                "warning_count": provenance.warning_count,
                "git_commit": provenance.git_commit_sha,
                "tool_version": provenance.tool_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )

    def log_grant(
        self,
        provenance: RunProvenance,
        service_connection: str,
        result: GrantResult,
    ) -> None:
        """Log a single grant outcome and count it."""
        provenance.grant_summary.add(result)
        if result.warning:
            provenance.warning_count += 1

        logger.info(
            "Access grant",
            extra={
                "git_commit": provenance.git_commit_sha,
                "service_connection": service_connection,
                "grant_kind": result.kind,
                "target": result.target,
                "grant": result.grant,
                "outcome": result.outcome.value,
                "dry_run": provenance.dry_run,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
