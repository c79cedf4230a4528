"""Result types for repository reconciliation."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class ReconcileOutcome(Enum):
    """Terminal state of one reconciliation attempt."""
    CLONED = "cloned"
    UPDATED = "updated"
    FAILED = "failed"


class FailureKind(Enum):
    """Kinds of failure that end a reconciliation attempt."""
    MISSING_REPOSITORY_URL = "missing_repository_url"
    CLONE_ERROR = "clone_error"
    INTEGRATE_ERROR = "integrate_error"
    REMOTE_RESOLUTION_ERROR = "remote_resolution_error"
    UNMANAGED_CONTENT = "unmanaged_content"  # Files in target but no metadata store
    BUSY = "busy"                            # Another reconciliation holds the directory
    CANCELLED = "cancelled"


class AdvisoryWarning(Enum):
    """Non-fatal conditions that are logged but never abort reconciliation."""
    PARENT_DIR_FAILED = "parent_dir_failed"
    STASH_PROTECT_FAILED = "stash_protect_failed"
    STASH_DROP_FAILED = "stash_drop_failed"
    EXCLUDE_WRITE_FAILED = "exclude_write_failed"
    EMPTY_STORE_REMOVAL_FAILED = "empty_store_removal_failed"
    REMOTE_RESOLUTION_FAILED = "remote_resolution_failed"


@dataclass
class ReconcileResult:
    """Result of a reconciliation attempt."""
    outcome: ReconcileOutcome
    message: str
    target_dir: Path
    failure: Optional[FailureKind] = None
    repository_url: Optional[str] = None
    layout: Optional[str] = None
    command: Optional[List[str]] = None
    exit_status: Optional[int] = None
    stash_restored: Optional[bool] = None
    warnings: List[AdvisoryWarning] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome is not ReconcileOutcome.FAILED

    def to_dict(self) -> Dict[str, Any]:
        """Convert the result to a JSON-friendly dictionary."""
        result = {
            "outcome": self.outcome.value,
            "message": self.message,
            "target_dir": str(self.target_dir),
            "warnings": [warning.value for warning in self.warnings],
        }
        if self.failure is not None:
            result["failure"] = self.failure.value
        if self.repository_url:
            result["repository_url"] = self.repository_url
        if self.layout:
            result["layout"] = self.layout
        if self.command is not None:
            result["command"] = list(self.command)
        if self.exit_status is not None:
            result["exit_status"] = self.exit_status
        if self.stash_restored is not None:
            result["stash_restored"] = self.stash_restored
        return result


def create_failure_result(
    failure: FailureKind,
    message: str,
    target_dir: Path,
    repository_url: Optional[str] = None,
    layout: Optional[str] = None,
    command: Optional[List[str]] = None,
    exit_status: Optional[int] = None,
    stash_restored: Optional[bool] = None,
    warnings: Optional[List[AdvisoryWarning]] = None
) -> ReconcileResult:
    """
    Helper function to create a failed ReconcileResult.

    Args:
        failure: The kind of failure
        message: Descriptive message about the failure
        target_dir: Working copy the attempt was made against
        repository_url: URL in use when the failure happened, if any
        layout: Detected metadata layout name, if known
        command: git arguments of the command that failed, if any
        exit_status: Exit status of the failed command, if any
        stash_restored: Whether protected local changes were restored
        warnings: Advisory warnings collected before the failure

    Returns:
        ReconcileResult with outcome FAILED
    """
    return ReconcileResult(
        outcome=ReconcileOutcome.FAILED,
        message=message,
        target_dir=target_dir,
        failure=failure,
        repository_url=repository_url,
        layout=layout,
        command=command,
        exit_status=exit_status,
        stash_restored=stash_restored,
        warnings=list(warnings or [])
    )
