"""Error responses for the PullDeploy trigger boundary."""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .git_sync.result import ReconcileResult


class ErrorCategory(Enum):
    """Categories of errors for structured error handling."""
    RECONCILIATION = "reconciliation"
    AUTHENTICATION = "authentication"
    REQUEST = "request"


@dataclass
class ErrorResponse:
    """Standardized error response returned to webhook callers."""
    error: str
    error_code: str
    message: str
    timestamp: str
    category: str
    context: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert error response to dictionary format."""
        result = {
            "error": self.error,
            "error_code": self.error_code,
            "message": self.message,
            "timestamp": self.timestamp,
            "category": self.category
        }
        if self.context:
            result["context"] = self.context
        return result


class ErrorHandler:
    """Builds and logs error responses for failed triggers."""

    def __init__(self):
        self.logger = logging.getLogger('pulldeploy.error_handler')

    def handle_reconcile_failure(self, result: ReconcileResult) -> ErrorResponse:
        """Describe a failed reconciliation for the caller."""
        error_code = result.failure.value.upper() if result.failure else "RECONCILE_FAILED"
        context = {
            "target_dir": str(result.target_dir),
        }
        if result.repository_url:
            context["repository_url"] = result.repository_url
        if result.exit_status is not None:
            context["exit_status"] = result.exit_status
        if result.stash_restored is not None:
            context["stash_restored"] = result.stash_restored

        error_response = ErrorResponse(
            error="Failed to update repository",
            error_code=error_code,
            message=f"Failed to update repository: {result.message}",
            timestamp=datetime.now().isoformat(),
            category=ErrorCategory.RECONCILIATION.value,
            context=context
        )

        self.logger.error(
            f"Error updating repository: {result.message}",
            extra={
                'operation': 'reconcile_error',
                'error_code': error_code,
                'target_dir': str(result.target_dir)
            }
        )

        return error_response

    def handle_request_error(self, error_code: str, message: str,
                             category: ErrorCategory = ErrorCategory.REQUEST) -> ErrorResponse:
        """Describe a rejected request (method, authentication)."""
        error_response = ErrorResponse(
            error="Request rejected",
            error_code=error_code,
            message=message,
            timestamp=datetime.now().isoformat(),
            category=category.value
        )

        self.logger.warning(
            f"Request rejected: {message}",
            extra={
                'operation': 'request_rejected',
                'error_code': error_code
            }
        )

        return error_response


# Initialize global error handler
error_handler = ErrorHandler()
