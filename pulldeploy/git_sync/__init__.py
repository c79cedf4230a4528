"""Repository reconciliation for PullDeploy."""

from .engine import ReconciliationEngine
from .layout import LayoutInfo, RepositoryLayout, detect_layout
from .remote import RemoteResolutionError, RemoteResolver
from .result import AdvisoryWarning, FailureKind, ReconcileOutcome, ReconcileResult
from .runner import CommandCancelled, CommandResult, CommandRunner

__all__ = [
    'ReconciliationEngine',
    'LayoutInfo',
    'RepositoryLayout',
    'detect_layout',
    'RemoteResolutionError',
    'RemoteResolver',
    'AdvisoryWarning',
    'FailureKind',
    'ReconcileOutcome',
    'ReconcileResult',
    'CommandCancelled',
    'CommandResult',
    'CommandRunner'
]
