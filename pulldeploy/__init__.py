"""
PullDeploy - keep a working directory in sync with a git repository.

A webhook or a periodic timer triggers reconciliation: the first run clones
the repository, later runs stash local changes and pull with rebase.
"""

__version__ = "1.0.0"
__description__ = "Pull-to-deploy daemon driven by webhooks and polling"

from .server import main

__all__ = ["main"]
