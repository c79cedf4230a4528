"""Remote URL recovery from an existing metadata store."""

import logging
from pathlib import Path
from typing import List, Optional

from .runner import CommandRunner, git_environment

REMOTE_URL_KEY = "remote.origin.url"

# `git config --get` exits 1 when the key is not set
CONFIG_KEY_MISSING_STATUS = 1


class RemoteResolutionError(Exception):
    """The metadata store exists but its remote could not be read."""

    def __init__(self, git_dir: Path, command: List[str], exit_status: int, detail: str):
        self.git_dir = git_dir
        self.command = command
        self.exit_status = exit_status
        self.detail = detail
        super().__init__(f"failed to get remote URL from {git_dir}: {detail or f'exit status {exit_status}'}")


class RemoteResolver:
    """Reads the configured origin URL of a metadata store."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner
        self.logger = logging.getLogger('pulldeploy.git_sync.remote')

    def resolve(self, git_dir: Path, cancel=None) -> Optional[str]:
        """
        Return the origin URL configured in ``git_dir``.

        Returns None when the store has no origin configured.

        Raises:
            RemoteResolutionError: If git could not read the store
        """
        args = ["config", "--get", REMOTE_URL_KEY]
        result = self.runner.run(
            args,
            working_dir=Path(git_dir).parent,
            env=git_environment(git_dir=git_dir),
            cancel=cancel,
        )

        if result.status == CONFIG_KEY_MISSING_STATUS:
            self.logger.info(f"No remote configured in {git_dir}")
            return None
        if not result.ok:
            raise RemoteResolutionError(git_dir, args, result.status, result.stderr.strip())

        url = result.stdout.strip()
        if not url:
            return None
        self.logger.info(f"Got remote URL from git config: {url}")
        return url


def choose_repository_url(supplied: Optional[str], resolved: Optional[str]) -> Optional[str]:
    """
    Pick the URL for an update.

    The store's configured remote is authoritative; a supplied URL is only
    used when the store has none.
    """
    if resolved:
        return resolved
    if supplied:
        return supplied
    return None
