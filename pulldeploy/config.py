"""Configuration management for the PullDeploy daemon."""

import argparse
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from dotenv import load_dotenv

from .git_sync.excludes import IGNORE_MODES, APPEND_MODE, parse_ignore_patterns

DEFAULT_PORT = 15800
DEFAULT_APP_DIR = Path("/app/public")
DEFAULT_SEPARATE_GIT_DIR = Path("/app/public.git")
DEFAULT_SSH_KEY_PATH = Path("/keys")
DEFAULT_POLL_INTERVAL = 60.0
PRIVATE_KEY_NAME = "id_rsa"


@dataclass
class Config:
    """Configuration class for the PullDeploy daemon with validation and defaults."""

    # Listener
    port: int = DEFAULT_PORT
    secret_key: Optional[str] = None

    # Working copy
    app_dir: Path = field(default_factory=lambda: DEFAULT_APP_DIR)
    separate_git_dir: Optional[Path] = None
    git_ignore: List[str] = field(default_factory=list)
    ignore_mode: str = APPEND_MODE

    # Credentials
    ssh_key_path: Path = field(default_factory=lambda: DEFAULT_SSH_KEY_PATH)
    private_mode: bool = False

    # Timer trigger
    repo_url: Optional[str] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL

    # Concurrency (None waits indefinitely)
    lock_timeout: Optional[float] = None
    command_timeout: Optional[float] = None

    # Logging
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate configuration after initialization."""
        # git runs with changing working directories, so every path must be absolute
        self.app_dir = Path(self.app_dir).expanduser().absolute()
        self.ssh_key_path = Path(self.ssh_key_path).expanduser().absolute()
        if self.separate_git_dir:
            self.separate_git_dir = Path(self.separate_git_dir).expanduser().absolute()
        else:
            self.separate_git_dir = None

        # The default deployment keeps its metadata beside the public directory
        if self.separate_git_dir is None and self.app_dir == DEFAULT_APP_DIR:
            self.separate_git_dir = DEFAULT_SEPARATE_GIT_DIR

        self.git_ignore = [pattern.strip() for pattern in self.git_ignore if pattern and pattern.strip()]

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ValueError(f"Invalid log level: {self.log_level}. Must be one of {valid_log_levels}")
        self.log_level = self.log_level.upper()

        if not 0 < self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}")

        if self.ignore_mode not in IGNORE_MODES:
            raise ValueError(f"Invalid ignore mode: {self.ignore_mode}. Must be one of {list(IGNORE_MODES)}")

        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        if self.lock_timeout is not None and self.lock_timeout < 0:
            raise ValueError("lock_timeout must be non-negative")

        if self.command_timeout is not None and self.command_timeout <= 0:
            raise ValueError("command_timeout must be positive")

    @property
    def private_key_path(self) -> Path:
        """Deploy key used for SSH remotes."""
        return self.ssh_key_path / PRIVATE_KEY_NAME

    @property
    def public_key_path(self) -> Path:
        return self.ssh_key_path / f"{PRIVATE_KEY_NAME}.pub"

    @property
    def app_parent_dir(self) -> Path:
        """Directory that holds the working copy (a trailing ``public`` is stripped)."""
        if self.app_dir.name == "public":
            return self.app_dir.parent
        return self.app_dir

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.secret_key)


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pulldeploy",
        description="Keep a working directory in sync with a git repository via webhook or polling."
    )
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port to listen for deploy requests")
    parser.add_argument("--app-dir", default=str(DEFAULT_APP_DIR), help="Directory to perform git pull rebase")
    parser.add_argument("--secret-key", default="", help="Secret key for API validation")
    parser.add_argument("--ssh-key-path", default=str(DEFAULT_SSH_KEY_PATH), help="Path to store SSH keys")
    return parser


def load_configuration(argv: Optional[Sequence[str]] = None) -> Config:
    """Load configuration from command-line flags and environment variables."""
    load_dotenv()  # Load .env file if it exists
    args = build_argument_parser().parse_args(argv)

    try:
        secret_key = os.getenv("DEPLOY_KEY") or args.secret_key or None
        separate_git_dir = os.getenv("PULLDEPLOY_SEPARATE_GIT_DIR")

        config = Config(
            port=args.port,
            secret_key=secret_key,
            app_dir=Path(args.app_dir),
            separate_git_dir=Path(separate_git_dir) if separate_git_dir else None,
            git_ignore=parse_ignore_patterns(os.getenv("GITIGNORE")),
            ignore_mode=os.getenv("PULLDEPLOY_IGNORE_MODE", APPEND_MODE).lower(),
            ssh_key_path=Path(args.ssh_key_path),
            private_mode=os.getenv("PRIVATE", "") == "true",
            repo_url=os.getenv("GIT_REPOURL") or None,
            poll_interval=float(os.getenv("PULLDEPLOY_POLL_INTERVAL", str(DEFAULT_POLL_INTERVAL))),
            lock_timeout=_optional_float(os.getenv("PULLDEPLOY_LOCK_TIMEOUT")),
            command_timeout=_optional_float(os.getenv("PULLDEPLOY_COMMAND_TIMEOUT")),
            log_level=os.getenv("PULLDEPLOY_LOG_LEVEL", "INFO").upper()
        )
    except (ValueError, TypeError) as e:
        raise ValueError(f"Configuration error: {e}")

    if config.git_ignore:
        logging.getLogger('pulldeploy.config').info(f"Git ignore patterns: {config.git_ignore}")
    return config


def validate_configuration(config: Config) -> List[str]:
    """Validate configuration and return any errors or warnings."""
    errors = []

    if config.private_mode:
        if not config.secret_key:
            errors.append(
                "ERROR: Secret key is required in PRIVATE mode. "
                "Set it via DEPLOY_KEY environment variable or --secret-key flag"
            )
    else:
        if not config.repo_url:
            errors.append(
                "ERROR: GIT_REPOURL is required in non-PRIVATE mode. "
                "Set it via GIT_REPOURL environment variable"
            )
        if not config.secret_key:
            errors.append("WARNING: No DEPLOY_KEY provided. Webhook functionality will be disabled.")

    if config.repo_url and not config.repo_url.startswith(("http://", "https://", "git@", "ssh://", "file://", "/")):
        errors.append(f"WARNING: Git repository URL may be invalid: {config.repo_url}")

    if config.private_mode and config.repo_url:
        errors.append("WARNING: GIT_REPOURL is ignored for polling in PRIVATE mode")

    return errors
