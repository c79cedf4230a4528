"""
Shared helpers for the PullDeploy test suite.

FakeGit stands in for the command runner in state machine tests; the
repository helpers drive a real git binary for integration tests.
"""

import os
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from pulldeploy.config import Config
from pulldeploy.git_sync.runner import CommandCancelled, CommandResult

# Commits and stashes need an identity even on machines without git config
GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Test User",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test User",
    "GIT_COMMITTER_EMAIL": "test@example.com",
}


def create_test_config(temp_dir: Path, **overrides) -> Config:
    """Create a test configuration rooted in a temporary directory."""
    values = dict(
        app_dir=temp_dir / "site",
        ssh_key_path=temp_dir / "keys",
        poll_interval=60.0,
    )
    values.update(overrides)
    return Config(**values)


@dataclass
class RecordedCall:
    args: List[str]
    working_dir: Path
    env: Dict[str, str]
    capture_output: bool


@dataclass
class FakeGit:
    """
    Command runner double that simulates the git commands the engine uses.

    ``fail`` lists command prefixes (e.g. ``"stash -u"``, ``"pull"``) that
    exit with status 1; ``fail_status`` maps prefixes to other statuses.
    """
    remote_url: Optional[str] = None
    fail: Sequence[str] = ()
    fail_status: Dict[str, int] = field(default_factory=dict)
    local_changes: bool = False
    stash_entries: int = 0
    calls: List[RecordedCall] = field(default_factory=list)
    _stashes_created: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def run(self, args, working_dir, env=None, capture_output=True, cancel=None) -> CommandResult:
        args = [str(arg) for arg in args]
        with self._lock:
            self.calls.append(RecordedCall(args, Path(working_dir), dict(env or {}), capture_output))
        if cancel is not None and cancel.is_set():
            raise CommandCancelled(args)

        failures = {prefix: 1 for prefix in self.fail}
        failures.update(self.fail_status)
        for prefix, status in failures.items():
            words = prefix.split()
            if args[:len(words)] == words:
                return CommandResult(args=args, status=status, stderr=f"fatal: simulated {prefix} failure")

        if args[0] == "clone":
            return self._clone(args)
        if args[:2] == ["config", "--get"]:
            if self.remote_url:
                return CommandResult(args=args, status=0, stdout=self.remote_url + "\n")
            return CommandResult(args=args, status=1)
        if args[:1] == ["rev-parse"]:
            if self.stash_entries:
                return CommandResult(args=args, status=0, stdout=f"{self._stashes_created:040d}\n")
            return CommandResult(args=args, status=1)
        if args[:2] == ["stash", "-u"]:
            if not self.local_changes:
                return CommandResult(args=args, status=0, stdout="No local changes to save")
            self.local_changes = False
            self.stash_entries += 1
            self._stashes_created += 1
            return CommandResult(args=args, status=0, stdout="Saved working directory and index state")
        if args[:2] in (["stash", "drop"], ["stash", "pop"]):
            if not self.stash_entries:
                return CommandResult(args=args, status=1, stderr="No stash entries found.")
            self.stash_entries -= 1
            if args[1] == "pop":
                self.local_changes = True
            return CommandResult(args=args, status=0)
        return CommandResult(args=args, status=0)

    def _clone(self, args: List[str]) -> CommandResult:
        separate = [arg for arg in args if arg.startswith("--separate-git-dir=")]
        url, target = args[-2], Path(args[-1])
        target.mkdir(parents=True, exist_ok=True)
        if separate:
            git_dir = Path(separate[0].split("=", 1)[1])
            (target / ".git").write_text(f"gitdir: {git_dir}\n")
        else:
            git_dir = target / ".git"
        git_dir.mkdir(parents=True, exist_ok=True)
        (git_dir / "HEAD").write_text("ref: refs/heads/main\n")
        self.remote_url = url
        return CommandResult(args=args, status=0)

    def commands(self) -> List[str]:
        """Recorded calls as ``"git word word"`` strings, clone/pull URL arguments included."""
        return [" ".join(call.args) for call in self.calls]

    def ran(self, prefix: str) -> bool:
        return any(command.startswith(prefix) for command in self.commands())


def make_metadata_store(git_dir: Path) -> Path:
    """Create a minimal non-empty metadata store directory."""
    git_dir.mkdir(parents=True, exist_ok=True)
    (git_dir / "HEAD").write_text("ref: refs/heads/main\n")
    return git_dir


def run_git(args: List[str], cwd: Path, env: Optional[Dict[str, str]] = None) -> str:
    """Run a real git command for test setup and return its stdout."""
    full_env = dict(os.environ)
    full_env.update(GIT_IDENTITY)
    full_env.update(env or {})
    result = subprocess.run(
        ["git"] + args,
        cwd=cwd,
        env=full_env,
        check=True,
        capture_output=True,
        text=True
    )
    return result.stdout


def create_remote_repository(temp_dir: Path, files: Optional[Dict[str, str]] = None) -> Path:
    """
    Create a bare repository with one commit on ``main``.

    Returns:
        Path to the bare repository (usable as a clone URL)
    """
    remote_dir = temp_dir / "remote_repo.git"
    remote_dir.mkdir(parents=True)
    run_git(["init", "--bare", "-q"], remote_dir)
    run_git(["symbolic-ref", "HEAD", "refs/heads/main"], remote_dir)

    files = files or {"README.md": "# Test Repository\n", "index.html": "<h1>v1</h1>\n"}
    push_commit(remote_dir, temp_dir, files, "Initial commit")
    return remote_dir


def push_commit(remote_dir: Path, temp_dir: Path, files: Dict[str, str], message: str) -> None:
    """Commit ``files`` on top of ``main`` in ``remote_dir``."""
    work_dir = temp_dir / "scratch_clone"
    if work_dir.exists():
        shutil.rmtree(work_dir)
    work_dir.mkdir()

    run_git(["init", "-q"], work_dir)
    run_git(["symbolic-ref", "HEAD", "refs/heads/main"], work_dir)
    run_git(["remote", "add", "origin", str(remote_dir)], work_dir)
    has_history = run_git(["ls-remote", "--heads", "origin", "main"], work_dir).strip()
    if has_history:
        run_git(["pull", "-q", "origin", "main"], work_dir)

    for name, content in files.items():
        path = work_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    run_git(["add", "."], work_dir)
    run_git(["commit", "-q", "-m", message], work_dir)
    run_git(["push", "-q", "origin", "main"], work_dir)
    shutil.rmtree(work_dir)
