"""
Git command execution for PullDeploy.

Commands are started through GitPython's ``Git.execute`` with
``as_process=True`` so both output streams can be drained concurrently by
``handle_process_output`` while the process runs.
"""

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

from git.cmd import Git, handle_process_output
from git.exc import GitCommandNotFound

# Status reported when the git binary (or the working directory) is missing
COMMAND_NOT_FOUND_STATUS = 127


class CommandCancelled(Exception):
    """Raised when a command is cancelled before or while running."""

    def __init__(self, args: Sequence[str], message: Optional[str] = None):
        self.args_run = list(args)
        super().__init__(message or f"git {' '.join(self.args_run)} cancelled")


@dataclass
class CommandResult:
    """Outcome of a single git invocation."""
    args: List[str]
    status: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.status == 0

    @property
    def output(self) -> str:
        """stdout followed by stderr, stripped."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


@dataclass
class _StreamCollector:
    """Collects lines from one stream, optionally logging each one."""
    name: str
    logger: logging.Logger
    stream_to_log: bool
    lines: List[str] = field(default_factory=list)

    def __call__(self, line: Union[str, bytes]) -> None:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.rstrip("\r\n")
        self.lines.append(line)
        if self.stream_to_log and line:
            self.logger.info(f"git {self.name}: {line}")

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


class CommandRunner:
    """
    Runs the git binary with an argument list, working directory and
    environment overrides, and reports its exit status and output.

    Calls block until the process exits. A ``timeout`` (seconds) kills
    processes that run longer; ``None`` waits indefinitely.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self.logger = logging.getLogger('pulldeploy.git_sync.runner')

    def run(
        self,
        args: Sequence[str],
        working_dir: Union[str, Path],
        env: Optional[Mapping[str, str]] = None,
        capture_output: bool = True,
        cancel: Optional[threading.Event] = None
    ) -> CommandResult:
        """
        Run ``git <args>`` in ``working_dir``.

        Args:
            args: git arguments, without the executable
            working_dir: Directory the command runs in
            env: Environment variables merged over the process environment
            capture_output: When False, every output line is also logged as it arrives
            cancel: Event that aborts the command when set

        Returns:
            CommandResult with exit status and collected output

        Raises:
            CommandCancelled: If ``cancel`` is set before or during the run
        """
        args = [str(arg) for arg in args]
        if cancel is not None and cancel.is_set():
            raise CommandCancelled(args)

        command = [Git.GIT_PYTHON_GIT_EXECUTABLE or "git"] + args
        self.logger.debug(f"Executing git {' '.join(args)} in {working_dir}")

        # Git() falls back to the current directory when cwd is unusable
        if not Path(working_dir).is_dir():
            message = f"working directory {working_dir} does not exist"
            self.logger.error(f"Unable to start git {' '.join(args)}: {message}")
            return CommandResult(args=args, status=COMMAND_NOT_FOUND_STATUS, stderr=message)

        try:
            process = Git(str(working_dir)).execute(
                command,
                as_process=True,
                env=dict(env or {}),
                start_new_session=True,
            )
        except GitCommandNotFound as e:
            self.logger.error(f"Unable to start git {' '.join(args)}: {e}")
            return CommandResult(args=args, status=COMMAND_NOT_FOUND_STATUS, stderr=str(e))

        stdout = _StreamCollector("stdout", self.logger, not capture_output)
        stderr = _StreamCollector("stderr", self.logger, not capture_output)

        finished = threading.Event()
        timed_out = threading.Event()
        cancelled = threading.Event()
        watcher = threading.Thread(
            target=self._watch,
            args=(process.proc, finished, cancel, timed_out, cancelled),
            daemon=True,
        )
        watcher.start()

        try:
            handle_process_output(process, stdout, stderr, decode_streams=True)
            status = process.proc.wait()
        finally:
            finished.set()
            watcher.join()

        if cancelled.is_set():
            raise CommandCancelled(args)

        result = CommandResult(
            args=args,
            status=status,
            stdout=stdout.text,
            stderr=stderr.text,
            timed_out=timed_out.is_set(),
        )
        if result.timed_out:
            self.logger.error(f"git {' '.join(args)} killed after {self.timeout}s")
        return result

    def _watch(self, proc, finished: threading.Event, cancel: Optional[threading.Event],
               timed_out: threading.Event, cancelled: threading.Event) -> None:
        """Terminate ``proc`` on cancellation or timeout."""
        elapsed = 0.0
        interval = 0.1
        while not finished.wait(interval):
            elapsed += interval
            if cancel is not None and cancel.is_set():
                cancelled.set()
                self._terminate(proc)
                return
            if self.timeout is not None and elapsed >= self.timeout:
                timed_out.set()
                self._terminate(proc)
                return

    def _terminate(self, proc) -> None:
        """Signal git and its helpers (ssh, remote helpers), which share its session."""
        if proc.poll() is not None:
            return
        try:
            _signal_group(proc, signal.SIGTERM)
            proc.wait(timeout=5)
        except OSError as e:
            self.logger.warning(f"Failed to terminate git process {proc.pid}: {e}")
        except subprocess.TimeoutExpired:
            _signal_group(proc, signal.SIGKILL)


def _signal_group(proc, sig: int) -> None:
    # Children inherit the output pipes and keep them open after git exits
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def git_environment(git_dir: Optional[Path] = None, work_tree: Optional[Path] = None,
                    extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Build the environment overrides that point git at a metadata store."""
    env: Dict[str, str] = dict(extra or {})
    if git_dir is not None:
        env["GIT_DIR"] = str(git_dir)
    if work_tree is not None:
        env["GIT_WORK_TREE"] = str(work_tree)
    return env
