"""Repository state reconciliation: clone or update a target directory."""

import logging
import threading
from pathlib import Path
from typing import List, Optional, TYPE_CHECKING

from ..dir_lock import DirectoryLockRegistry, get_lock_registry
from ..keys import git_ssh_environment
from .excludes import write_ignore_patterns
from .layout import LayoutInfo, RepositoryLayout, detect_layout
from .remote import RemoteResolutionError, RemoteResolver, choose_repository_url
from .result import (
    AdvisoryWarning,
    FailureKind,
    ReconcileOutcome,
    ReconcileResult,
    create_failure_result,
)
from .runner import CommandCancelled, CommandResult, CommandRunner, git_environment

if TYPE_CHECKING:
    from ..config import Config


def describe_command_failure(result: CommandResult) -> str:
    """Short description of a failed git command for logs and responses."""
    detail = result.stderr.strip().splitlines()
    reason = f"exit status {result.status}"
    if result.timed_out:
        reason = "timed out"
    if detail:
        return f"{reason}: {detail[-1]}"
    return reason


class ReconciliationEngine:
    """
    Keeps a target directory synchronized with its remote repository.

    Each call to :meth:`reconcile` decides between an initial clone and an
    update of an existing working copy:

    - Detect the metadata layout of the target directory
    - Clone when no usable store exists (a URL must be supplied)
    - Otherwise resolve the remote, stash local changes, write ignore
      patterns, ``git pull --rebase`` and drop the stash entry

    Only the clone and the pull can fail the attempt. Stash, stash drop,
    ignore file and directory bookkeeping failures are recorded as
    warnings. Calls for the same directory are serialized.
    """

    def __init__(self, config: "Config", runner: Optional[CommandRunner] = None,
                 lock_registry: Optional[DirectoryLockRegistry] = None):
        """
        Initialize the engine.

        Args:
            config: Daemon configuration (target directory, ignore patterns, keys)
            runner: Command runner used for every git invocation
            lock_registry: Registry providing the per-directory lock
        """
        self.config = config
        self.runner = runner or CommandRunner(timeout=config.command_timeout)
        self.resolver = RemoteResolver(self.runner)
        self.lock_registry = lock_registry or get_lock_registry()
        self.logger = logging.getLogger('pulldeploy.git_sync.engine')

    def reconcile(self, supplied_url: Optional[str] = "", target_dir: Optional[Path] = None,
                  cancel: Optional[threading.Event] = None) -> ReconcileResult:
        """
        Bring ``target_dir`` up to date with its repository.

        Args:
            supplied_url: Repository URL from the trigger; may be empty
            target_dir: Working copy; defaults to the configured app directory
            cancel: Event that aborts the attempt when set

        Returns:
            ReconcileResult with outcome CLONED, UPDATED or FAILED
        """
        target_dir = Path(target_dir if target_dir is not None else self.config.app_dir).expanduser().absolute()
        supplied_url = (supplied_url or "").strip()
        self.logger.info(f"Reconciling {target_dir} with repository URL: {supplied_url or '(none)'}")

        with self.lock_registry.lock(target_dir, self.config.lock_timeout) as acquired:
            if not acquired:
                message = f"another reconciliation of {target_dir} is still running"
                self.logger.warning(message)
                return create_failure_result(FailureKind.BUSY, message, target_dir, repository_url=supplied_url or None)

            try:
                result = self._reconcile_locked(target_dir, supplied_url, cancel)
            except CommandCancelled as e:
                self.logger.warning(f"Reconciliation of {target_dir} cancelled: {e}")
                result = create_failure_result(
                    FailureKind.CANCELLED, str(e), target_dir,
                    repository_url=supplied_url or None,
                    command=e.args_run or None
                )

        if result.success:
            self.logger.info(f"Reconciliation of {target_dir} finished: {result.outcome.value}")
        else:
            self.logger.error(f"Reconciliation of {target_dir} failed ({result.failure.value}): {result.message}")
        return result

    def _separate_git_dir_for(self, target_dir: Path) -> Optional[Path]:
        # The separate metadata directory belongs to the configured app directory only
        if self.config.separate_git_dir is not None and target_dir == self.config.app_dir:
            return self.config.separate_git_dir
        return None

    def _ssh_env(self):
        return git_ssh_environment(self.config.private_key_path)

    @staticmethod
    def _check_cancelled(cancel: Optional[threading.Event], step: str) -> None:
        if cancel is not None and cancel.is_set():
            raise CommandCancelled([], f"cancelled before {step}")

    def _reconcile_locked(self, target_dir: Path, supplied_url: str,
                          cancel: Optional[threading.Event]) -> ReconcileResult:
        layout = detect_layout(target_dir, self._separate_git_dir_for(target_dir))
        warnings: List[AdvisoryWarning] = []
        if not layout.parent_dir_created:
            warnings.append(AdvisoryWarning.PARENT_DIR_FAILED)

        self._check_cancelled(cancel, "clone/update decision")

        if layout.needs_clone:
            return self._clone(layout, supplied_url, warnings, cancel)
        return self._update(layout, supplied_url, warnings, cancel)

    # Clone

    def _clone(self, layout: LayoutInfo, url: str, warnings: List[AdvisoryWarning],
               cancel: Optional[threading.Event]) -> ReconcileResult:
        target_dir = layout.target_dir

        if not url:
            return create_failure_result(
                FailureKind.MISSING_REPOSITORY_URL,
                "cannot clone: repository URL not found",
                target_dir,
                layout=layout.layout.value,
                warnings=warnings
            )

        if layout.populated_in_place:
            return create_failure_result(
                FailureKind.UNMANAGED_CONTENT,
                f"cannot clone into {target_dir}: directory holds files but no git metadata",
                target_dir,
                repository_url=url,
                layout=layout.layout.value,
                warnings=warnings
            )

        if layout.empty_store is not None:
            # An empty store holds nothing; git refuses to clone over it
            try:
                layout.empty_store.rmdir()
                self.logger.info(f"Removed empty git directory {layout.empty_store}")
            except OSError as e:
                self.logger.warning(f"Failed to remove empty git directory {layout.empty_store}: {e}")
                warnings.append(AdvisoryWarning.EMPTY_STORE_REMOVAL_FAILED)

        args = ["clone"]
        if layout.clone_layout is RepositoryLayout.SEPARATED:
            args.append(f"--separate-git-dir={layout.clone_git_dir}")
        args.extend([url, str(target_dir)])

        self.logger.info(f"Attempting to clone from URL: {url}")
        result = self.runner.run(
            args,
            working_dir=target_dir.parent,
            env=self._ssh_env(),
            capture_output=False,
            cancel=cancel
        )
        if not result.ok:
            return create_failure_result(
                FailureKind.CLONE_ERROR,
                f"git clone failed: {describe_command_failure(result)}",
                target_dir,
                repository_url=url,
                layout=layout.clone_layout.value,
                command=result.args,
                exit_status=result.status,
                warnings=warnings
            )

        return ReconcileResult(
            outcome=ReconcileOutcome.CLONED,
            message=f"Repository cloned from {url} into {target_dir}",
            target_dir=target_dir,
            repository_url=url,
            layout=layout.clone_layout.value,
            warnings=warnings
        )

    # Update

    def _resolve_update_url(self, layout: LayoutInfo, supplied_url: str, warnings: List[AdvisoryWarning],
                            cancel: Optional[threading.Event]):
        """Return ``(url, resolved)`` or a failure result."""
        try:
            resolved = self.resolver.resolve(layout.git_dir, cancel=cancel)
        except RemoteResolutionError as e:
            if not supplied_url:
                return create_failure_result(
                    FailureKind.REMOTE_RESOLUTION_ERROR,
                    str(e),
                    layout.target_dir,
                    layout=layout.layout.value,
                    command=e.command,
                    exit_status=e.exit_status,
                    warnings=warnings
                )
            self.logger.warning(f"{e}; using provided repository URL: {supplied_url}")
            warnings.append(AdvisoryWarning.REMOTE_RESOLUTION_FAILED)
            resolved = None

        url = choose_repository_url(supplied_url, resolved)
        if url is None:
            return create_failure_result(
                FailureKind.MISSING_REPOSITORY_URL,
                f"repository URL not found: no remote configured in {layout.git_dir} and none supplied",
                layout.target_dir,
                layout=layout.layout.value,
                warnings=warnings
            )

        if resolved and supplied_url and supplied_url != resolved:
            self.logger.info(f"Ignoring supplied URL {supplied_url}; existing remote {resolved} is authoritative")
        elif resolved:
            self.logger.info(f"Using existing repository URL: {resolved}")
        else:
            self.logger.info(f"Using provided repository URL: {supplied_url}")
        return url, resolved

    def _update(self, layout: LayoutInfo, supplied_url: str, warnings: List[AdvisoryWarning],
                cancel: Optional[threading.Event]) -> ReconcileResult:
        target_dir = layout.target_dir
        git_dir = layout.git_dir

        resolution = self._resolve_update_url(layout, supplied_url, warnings, cancel)
        if isinstance(resolution, ReconcileResult):
            return resolution
        url, resolved = resolution

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self.logger.warning(f"Failed to create working directory {target_dir}: {e}")
            warnings.append(AdvisoryWarning.PARENT_DIR_FAILED)

        env = git_environment(git_dir=git_dir, work_tree=target_dir, extra=self._ssh_env())

        stash_created = self._protect_local_state(target_dir, env, warnings, cancel)

        try:
            self._check_cancelled(cancel, "pull")

            if self.config.git_ignore:
                self.logger.info(f"Git ignore patterns: {self.config.git_ignore}")
                if not write_ignore_patterns(git_dir, self.config.git_ignore, self.config.ignore_mode):
                    warnings.append(AdvisoryWarning.EXCLUDE_WRITE_FAILED)

            # Without a configured remote there is no upstream to track
            pull_args = ["pull", "--rebase"] if resolved else ["pull", "--rebase", url]
            self.logger.info(f"Executing git pull rebase in {target_dir} with GIT_DIR={git_dir}")
            pull_result = self.runner.run(
                pull_args,
                working_dir=target_dir,
                env=env,
                capture_output=False,
                cancel=cancel
            )
        except CommandCancelled:
            self._restore_after_failure(target_dir, git_dir, env, stash_created)
            raise

        if not pull_result.ok:
            restored = self._restore_after_failure(target_dir, git_dir, env, stash_created)
            message = f"git pull rebase failed: {describe_command_failure(pull_result)}"
            if restored is False:
                message += "; local changes could not be restored and remain in the stash"
            elif restored:
                message += "; local changes were restored"
            return create_failure_result(
                FailureKind.INTEGRATE_ERROR,
                message,
                target_dir,
                repository_url=url,
                layout=layout.layout.value,
                command=pull_result.args,
                exit_status=pull_result.status,
                stash_restored=restored,
                warnings=warnings
            )

        self._drop_stash(target_dir, env, stash_created, warnings)

        return ReconcileResult(
            outcome=ReconcileOutcome.UPDATED,
            message=f"Repository {target_dir} updated from {url}",
            target_dir=target_dir,
            repository_url=url,
            layout=layout.layout.value,
            warnings=warnings
        )

    def _stash_ref(self, target_dir: Path, env) -> Optional[str]:
        result = self.runner.run(["rev-parse", "-q", "--verify", "refs/stash"], working_dir=target_dir, env=env)
        if result.ok and result.stdout.strip():
            return result.stdout.strip()
        return None

    def _protect_local_state(self, target_dir: Path, env, warnings: List[AdvisoryWarning],
                             cancel: Optional[threading.Event]) -> bool:
        """
        Stash tracked and untracked changes.

        Returns:
            True if this call created a new stash entry
        """
        before = self._stash_ref(target_dir, env)

        self.logger.info(f"Executing git stash -u in {target_dir}")
        result = self.runner.run(["stash", "-u"], working_dir=target_dir, env=env, cancel=cancel)
        if result.output:
            self.logger.info(f"git stash -u output: {result.output}")
        if not result.ok:
            # Nothing to stash or an unclean tree must not block the update
            self.logger.warning(f"git stash -u warning: {describe_command_failure(result)}")
            warnings.append(AdvisoryWarning.STASH_PROTECT_FAILED)

        after = self._stash_ref(target_dir, env)
        return after is not None and after != before

    def _drop_stash(self, target_dir: Path, env, stash_created: bool, warnings: List[AdvisoryWarning]) -> None:
        """Discard the stash entry created by this cycle; upstream supersedes it."""
        if not stash_created:
            self.logger.debug("No stash entry created in this cycle, nothing to drop")
            return

        self.logger.info(f"Executing git stash drop in {target_dir}")
        result = self.runner.run(["stash", "drop"], working_dir=target_dir, env=env)
        if result.output:
            self.logger.info(f"git stash drop output: {result.output}")
        if not result.ok:
            self.logger.warning(f"git stash drop warning: {describe_command_failure(result)}")
            warnings.append(AdvisoryWarning.STASH_DROP_FAILED)

    def _restore_after_failure(self, target_dir: Path, git_dir: Path, env, stash_created: bool) -> Optional[bool]:
        """
        Best-effort restoration of local changes after a failed pull.

        Returns:
            None if nothing was stashed, otherwise whether the stash was reapplied
        """
        if (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists():
            abort = self.runner.run(["rebase", "--abort"], working_dir=target_dir, env=env)
            if not abort.ok:
                self.logger.warning(f"git rebase --abort failed: {describe_command_failure(abort)}")

        if not stash_created:
            return None

        self.logger.info(f"Restoring stashed local changes in {target_dir}")
        pop = self.runner.run(["stash", "pop"], working_dir=target_dir, env=env)
        if pop.ok:
            return True

        self.logger.error(
            f"git stash pop failed ({describe_command_failure(pop)}); "
            f"local changes remain in the stash of {git_dir}"
        )
        return False
