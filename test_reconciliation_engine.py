#!/usr/bin/env python3
"""
Test suite for the reconciliation state machine.

Git is replaced by a scripted runner so every branch (clone, update,
advisory failures, restoration, locking and cancellation) can be driven
deterministically. Real git behaviour is covered in
test_reconciliation_integration.py.
"""

import os
import sys
import tempfile
import threading
from pathlib import Path

# Add the pulldeploy package to the path
sys.path.insert(0, str(Path(__file__).parent))

from pulldeploy.dir_lock import DirectoryLockRegistry
from pulldeploy.git_sync import ReconciliationEngine
from pulldeploy.git_sync.excludes import APPEND_HEADER, exclude_file_path
from pulldeploy.git_sync.result import AdvisoryWarning, FailureKind, ReconcileOutcome
from git_test_helpers import FakeGit, create_test_config, make_metadata_store

REPO_URL = "https://example.test/repo.git"
SSH_URL = "git@example.test:org/repo.git"


def create_engine(config, fake: FakeGit) -> ReconciliationEngine:
    return ReconciliationEngine(config, runner=fake, lock_registry=DirectoryLockRegistry())


def test_clone_into_absent_directory():
    """An absent target is cloned from the supplied URL."""
    print("Testing clone into absent directory")
    print("-" * 40)

    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        fake = FakeGit()

        result = create_engine(config, fake).reconcile(REPO_URL)

        assert result.success, result.message
        assert result.outcome is ReconcileOutcome.CLONED
        assert result.layout == "embedded"
        assert result.repository_url == REPO_URL

        assert fake.commands() == [f"clone {REPO_URL} {config.app_dir}"]
        clone_call = fake.calls[0]
        assert clone_call.working_dir == config.app_dir.parent, "clone runs in the parent directory"
        assert clone_call.capture_output is False, "clone output is streamed"
        assert (config.app_dir / ".git").is_dir()

        print("  ✓ Clone executed once with the supplied URL")
        print("  ✓ Clone output streamed to the log")


def test_relative_target_dir_made_absolute():
    """Clone and update receive absolute paths for a relative target."""
    with tempfile.TemporaryDirectory() as temp_dir:
        temp_path = Path(temp_dir)
        config = create_test_config(temp_path)
        fake = FakeGit()
        previous_cwd = os.getcwd()
        os.chdir(temp_path)
        try:
            engine = create_engine(config, fake)
            expected = Path.cwd() / "srv" / "blog"

            result = engine.reconcile(REPO_URL, target_dir=Path("srv/blog"))
            assert result.outcome is ReconcileOutcome.CLONED, result.message
            assert result.target_dir == expected
            assert fake.calls[0].args[-1] == str(expected), "clone target must be absolute"

            result = engine.reconcile("", target_dir=Path("srv/blog"))
            assert result.outcome is ReconcileOutcome.UPDATED, result.message
            pull_call = [call for call in fake.calls if call.args[0] == "pull"][0]
            assert pull_call.env["GIT_DIR"] == str(expected / ".git")
            assert pull_call.env["GIT_WORK_TREE"] == str(expected)
        finally:
            os.chdir(previous_cwd)

        print("  ✓ Relative target resolved against the current directory")


def test_clone_without_url_fails():
    """No URL and no store is MISSING_REPOSITORY_URL and runs no git command."""
    print("Testing clone without URL")
    print("-" * 40)

    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        fake = FakeGit()

        result = create_engine(config, fake).reconcile("")

        assert not result.success
        assert result.outcome is ReconcileOutcome.FAILED
        assert result.failure is FailureKind.MISSING_REPOSITORY_URL
        assert result.message == "cannot clone: repository URL not found"
        assert fake.calls == [], "no git command should run"
        assert not config.app_dir.exists(), "target should not be created"

        print("  ✓ Missing URL rejected before any git command")


def test_separated_clone_and_update():
    """The configured separate metadata directory is used for clone and update."""
    print("Testing separated layout")
    print("-" * 40)

    with tempfile.TemporaryDirectory() as temp_dir:
        temp_path = Path(temp_dir)
        separate = temp_path / "site.git"
        config = create_test_config(temp_path, separate_git_dir=separate)
        fake = FakeGit()
        engine = create_engine(config, fake)

        result = engine.reconcile(REPO_URL)
        assert result.outcome is ReconcileOutcome.CLONED
        assert result.layout == "separated"
        assert fake.calls[0].args[:2] == ["clone", f"--separate-git-dir={separate}"]

        result = engine.reconcile(REPO_URL)
        assert result.outcome is ReconcileOutcome.UPDATED, result.message
        assert result.layout == "separated"
        pull_call = [call for call in fake.calls if call.args[0] == "pull"][0]
        assert pull_call.env["GIT_DIR"] == str(separate)
        assert pull_call.env["GIT_WORK_TREE"] == str(config.app_dir)

        print("  ✓ Clone uses --separate-git-dir")
        print("  ✓ Update addresses the separate store via GIT_DIR")


def test_update_uses_existing_remote():
    """With an empty supplied URL the store's remote is used and pull tracks upstream."""
    print("Testing update with existing remote")
    print("-" * 40)

    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        make_metadata_store(config.app_dir / ".git")
        fake = FakeGit(remote_url=SSH_URL)

        result = create_engine(config, fake).reconcile("")

        assert result.outcome is ReconcileOutcome.UPDATED, result.message
        assert result.repository_url == SSH_URL
        assert "pull --rebase" in fake.commands()
        assert not fake.ran("clone")
        assert fake.commands()[0] == "config --get remote.origin.url"

        print("  ✓ Existing remote resolved")
        print("  ✓ Pull runs without an explicit URL")


def test_existing_remote_wins_over_supplied_url():
    print("Testing conflicting URLs")
    print("-" * 40)

    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        make_metadata_store(config.app_dir / ".git")
        fake = FakeGit(remote_url=SSH_URL)

        result = create_engine(config, fake).reconcile("https://other.test/repo.git")

        assert result.outcome is ReconcileOutcome.UPDATED
        assert result.repository_url == SSH_URL, "store remote is authoritative"
        assert not any("other.test" in command for command in fake.commands())

        print("  ✓ Supplied URL ignored when the store has a remote")


def test_update_with_supplied_url_when_no_remote():
    """A store without origin pulls from the supplied URL explicitly."""
    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        make_metadata_store(config.app_dir / ".git")
        fake = FakeGit()

        result = create_engine(config, fake).reconcile(REPO_URL)

        assert result.outcome is ReconcileOutcome.UPDATED
        assert f"pull --rebase {REPO_URL}" in fake.commands()

        print("  ✓ Pull given the supplied URL when no remote is configured")


def test_update_without_any_url_fails():
    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        make_metadata_store(config.app_dir / ".git")
        fake = FakeGit()

        result = create_engine(config, fake).reconcile("")

        assert result.failure is FailureKind.MISSING_REPOSITORY_URL
        assert not fake.ran("pull")
        assert not fake.ran("stash")

        print("  ✓ Update without any URL fails before touching the tree")


def test_remote_resolution_error():
    """An unreadable store fails without a supplied URL and warns with one."""
    print("Testing remote resolution errors")
    print("-" * 40)

    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        make_metadata_store(config.app_dir / ".git")

        fake = FakeGit(fail_status={"config --get": 128})
        result = create_engine(config, fake).reconcile("")
        assert result.failure is FailureKind.REMOTE_RESOLUTION_ERROR
        assert result.exit_status == 128
        assert not fake.ran("pull")

        fake = FakeGit(fail_status={"config --get": 128})
        result = create_engine(config, fake).reconcile(REPO_URL)
        assert result.outcome is ReconcileOutcome.UPDATED
        assert AdvisoryWarning.REMOTE_RESOLUTION_FAILED in result.warnings
        assert f"pull --rebase {REPO_URL}" in fake.commands()

        print("  ✓ Resolution failure without URL is fatal")
        print("  ✓ Resolution failure with URL falls back to the supplied URL")


def test_update_command_sequence():
    """Stash, exclude write and pull happen in order, and the new stash is dropped."""
    print("Testing update command sequence")
    print("-" * 40)

    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir), git_ignore=["*.log", "node_modules"])
        git_dir = make_metadata_store(config.app_dir / ".git")
        fake = FakeGit(remote_url=REPO_URL, local_changes=True)

        result = create_engine(config, fake).reconcile(REPO_URL)

        assert result.outcome is ReconcileOutcome.UPDATED, result.message
        assert result.warnings == []
        assert fake.commands() == [
            "config --get remote.origin.url",
            "rev-parse -q --verify refs/stash",
            "stash -u",
            "rev-parse -q --verify refs/stash",
            "pull --rebase",
            "stash drop",
        ]
        assert fake.stash_entries == 0, "stash entry created this cycle should be dropped"
        assert "node_modules" in exclude_file_path(git_dir).read_text()

        print("  ✓ stash -u, pull --rebase, stash drop in order")
        print("  ✓ Ignore patterns written to info/exclude")


def test_no_drop_when_nothing_stashed():
    """A stash entry that predates the cycle is left alone."""
    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        make_metadata_store(config.app_dir / ".git")
        fake = FakeGit(remote_url=REPO_URL, stash_entries=1)

        result = create_engine(config, fake).reconcile("")

        assert result.outcome is ReconcileOutcome.UPDATED
        assert not fake.ran("stash drop"), "pre-existing stash must not be dropped"
        assert fake.stash_entries == 1

        print("  ✓ Pre-existing stash entries preserved")


def test_stash_failure_is_advisory():
    print("Testing advisory stash failures")
    print("-" * 40)

    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        make_metadata_store(config.app_dir / ".git")

        fake = FakeGit(remote_url=REPO_URL, fail=["stash -u"])
        result = create_engine(config, fake).reconcile("")
        assert result.outcome is ReconcileOutcome.UPDATED
        assert AdvisoryWarning.STASH_PROTECT_FAILED in result.warnings
        assert fake.ran("pull --rebase"), "pull still runs after stash failure"

        fake = FakeGit(remote_url=REPO_URL, local_changes=True, fail=["stash drop"])
        result = create_engine(config, fake).reconcile("")
        assert result.outcome is ReconcileOutcome.UPDATED
        assert AdvisoryWarning.STASH_DROP_FAILED in result.warnings

        print("  ✓ stash -u failure does not abort the update")
        print("  ✓ stash drop failure does not abort the update")


def test_exclude_failure_is_advisory():
    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir), git_ignore=["*.log"])
        git_dir = make_metadata_store(config.app_dir / ".git")
        (git_dir / "info").write_text("not a directory")
        fake = FakeGit(remote_url=REPO_URL)

        result = create_engine(config, fake).reconcile("")

        assert result.outcome is ReconcileOutcome.UPDATED
        assert AdvisoryWarning.EXCLUDE_WRITE_FAILED in result.warnings

        print("  ✓ Exclude write failure recorded as warning")


def test_pull_failure_restores_stash():
    """A failed pull reapplies the changes stashed this cycle."""
    print("Testing pull failure")
    print("-" * 40)

    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        git_dir = make_metadata_store(config.app_dir / ".git")
        (git_dir / "rebase-merge").mkdir()
        fake = FakeGit(remote_url=REPO_URL, local_changes=True, fail=["pull"])

        result = create_engine(config, fake).reconcile("")

        assert result.outcome is ReconcileOutcome.FAILED
        assert result.failure is FailureKind.INTEGRATE_ERROR
        assert result.exit_status == 1
        assert result.command == ["pull", "--rebase"]
        assert result.stash_restored is True
        assert fake.ran("rebase --abort"), "interrupted rebase should be aborted"
        assert fake.ran("stash pop")
        assert not fake.ran("stash drop")
        assert fake.local_changes, "local changes should be back in the tree"
        assert fake.stash_entries == 0

        print("  ✓ INTEGRATE_ERROR reported with exit status")
        print("  ✓ Rebase aborted and stash reapplied")


def test_pull_failure_with_failed_restore():
    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        make_metadata_store(config.app_dir / ".git")
        fake = FakeGit(remote_url=REPO_URL, local_changes=True, fail=["pull", "stash pop"])

        result = create_engine(config, fake).reconcile("")

        assert result.failure is FailureKind.INTEGRATE_ERROR
        assert result.stash_restored is False
        assert "remain in the stash" in result.message
        assert fake.stash_entries == 1, "changes stay in the stash"

        print("  ✓ Failed restore reported, stash kept")


def test_pull_failure_without_stash():
    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        make_metadata_store(config.app_dir / ".git")
        fake = FakeGit(remote_url=REPO_URL, fail=["pull"])

        result = create_engine(config, fake).reconcile("")

        assert result.failure is FailureKind.INTEGRATE_ERROR
        assert result.stash_restored is None
        assert not fake.ran("stash pop")

        print("  ✓ Nothing to restore when nothing was stashed")


def test_clone_failure():
    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        fake = FakeGit(fail=["clone"])

        result = create_engine(config, fake).reconcile(REPO_URL)

        assert result.failure is FailureKind.CLONE_ERROR
        assert result.exit_status == 1
        assert "simulated clone failure" in result.message

        print("  ✓ Clone failure reported with exit status")


def test_empty_store_is_recloned():
    """An empty store left by an interrupted clone is removed and cloned again."""
    print("Testing empty store re-clone")
    print("-" * 40)

    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        (config.app_dir / ".git").mkdir(parents=True)
        fake = FakeGit()

        result = create_engine(config, fake).reconcile(REPO_URL)

        assert result.outcome is ReconcileOutcome.CLONED, result.message
        assert result.warnings == []
        assert fake.ran("clone")

        print("  ✓ Empty store replaced by a fresh clone")


def test_unmanaged_content_is_refused():
    """Files without metadata are never cloned over."""
    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        config.app_dir.mkdir(parents=True)
        (config.app_dir / "index.html").write_text("<h1>manual</h1>")
        fake = FakeGit()

        result = create_engine(config, fake).reconcile(REPO_URL)

        assert result.failure is FailureKind.UNMANAGED_CONTENT
        assert fake.calls == []
        assert (config.app_dir / "index.html").read_text() == "<h1>manual</h1>"

        print("  ✓ Populated directory without metadata left untouched")


def test_append_mode_accumulates_per_cycle():
    """Append mode writes one block per update cycle."""
    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir), git_ignore=["*.log"])
        git_dir = make_metadata_store(config.app_dir / ".git")
        engine = create_engine(config, FakeGit(remote_url=REPO_URL))

        for _ in range(3):
            assert engine.reconcile("").outcome is ReconcileOutcome.UPDATED

        content = exclude_file_path(git_dir).read_text()
        assert content.count(APPEND_HEADER) == 3

        print("  ✓ Three update cycles leave three ignore blocks")


def test_busy_directory():
    """A held directory lock turns into BUSY after the lock timeout."""
    print("Testing concurrent reconciliation")
    print("-" * 40)

    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir), lock_timeout=0.1)
        registry = DirectoryLockRegistry()
        fake = FakeGit()
        engine = ReconciliationEngine(config, runner=fake, lock_registry=registry)

        directory_lock = registry.get(config.app_dir)
        assert directory_lock.acquire()
        try:
            result = engine.reconcile(REPO_URL)
        finally:
            directory_lock.release()

        assert result.failure is FailureKind.BUSY
        assert fake.calls == [], "no git command while another attempt holds the lock"

        result = engine.reconcile(REPO_URL)
        assert result.outcome is ReconcileOutcome.CLONED, "lock released after the first attempt"

        print("  ✓ Second attempt reports BUSY")
        print("  ✓ Lock available again afterwards")


def test_concurrent_triggers_are_serialized():
    """Two simultaneous triggers produce one clone and one update."""
    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        fake = FakeGit()
        engine = create_engine(config, fake)
        results = []

        def trigger():
            results.append(engine.reconcile(REPO_URL))

        threads = [threading.Thread(target=trigger) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        outcomes = sorted(result.outcome.value for result in results)
        assert outcomes == ["cloned", "updated"], outcomes
        assert sum(1 for command in fake.commands() if command.startswith("clone")) == 1

        print("  ✓ Exactly one clone for two simultaneous triggers")


def test_cancelled_before_start():
    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        fake = FakeGit()
        cancel = threading.Event()
        cancel.set()

        result = create_engine(config, fake).reconcile(REPO_URL, cancel=cancel)

        assert result.failure is FailureKind.CANCELLED
        assert fake.calls == []

        print("  ✓ Cancelled attempt runs no git command")


def test_result_to_dict():
    with tempfile.TemporaryDirectory() as temp_dir:
        config = create_test_config(Path(temp_dir))
        make_metadata_store(config.app_dir / ".git")
        fake = FakeGit(remote_url=REPO_URL, fail=["pull", "stash -u"])

        data = create_engine(config, fake).reconcile("").to_dict()

        assert data["outcome"] == "failed"
        assert data["failure"] == "integrate_error"
        assert data["exit_status"] == 1
        assert data["command"] == ["pull", "--rebase"]
        assert data["warnings"] == ["stash_protect_failed"]
        assert "stash_restored" not in data

        print("  ✓ Result serializes failure details")


def run_all_tests():
    """Run all reconciliation engine tests."""
    print("Reconciliation Engine Tests")
    print("=" * 50)

    tests = [
        test_clone_into_absent_directory,
        test_relative_target_dir_made_absolute,
        test_clone_without_url_fails,
        test_separated_clone_and_update,
        test_update_uses_existing_remote,
        test_existing_remote_wins_over_supplied_url,
        test_update_with_supplied_url_when_no_remote,
        test_update_without_any_url_fails,
        test_remote_resolution_error,
        test_update_command_sequence,
        test_no_drop_when_nothing_stashed,
        test_stash_failure_is_advisory,
        test_exclude_failure_is_advisory,
        test_pull_failure_restores_stash,
        test_pull_failure_with_failed_restore,
        test_pull_failure_without_stash,
        test_clone_failure,
        test_empty_store_is_recloned,
        test_unmanaged_content_is_refused,
        test_append_mode_accumulates_per_cycle,
        test_busy_directory,
        test_concurrent_triggers_are_serialized,
        test_cancelled_before_start,
        test_result_to_dict,
    ]

    passed = 0
    failed = 0

    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            failed += 1
            print(f"  ✗ {test.__name__} failed with exception: {e}")

    print("\n" + "=" * 50)
    print(f"Test Results: {passed} passed, {failed} failed")
    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
