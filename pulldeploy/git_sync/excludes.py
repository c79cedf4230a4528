"""Ignore pattern injection into a metadata store's local exclude file."""

import logging
from pathlib import Path
from typing import Iterable, List, Optional

APPEND_MODE = "append"
MANAGED_MODE = "managed"
IGNORE_MODES = (APPEND_MODE, MANAGED_MODE)

APPEND_HEADER = "# Added by PullDeploy GITIGNORE"
MANAGED_BEGIN = "# BEGIN PullDeploy GITIGNORE"
MANAGED_END = "# END PullDeploy GITIGNORE"


def parse_ignore_patterns(value: Optional[str]) -> List[str]:
    """Split a comma-separated pattern list, dropping blanks."""
    if not value:
        return []
    return [pattern.strip() for pattern in value.split(",") if pattern.strip()]


def exclude_file_path(git_dir: Path) -> Path:
    return Path(git_dir) / "info" / "exclude"


def _clean(patterns: Iterable[str]) -> List[str]:
    return [pattern.strip() for pattern in patterns if pattern and pattern.strip()]


def _replace_managed_block(existing: str, block: str) -> str:
    """
    Swap the delimited block in ``existing`` for ``block``, or append it.

    Only the last BEGIN marker counts, and only when an END marker follows
    it. An unterminated BEGIN is left as is and a new block is appended, so
    lines after a stray marker are never removed.
    """
    lines = existing.splitlines()
    begins = [index for index, line in enumerate(lines) if line == MANAGED_BEGIN]
    ends = [index for index, line in enumerate(lines) if line == MANAGED_END]
    begin = begins[-1] if begins else None
    end = next((index for index in ends if begin is not None and index > begin), None)

    if begin is None or end is None:
        prefix = existing
        if prefix and not prefix.endswith("\n"):
            prefix += "\n"
        return prefix + block

    kept = lines[:begin] + block.rstrip("\n").splitlines() + lines[end + 1:]
    return "\n".join(kept) + "\n"


def write_ignore_patterns(git_dir: Path, patterns: Iterable[str], mode: str = APPEND_MODE) -> bool:
    """
    Write ``patterns`` into ``<git_dir>/info/exclude``.

    In append mode a new header and pattern block is added on every call,
    so repeated runs accumulate duplicate blocks. In managed mode a single
    delimited block is rewritten in place and other content is kept.

    Failures are logged and reported through the return value only.

    Returns:
        True if the file was written
    """
    logger = logging.getLogger('pulldeploy.git_sync.excludes')
    patterns = _clean(patterns)
    if not patterns:
        return True

    if mode not in IGNORE_MODES:
        logger.warning(f"Unknown ignore mode {mode!r}, falling back to {APPEND_MODE}")
        mode = APPEND_MODE

    exclude_path = exclude_file_path(git_dir)
    try:
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning(f"Failed to create git info directory: {e}")
        return False

    try:
        if mode == APPEND_MODE:
            with open(exclude_path, "a", encoding="utf-8") as exclude_file:
                exclude_file.write(f"\n{APPEND_HEADER}\n")
                for pattern in patterns:
                    exclude_file.write(pattern + "\n")
        else:
            existing = exclude_path.read_text(encoding="utf-8") if exclude_path.exists() else ""
            block = "\n".join([MANAGED_BEGIN] + patterns + [MANAGED_END]) + "\n"
            updated = _replace_managed_block(existing, block)
            if updated != existing:
                exclude_path.write_text(updated, encoding="utf-8")
    except OSError as e:
        logger.warning(f"Failed to write git exclude file {exclude_path}: {e}")
        return False

    logger.info(f"Added ignore patterns to {exclude_path}")
    return True
