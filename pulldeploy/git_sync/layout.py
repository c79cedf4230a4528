"""Metadata store layout detection for a target working directory."""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

GIT_DIR_NAME = ".git"
GIT_DIR_SUFFIX = ".git"
GITLINK_PREFIX = "gitdir:"


class RepositoryLayout(Enum):
    """Where the metadata store of a working copy lives."""
    EMBEDDED = "embedded"     # <target>/.git
    SEPARATED = "separated"   # metadata kept outside the target, linked at clone time
    NONE = "none"


@dataclass
class LayoutInfo:
    """Result of inspecting a target directory."""
    layout: RepositoryLayout
    target_dir: Path
    git_dir: Optional[Path]
    is_empty: bool
    populated_in_place: bool
    clone_layout: RepositoryLayout
    clone_git_dir: Path
    parent_dir_created: bool = True

    @property
    def needs_clone(self) -> bool:
        """True when no usable metadata store exists."""
        return self.git_dir is None or self.is_empty

    @property
    def empty_store(self) -> Optional[Path]:
        """Path of an existing but empty store, if one was found."""
        if self.git_dir is not None and self.is_empty:
            return self.git_dir
        return None


def is_directory_empty(path: Path) -> bool:
    """A missing path counts as empty."""
    if not path.exists():
        return True
    if not path.is_dir():
        return False
    return not any(path.iterdir())


def read_gitlink(link_file: Path) -> Optional[Path]:
    """
    Resolve a ``.git`` file of the form ``gitdir: <path>``.

    Separated clones leave such a file in the working copy; relative paths
    are relative to the directory that holds the file.
    """
    logger = logging.getLogger('pulldeploy.git_sync.layout')
    try:
        content = link_file.read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.warning(f"Cannot read git link file {link_file}: {e}")
        return None

    if not content.startswith(GITLINK_PREFIX):
        logger.warning(f"Unrecognised git link file {link_file}")
        return None

    linked = Path(content[len(GITLINK_PREFIX):].strip())
    if not linked.is_absolute():
        linked = link_file.parent / linked
    return linked


def suffixed_git_dir(target_dir: Path) -> Path:
    """``/srv/site`` -> ``/srv/site.git``"""
    return target_dir.with_name(target_dir.name + GIT_DIR_SUFFIX)


def detect_layout(target_dir: Path, separate_git_dir: Optional[Path] = None) -> LayoutInfo:
    """
    Determine which metadata store, if any, belongs to ``target_dir``.

    Candidates are checked in order: the configured separate metadata
    directory, ``<target>/.git`` (a directory, or a link file written by a
    separated clone) and ``<target>.git``. The first one that exists and
    has entries is authoritative. A store that exists with no entries
    (left behind by an interrupted clone) is reported as empty so it is
    cloned again.

    Args:
        target_dir: Working copy directory
        separate_git_dir: Conventional sibling metadata directory, if configured

    Returns:
        LayoutInfo describing the detected store and how a clone should lay it out
    """
    logger = logging.getLogger('pulldeploy.git_sync.layout')
    target_dir = Path(target_dir)

    parent_dir_created = True
    try:
        target_dir.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        # The clone or update that follows reports the real error
        logger.warning(f"Failed to create parent directory {target_dir.parent}: {e}")
        parent_dir_created = False

    if separate_git_dir is not None:
        clone_layout = RepositoryLayout.SEPARATED
        clone_git_dir = Path(separate_git_dir)
    else:
        clone_layout = RepositoryLayout.EMBEDDED
        clone_git_dir = target_dir / GIT_DIR_NAME

    candidates = []
    if separate_git_dir is not None:
        candidates.append((RepositoryLayout.SEPARATED, Path(separate_git_dir)))

    embedded = target_dir / GIT_DIR_NAME
    if embedded.is_file():
        linked = read_gitlink(embedded)
        if linked is not None:
            candidates.append((RepositoryLayout.SEPARATED, linked))
    else:
        candidates.append((RepositoryLayout.EMBEDDED, embedded))

    candidates.append((RepositoryLayout.SEPARATED, suffixed_git_dir(target_dir)))

    first_empty = None
    for layout, git_dir in candidates:
        if not git_dir.is_dir():
            continue
        if is_directory_empty(git_dir):
            logger.info(f"Git directory {git_dir} is empty, will perform git clone")
            if first_empty is None:
                first_empty = (layout, git_dir)
            continue
        logger.debug(f"Found {layout.value} metadata store at {git_dir}")
        return LayoutInfo(
            layout=layout,
            target_dir=target_dir,
            git_dir=git_dir,
            is_empty=False,
            populated_in_place=False,
            clone_layout=clone_layout,
            clone_git_dir=clone_git_dir,
            parent_dir_created=parent_dir_created
        )

    # Content other than an empty store means files we do not own
    populated = False
    if target_dir.is_dir():
        populated = any(
            entry for entry in target_dir.iterdir()
            if first_empty is None or entry != first_empty[1]
        )

    if populated:
        logger.warning(f"Directory {target_dir} exists with files but no git metadata")
    elif first_empty is None:
        logger.info(f"Git directory not found for {target_dir}, will perform git clone")

    return LayoutInfo(
        layout=first_empty[0] if first_empty else RepositoryLayout.NONE,
        target_dir=target_dir,
        git_dir=first_empty[1] if first_empty else None,
        is_empty=first_empty is not None,
        populated_in_place=populated,
        clone_layout=clone_layout,
        clone_git_dir=clone_git_dir,
        parent_dir_created=parent_dir_created
    )
