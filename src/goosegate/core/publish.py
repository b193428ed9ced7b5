"""Branch snapshot publishing.

Each git branch of the scope directory is published as a plain file snapshot
under the preview root:

    <preview_root>/                  # default branch (main)
    <preview_root>/.preview/<slug>/  # every other branch

Publishing clears the target and copies the working tree into it, skipping
``.git``, the gateway state directory and symbolic links. Publishing the
default branch keeps the ``.preview/`` subtree. Clear-then-copy is not atomic;
concurrent publishes of the same branch are only kept apart by the caller's
debouncing.
"""

import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from .errors import GooseGateError
from .paths import PREVIEW_PREFIX, STATE_DIRNAME, ensure_directory, is_subpath
from .repo import (
    RepoError,
    checkout,
    get_current_branch,
    get_head_commit,
    init_repository,
    is_git_repository,
    list_local_branches,
    merge_branch,
    revert_head,
    run_git,
)

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"
SKIP_NAMES = frozenset({".git", STATE_DIRNAME})
HINTS_FILENAME = ".goosehints"

STARTER_HINTS = """\
# Project guidance for goose

This directory is published as a static preview site after every run.

- Keep the site entry point at index.html in the repository root.
- Work on a new branch for every task (for example feat/<short-name>) and
  commit your changes at the end of the run; every branch gets its own preview
  at /.preview/<branch>/.
- The main branch is served at /. Do not push to any remote.
"""


class PathEscapeError(GooseGateError):
    """A computed publish target would land outside the preview root."""

    pass


@dataclass
class Publication:
    """Result of publishing one branch."""
    branch: str
    target_dir: Path
    url: str

    def to_dict(self) -> Dict:
        return {"branch": self.branch, "targetDir": str(self.target_dir), "url": self.url}


def branch_slug(name: str) -> str:
    """Filesystem-safe rendering of a branch name ('feature/x' -> 'feature_x')."""
    return re.sub(r"[^A-Za-z0-9._-]", "_", name)


def clear_directory(path: Path, keep: frozenset = frozenset()) -> None:
    """Remove everything inside ``path`` except top-level names in ``keep``."""
    try:
        entries = list(os.scandir(path))
    except FileNotFoundError:
        return
    for entry in entries:
        if entry.name in keep:
            continue
        if entry.is_dir(follow_symlinks=False):
            shutil.rmtree(entry.path)
        else:
            os.unlink(entry.path)


def copy_tree(src: Path, dest: Path, exclude: Optional[Path] = None) -> int:
    """Copy regular files and directories from ``src`` into ``dest``.

    Skips SKIP_NAMES, symbolic links and ``exclude`` (if it lies inside
    ``src``). Returns the number of files copied.
    """
    ensure_directory(dest)
    copied = 0
    with os.scandir(src) as entries:
        for entry in sorted(entries, key=lambda e: e.name):
            if entry.name in SKIP_NAMES or entry.is_symlink():
                continue
            source = Path(entry.path)
            if exclude is not None and source.resolve() == exclude:
                continue
            target = dest / entry.name
            if entry.is_dir():
                copied += copy_tree(source, target, exclude)
            elif entry.is_file():
                shutil.copy2(source, target)
                copied += 1
    return copied


class BranchPublisher:
    """Publish scope-directory branches into the preview root."""

    def __init__(
        self,
        preview_root: Union[str, Path],
        base_url: str = "http://localhost:3003",
        default_branch: str = DEFAULT_BRANCH,
        env: Optional[Mapping[str, str]] = None,
    ):
        self.preview_root = Path(preview_root).resolve()
        self.base_url = base_url.rstrip("/")
        self.default_branch = default_branch
        self._env = os.environ if env is None else env

    @property
    def previews_dir(self) -> Path:
        return self.preview_root / PREVIEW_PREFIX

    # -- naming ------------------------------------------------------------

    def resolve_target_dir(self, branch: str) -> Path:
        """Directory a branch publishes to.

        Raises:
            PathEscapeError: If the target is not inside the preview root, or a
                non-default branch does not map to a direct child of .preview/.
        """
        if branch == self.default_branch:
            return self.preview_root

        target = self.previews_dir / branch_slug(branch)
        resolved = target.resolve()
        if not is_subpath(self.preview_root, resolved):
            raise PathEscapeError(f"Resolved target {resolved} is outside of preview root {self.preview_root}")
        if resolved.parent != self.previews_dir.resolve():
            raise PathEscapeError(f"Branch {branch!r} does not map to a preview directory")
        return target

    def url_for(self, branch: str) -> str:
        if branch == self.default_branch:
            return f"{self.base_url}/"
        return f"{self.base_url}/{PREVIEW_PREFIX}/{branch_slug(branch)}/"

    def detect_branch(self, scope_dir: Path) -> str:
        """Current branch, else BRANCH_NAME from the environment, else main."""
        branch = get_current_branch(scope_dir)
        if branch:
            return branch
        env_branch = (self._env.get("BRANCH_NAME") or "").strip()
        if env_branch:
            return env_branch
        return self.default_branch

    # -- bootstrap ---------------------------------------------------------

    def ensure_repository(self, scope_dir: Path) -> bool:
        """Turn the scope dir into a git repository on first publish.

        Returns True when a repository was created.
        """
        ensure_directory(scope_dir)
        if is_git_repository(scope_dir):
            return False
        init_repository(scope_dir, self.default_branch)
        hints = scope_dir / HINTS_FILENAME
        if not hints.exists():
            hints.write_text(STARTER_HINTS, encoding="utf-8")
        logger.info("initialized git repository in %s", scope_dir)
        return True

    # -- publishing --------------------------------------------------------

    def publish_current_branch(self, scope_dir: Union[str, Path]) -> Publication:
        """Snapshot the checked-out branch of ``scope_dir``.

        Raises:
            PathEscapeError: If the branch maps outside the preview root.
            RepoError: If bootstrapping the repository fails.
            OSError: On filesystem errors while clearing or copying.
        """
        scope = Path(scope_dir).resolve()
        self.ensure_repository(scope)

        branch = self.detect_branch(scope)
        target_dir = self.resolve_target_dir(branch)

        ensure_directory(self.preview_root)
        ensure_directory(target_dir)
        if not is_subpath(self.preview_root, target_dir):
            raise PathEscapeError(f"Resolved target {target_dir} is outside of preview root")

        keep = frozenset({PREVIEW_PREFIX}) if branch == self.default_branch else frozenset()
        clear_directory(target_dir, keep=keep)
        copied = copy_tree(scope, target_dir, exclude=self.preview_root)

        publication = Publication(branch=branch, target_dir=target_dir, url=self.url_for(branch))
        logger.info("published branch '%s' -> %s (%d files)", branch, target_dir, copied)
        return publication

    def publish_all_branches(self, scope_dir: Union[str, Path]) -> List[Publication]:
        """Check out and publish every local branch, then restore the original.

        Failures are logged and skipped; this never raises for a single branch.
        """
        scope = Path(scope_dir).resolve()
        try:
            self.ensure_repository(scope)
            branches = list_local_branches(scope)
        except (GooseGateError, OSError) as e:
            logger.warning("cannot enumerate branches in %s: %s", scope, e)
            return []

        if not branches:
            # Unborn repository: nothing to check out, publish the tree as-is.
            try:
                return [self.publish_current_branch(scope)]
            except (GooseGateError, OSError) as e:
                logger.warning("publish failed for %s: %s", scope, e)
                return []

        original = get_current_branch(scope)
        # Detached HEAD: return to the same commit, still detached.
        detached_at = None if original else get_head_commit(scope)
        results: List[Publication] = []
        try:
            for branch in branches:
                try:
                    checkout(scope, branch)
                    results.append(self.publish_current_branch(scope))
                except (GooseGateError, OSError) as e:
                    logger.warning("skipping branch '%s': %s", branch, e)
        finally:
            restore = original or detached_at
            if restore:
                try:
                    checkout(scope, restore, detach=original is None)
                except RepoError as e:
                    logger.warning("could not return to '%s': %s", restore, e)
        return results

    def promote_branch(self, scope_dir: Union[str, Path], branch: str) -> Publication:
        """Merge ``branch`` into the default branch and republish it."""
        if branch == self.default_branch:
            raise ValueError(f"cannot promote {self.default_branch} into itself")
        scope = Path(scope_dir).resolve()
        if branch not in list_local_branches(scope):
            raise RepoError(f"unknown branch: {branch}")

        checkout(scope, self.default_branch)
        try:
            merge_branch(scope, branch, message=f"Promote {branch} to {self.default_branch}")
        except RepoError:
            run_git(["merge", "--abort"], cwd=scope, check=False)
            raise
        logger.info("promoted '%s' into '%s'", branch, self.default_branch)
        return self.publish_current_branch(scope)

    def undo_last_promotion(self, scope_dir: Union[str, Path]) -> Publication:
        """Revert the tip of the default branch and republish it."""
        scope = Path(scope_dir).resolve()
        checkout(scope, self.default_branch)
        revert_head(scope)
        logger.info("reverted tip of '%s'", self.default_branch)
        return self.publish_current_branch(scope)

    # -- listing -----------------------------------------------------------

    def list_publications(self) -> List[Dict]:
        """Published snapshots, default branch first."""
        out = [{"name": self.default_branch, "url": "/"}]
        try:
            entries = sorted(os.scandir(self.previews_dir), key=lambda e: e.name)
        except FileNotFoundError:
            return out
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                out.append({"name": entry.name, "url": f"/{PREVIEW_PREFIX}/{entry.name}/"})
        return out
