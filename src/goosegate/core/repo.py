"""Git helpers for the scope directory.

Thin wrappers over the git CLI used by the publisher and the watcher.
"""

import logging
import re
import subprocess
from pathlib import Path
from typing import List, Optional, Union

from .errors import GooseGateError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_HEAD_REF = re.compile(r"^ref:\s*(\S+)\s*$")


class RepoError(GooseGateError):
    """Error during git operations."""

    pass


def run_git(
    args: List[str],
    cwd: Optional[PathLike] = None,
    capture: bool = True,
    check: bool = True,
    timeout: float = 300,
) -> subprocess.CompletedProcess:
    """Run a git command.

    Args:
        args: Git command arguments (without 'git' prefix).
        cwd: Working directory. Defaults to current directory.
        capture: Whether to capture output.
        check: Whether to raise on non-zero exit.
        timeout: Seconds before the command is abandoned.

    Returns:
        CompletedProcess instance.

    Raises:
        RepoError: If command fails and check=True.
    """
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd is not None else None,
            capture_output=capture,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise RepoError(f"git {args[0]} timed out after {timeout:g}s") from e
    except FileNotFoundError as e:
        raise RepoError("git is not installed or not in PATH") from e

    if check and result.returncode != 0:
        error_msg = result.stderr.strip() if result.stderr else f"git {args[0]} failed"
        raise RepoError(error_msg)
    return result


def is_git_repository(path: PathLike) -> bool:
    return (Path(path) / ".git").exists()


def get_current_branch(path: PathLike) -> Optional[str]:
    """Name of the checked-out branch, or None (detached HEAD, not a repo)."""
    try:
        result = run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=path, check=False)
    except RepoError:
        return None
    if result.returncode != 0:
        return None
    name = result.stdout.strip()
    if not name or name == "HEAD":
        return None
    return name


def get_head_commit(path: PathLike) -> Optional[str]:
    """Commit hash HEAD points at, or None when it cannot be resolved."""
    try:
        result = run_git(["rev-parse", "HEAD"], cwd=path, check=False, timeout=30)
    except RepoError:
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def list_local_branches(path: PathLike) -> List[str]:
    result = run_git(
        ["for-each-ref", "--format=%(refname:short)", "refs/heads"],
        cwd=path,
    )
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def checkout(path: PathLike, ref: str, detach: bool = False) -> None:
    args = ["checkout", "--detach", ref] if detach else ["checkout", ref]
    run_git(args, cwd=path)


def init_repository(path: PathLike, default_branch: str = "main") -> None:
    """Initialize a repository, naming the default branch when git supports it."""
    result = run_git(["init", "-b", default_branch], cwd=path, check=False)
    if result.returncode != 0:
        # git < 2.28 has no -b
        logger.debug("git init -b unsupported, falling back: %s", result.stderr.strip())
        run_git(["init"], cwd=path)


def merge_branch(path: PathLike, branch: str, message: Optional[str] = None) -> None:
    args = ["merge", "--no-ff", "--no-edit"]
    if message:
        args += ["-m", message]
    run_git(args + [branch], cwd=path)


def is_merge_commit(path: PathLike, rev: str = "HEAD") -> bool:
    result = run_git(["rev-list", "--parents", "-n", "1", rev], cwd=path)
    return len(result.stdout.split()) > 2


def revert_head(path: PathLike) -> None:
    """Revert the tip commit, using the first parent as mainline for merges."""
    args = ["revert", "--no-edit"]
    if is_merge_commit(path):
        args += ["-m", "1"]
    run_git(args + ["HEAD"], cwd=path)


def read_head_ref(git_dir: PathLike) -> Optional[str]:
    """Return the ref HEAD points at (e.g. 'refs/heads/main'), if symbolic."""
    try:
        content = (Path(git_dir) / "HEAD").read_text(encoding="utf-8")
    except OSError:
        return None
    match = _HEAD_REF.match(content.strip())
    return match.group(1) if match else None
