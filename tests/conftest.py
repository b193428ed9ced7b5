"""Pytest configuration for goosegate tests.

Puts src/ on the import path and provides helpers for building throwaway git
repositories.
"""
import subprocess
import sys
from pathlib import Path

import pytest

SRC_PATH = str(Path(__file__).parent.parent.absolute() / "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def init_repo(path: Path) -> Path:
    """Create a repository on branch main with one commit containing index.html."""
    path.mkdir(parents=True, exist_ok=True)
    init_proc = subprocess.run(["git", "init", "-b", "main"], cwd=path, capture_output=True, text=True)
    if init_proc.returncode != 0:
        git(path, "init")
        git(path, "checkout", "-b", "main")
    git(path, "config", "user.email", "test@example.com")
    git(path, "config", "user.name", "Test")
    (path / "index.html").write_text("<html><body><h1>main</h1></body></html>\n")
    git(path, "add", "index.html")
    git(path, "commit", "-m", "initial")
    return path


@pytest.fixture
def repo(tmp_path):
    return init_repo(tmp_path / "scope")


@pytest.fixture
def preview_root(tmp_path):
    root = tmp_path / "www"
    root.mkdir()
    return root
