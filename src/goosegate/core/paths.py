"""Path resolution for goosegate.

Directory structure:
    ~/.cache/goosegate/www/          # Preview root (GOOSEGATE_PREVIEW_ROOT)
    ├── index.html ...               # main branch snapshot
    └── .preview/
        └── {branch-slug}/           # one snapshot per other branch

    ./projects/{project}/            # Default scope dir (GOOSE_PROJECTS_DIR)
    └── .goosegate/runtime-recipes/  # Generated run recipes
"""

import os
import re
from pathlib import Path
from typing import Union

import platformdirs

PREVIEW_PREFIX = ".preview"
STATE_DIRNAME = ".goosegate"


def get_cache_dir() -> Path:
    """Get the goosegate cache directory.

    Uses XDG standard paths via platformdirs:
    - Linux: ~/.cache/goosegate
    - macOS: ~/Library/Caches/goosegate
    - Windows: ~/AppData/Local/goosegate/Cache
    """
    return Path(platformdirs.user_cache_dir("goosegate", appauthor=False))


def resolve_preview_root() -> Path:
    """Get the directory served as the preview site.

    Can be overridden with the GOOSEGATE_PREVIEW_ROOT environment variable.
    """
    env_dir = os.environ.get("GOOSEGATE_PREVIEW_ROOT")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return get_cache_dir() / "www"


def get_runtime_recipes_dir(scope_dir: Union[str, Path]) -> Path:
    return Path(scope_dir) / STATE_DIRNAME / "runtime-recipes"


def slugify(name: str, fallback: str = "app") -> str:
    """Make a project name safe for use as a single directory name."""
    slug = re.sub(r"[^A-Za-z0-9._-]+", "_", str(name or "").strip()).strip("._-")
    return slug or fallback


def is_subpath(parent: Union[str, Path], child: Union[str, Path]) -> bool:
    """True if ``child`` resolves to ``parent`` or somewhere below it."""
    parent_resolved = Path(parent).resolve()
    child_resolved = Path(child).resolve()
    return child_resolved == parent_resolved or parent_resolved in child_resolved.parents


def ensure_directory(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path
