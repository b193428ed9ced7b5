"""Core modules for goosegate.

This package contains the core functionality:
    - config: Environment-driven gateway configuration
    - paths: Preview root and scope directory resolution
    - logbuffer: Bounded output buffers for job streams
    - jobs: Single-flight job supervisor
    - sanitize: Argument validation for the goose binary
    - repo: Git helpers
    - publish: Branch snapshot publishing
    - watcher: Git change detection and debouncing
    - recipes: Runtime recipe generation
"""

from . import config
from . import jobs
from . import logbuffer
from . import paths
from . import publish
from . import recipes
from . import repo
from . import sanitize
from . import watcher

__all__ = [
    "config",
    "jobs",
    "logbuffer",
    "paths",
    "publish",
    "recipes",
    "repo",
    "sanitize",
    "watcher",
]
