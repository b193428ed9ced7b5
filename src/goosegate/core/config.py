"""Gateway configuration.

Settings come from environment variables (optionally loaded from a sourced
env script). ``validate`` reports problems as a list of messages so the
server can print all of them before refusing to start.
"""

import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .paths import resolve_preview_root, slugify

DEFAULT_PORT = 3003
DEFAULT_LOG_MAX_BYTES = 8_000_000
MIN_LOG_MAX_BYTES = 1024

_TRUTHY = {"1", "true", "yes", "on"}


def resolve_goose_binary(env: Optional[Mapping[str, str]] = None) -> str:
    """Find the goose binary, preferring ~/.local/bin/goose over a bare name."""
    env = os.environ if env is None else env
    binary = env.get("GOOSE_BINARY") or "goose"
    if binary == "goose":
        candidate = Path.home() / ".local" / "bin" / "goose"
        if candidate.exists():
            return str(candidate)
    return binary


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


@dataclass
class GatewayConfig:
    """Runtime configuration for the gateway."""

    scope_dir: Path
    auth_token: str = ""
    port: int = DEFAULT_PORT
    goose_binary: str = "goose"
    max_concurrency: int = 1
    log_max_bytes: int = DEFAULT_LOG_MAX_BYTES
    echo_job_logs: bool = True
    preview_root: Path = field(default_factory=resolve_preview_root)
    recipe_template: Optional[Path] = None

    # Whether the scope dir / project name came from the environment
    scope_dir_explicit: bool = False
    project_name_explicit: bool = False

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "GatewayConfig":
        """Create config from environment variables.

        Scope dir resolution priority:
        1. GOOSE_SCOPE_DIR (direct path to a single project)
        2. GOOSE_PROJECTS_DIR/<PROJECT_NAME> (managed project under a base dir)
        """
        env = os.environ if env is None else env

        projects_dir = env.get("GOOSE_PROJECTS_DIR")
        base_dir = Path(projects_dir).resolve() if projects_dir else Path.cwd().resolve() / "projects"
        project_name = env.get("PROJECT_NAME") or "app"

        scope_dir_raw = env.get("GOOSE_SCOPE_DIR")
        scope_dir = Path(scope_dir_raw) if scope_dir_raw else base_dir / slugify(project_name)

        preview_root_raw = env.get("GOOSEGATE_PREVIEW_ROOT")
        template_raw = env.get("GOOSEGATE_RECIPE_TEMPLATE")

        return cls(
            scope_dir=scope_dir,
            auth_token=env.get("AUTH_TOKEN", ""),
            port=_int_env(env, "PORT", DEFAULT_PORT),
            goose_binary=resolve_goose_binary(env),
            max_concurrency=_int_env(env, "MAX_CONCURRENCY", 1),
            log_max_bytes=_int_env(env, "LOG_MAX_BYTES", DEFAULT_LOG_MAX_BYTES),
            echo_job_logs=str(env.get("ECHO_JOB_LOGS", "true")).strip().lower() in _TRUTHY,
            preview_root=Path(preview_root_raw).expanduser().resolve() if preview_root_raw else resolve_preview_root(),
            recipe_template=Path(template_raw) if template_raw else None,
            scope_dir_explicit=bool(scope_dir_raw),
            project_name_explicit=bool(env.get("PROJECT_NAME")),
        )

    def validate(self) -> List[str]:
        """Return a list of configuration errors (empty when valid)."""
        errors: List[str] = []
        if not self.auth_token:
            errors.append("AUTH_TOKEN is required")
        if not str(self.scope_dir):
            errors.append("scopeDir resolved empty")
        elif not self.scope_dir.is_absolute():
            errors.append("scopeDir must be an absolute path")
        if not self.scope_dir_explicit and not self.project_name_explicit:
            errors.append("PROJECT_NAME is required when GOOSE_SCOPE_DIR is not set")
        if self.max_concurrency < 1:
            errors.append("MAX_CONCURRENCY must be >= 1")
        if self.log_max_bytes < MIN_LOG_MAX_BYTES:
            errors.append(f"LOG_MAX_BYTES must be >= {MIN_LOG_MAX_BYTES}")
        return errors

    def to_public_dict(self) -> Dict[str, Any]:
        """Non-sensitive settings, safe to return over the API."""
        data = asdict(self)
        data.pop("auth_token", None)
        data.pop("scope_dir_explicit", None)
        data.pop("project_name_explicit", None)
        return {
            "scopeDir": str(data["scope_dir"]),
            "port": data["port"],
            "gooseBinary": data["goose_binary"],
            "maxConcurrency": data["max_concurrency"],
            "logMaxBytes": data["log_max_bytes"],
            "echoJobLogs": data["echo_job_logs"],
            "previewRoot": str(data["preview_root"]),
        }
