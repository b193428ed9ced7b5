"""Runtime recipes for headless goose runs.

``goose run`` is always driven through a recipe file so the instruction
never travels on the command line. The recipe is rendered from a template
containing ``<<<INSTRUCTION>>>`` when one is configured, otherwise a default
recipe describing the branch-per-run git workflow is synthesized.
"""

import time
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

from .errors import GooseGateError
from .paths import ensure_directory, get_runtime_recipes_dir
from .sanitize import sanitize_args

PLACEHOLDER = "<<<INSTRUCTION>>>"

DEFAULT_PROMPT = """\
You are Goose running in headless mode. Follow the user instruction faithfully.

User instruction:
{instruction}

Operational requirements (perform automatically unless unsafe):
- If the current directory is not a git repository, initialize one (git init).
- Create and switch to a new feature branch uniquely named for this run (e.g., 'feat/run-<timestamp>').
- Make all code changes on that branch.
- At the end of the run, add all relevant files and commit with a concise message summarizing changes.
- Do not push to any remote.
- If actions would be destructive, explain and skip those actions.
"""


class RecipeError(GooseGateError):
    """Error while preparing a runtime recipe."""

    pass


def default_recipe(instruction: str) -> Dict:
    return {
        "title": "Headless Run",
        "description": "Headless run with git init/branch/commit workflow",
        "prompt": DEFAULT_PROMPT.format(instruction=instruction),
    }


def render_recipe(instruction: str, template_path: Optional[Path] = None) -> str:
    """Render recipe YAML for ``instruction``.

    Raises:
        RecipeError: If the template cannot be read or is not valid YAML.
    """
    if template_path is not None and template_path.exists():
        try:
            template = template_path.read_text(encoding="utf-8")
        except OSError as e:
            raise RecipeError(f"failed to read recipe template: {e}") from e
        # Substitute inside the parsed document so the instruction is quoted by the dumper.
        try:
            document = yaml.safe_load(template) or {}
        except yaml.YAMLError as e:
            raise RecipeError(f"invalid recipe template {template_path}: {e}") from e
        return yaml.safe_dump(_substitute(document, instruction), sort_keys=False, allow_unicode=True)

    return yaml.safe_dump(default_recipe(instruction), sort_keys=False, allow_unicode=True)


def _substitute(node, instruction: str):
    if isinstance(node, str):
        return node.replace(PLACEHOLDER, instruction)
    if isinstance(node, list):
        return [_substitute(item, instruction) for item in node]
    if isinstance(node, dict):
        return {key: _substitute(value, instruction) for key, value in node.items()}
    return node


def write_runtime_recipe(
    scope_dir: Union[str, Path],
    instruction: str,
    template_path: Optional[Path] = None,
) -> Path:
    """Write a recipe for this run and return its path."""
    if not instruction or not instruction.strip():
        raise RecipeError("instruction text is required")
    recipes_dir = ensure_directory(get_runtime_recipes_dir(scope_dir))
    recipe_path = recipes_dir / f"run-{int(time.time() * 1000)}.yaml"
    recipe_path.write_text(render_recipe(instruction, template_path), encoding="utf-8")
    return recipe_path


def headless_run_args(recipe_path: Path) -> List[str]:
    """Arguments for ``goose run`` that execute ``recipe_path`` headlessly."""
    return sanitize_args(["--no-session", "--with-builtin", "developer", "--recipe", str(recipe_path)])
