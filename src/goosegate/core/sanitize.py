"""Argument validation for the goose binary.

The binary is always spawned without a shell, but every token still passes
through ``sanitize_args`` before it reaches ``JobSupervisor.start``: tokens
carrying shell metacharacters are rejected outright, flags must be on the
allowlist, and interactive-mode flags are refused.
"""

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import GooseGateError

ALLOWED_COMMANDS = frozenset({"run", "recipe", "info", "version", "help", "session"})

ALLOWED_FLAGS = frozenset({
    # run
    "--recipe", "--instructions", "-i", "--text", "-t", "--no-session",
    "--name", "-n", "--resume", "-r", "--path", "-p", "--max-turns",
    "--explain", "--debug", "--provider", "--model", "--params",
    "--sub-recipe", "--with-builtin",
    # session list / export
    "--verbose", "-v", "--format", "-f", "--ascending", "--id", "--output", "-o",
})

# Interactive mode would block forever on a closed stdin.
DISALLOWED_FLAGS = frozenset({"--interactive", "-s"})

_UNSAFE_CHARS = re.compile(r"[`|;&<>$\\]")
_PARAM_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class UnsafeArgumentError(GooseGateError, ValueError):
    """A token was rejected before reaching the subprocess."""

    def __init__(self, message: str, token: str):
        super().__init__(message)
        self.token = token


class UnsafeTokenError(UnsafeArgumentError):
    def __init__(self, token: str):
        super().__init__(f"unsafe token detected: {token}", token)


class FlagNotAllowedError(UnsafeArgumentError):
    def __init__(self, token: str):
        super().__init__(f"flag not allowed: {token}", token)


class FlagDisallowedError(UnsafeArgumentError):
    def __init__(self, token: str):
        super().__init__(f"flag disallowed: {token}", token)


class CommandNotAllowedError(UnsafeArgumentError):
    def __init__(self, command: str):
        super().__init__(f"command not allowed: {command}", command)


class InvalidParamKeyError(UnsafeArgumentError):
    def __init__(self, key: str):
        super().__init__(f"invalid param key: {key}", key)


def sanitize_args(tokens: Optional[Iterable[Any]]) -> List[str]:
    """Validate tokens destined for the goose binary.

    Args:
        tokens: Ordered argument tokens. Non-string entries are dropped.

    Returns:
        The string tokens, in their original order.

    Raises:
        UnsafeTokenError: A token contains a shell metacharacter.
        FlagNotAllowedError: A flag is not on the allowlist.
        FlagDisallowedError: A flag is on the interactive-mode denylist.
    """
    out: List[str] = []
    for token in tokens or ():
        if not isinstance(token, str):
            continue
        if _UNSAFE_CHARS.search(token):
            raise UnsafeTokenError(token)
        if token in DISALLOWED_FLAGS:
            raise FlagDisallowedError(token)
        if token.startswith("-") and token not in ALLOWED_FLAGS:
            raise FlagNotAllowedError(token)
        out.append(token)
    return out


def ensure_allowed_command(command: str) -> str:
    if command not in ALLOWED_COMMANDS:
        raise CommandNotAllowedError(command)
    return command


def build_run_args(
    args: Optional[Iterable[Any]] = None,
    params: Optional[Mapping[str, Any]] = None,
) -> List[str]:
    """Sanitize ``args`` and append one ``--params key=value`` per param."""
    final_args = sanitize_args(args)
    for key, value in (params or {}).items():
        if not isinstance(key, str) or not _PARAM_KEY.match(key):
            raise InvalidParamKeyError(str(key))
        pair = f"{key}={value}"
        if _UNSAFE_CHARS.search(pair):
            raise UnsafeTokenError(pair)
        final_args.extend(["--params", pair])
    return final_args


def describe_policy() -> Dict[str, List[str]]:
    return {
        "commands": sorted(ALLOWED_COMMANDS),
        "allowedFlags": sorted(ALLOWED_FLAGS),
        "disallowedFlags": sorted(DISALLOWED_FLAGS),
    }
