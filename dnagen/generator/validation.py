"""Project name and output path validation.

The ``*_problem`` functions return a human-readable reason or ``None`` and
are used by the pydantic validators in :mod:`dnagen.generator.models`. The
``validate_*`` functions raise the matching typed errors for callers that
work outside the models (the CLI, for instance).
"""

from __future__ import annotations

import re
from pathlib import Path, PurePath

from dnagen.errors.types import ProjectNameValidationError, UnsafePathError

MIN_NAME_LENGTH = 3
MAX_NAME_LENGTH = 50

RESERVED_NAMES: frozenset[str] = frozenset(
    {"node_modules", "favicon.ico", "con", "prn", "aux", "nul"}
)

_NAME_CHARS = re.compile(r"^[A-Za-z0-9_-]+$")


def project_name_problem(name: str) -> str | None:
    """Return why *name* is not a valid project name, or ``None``."""
    if len(name) < MIN_NAME_LENGTH:
        return f"must be at least {MIN_NAME_LENGTH} characters long"
    if len(name) > MAX_NAME_LENGTH:
        return f"must be at most {MAX_NAME_LENGTH} characters long"
    if not name[0].isascii() or not name[0].isalpha():
        return "must start with a letter"
    if not _NAME_CHARS.match(name):
        return "may only contain letters, digits, hyphens and underscores"
    if name.lower() in RESERVED_NAMES:
        return f"'{name}' is a reserved name"
    return None


def output_path_problem(path: str | PurePath) -> str | None:
    """Return why *path* is not a safe output path, or ``None``."""
    raw = str(path)
    if "\x00" in raw:
        return "path contains a NUL byte"
    pure = PurePath(raw)
    if not pure.is_absolute():
        return "path must be absolute"
    if ".." in pure.parts:
        return "path must not contain '..' components"
    return None


def validate_project_name(name: str) -> str:
    problem = project_name_problem(name)
    if problem is not None:
        raise ProjectNameValidationError(name, problem)
    return name


def validate_output_path(path: str | PurePath) -> Path:
    problem = output_path_problem(path)
    if problem is not None:
        raise UnsafePathError(str(path), problem)
    return Path(path)
