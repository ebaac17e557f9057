"""DNA generator configuration.

Centralised, typed settings for the generation pipeline and the recovery
engine. All settings use Pydantic v2 models so they can be validated at
construction time and serialised to/from JSON or environment variables
without boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from dnagen import __version__


_TRUTHY = {"1", "true", "yes", "on"}


class RecoveryConfig(BaseModel):
    """Defaults for the error recovery engine."""

    interactive: bool = Field(default=True, description="Offer manual recovery prompts")
    auto_fix: bool = Field(default=False, description="Run attached auto-fix actions")
    show_detail: bool = Field(default=False, description="Include tracebacks in error output")
    graceful_degradation: bool = Field(
        default=True, description="Continue past network/dependency/low-severity errors"
    )
    max_retries: int = Field(
        default=3, ge=0, description="How many times one error code may be handled before giving up"
    )
    history_limit: int = Field(default=100, ge=1, description="Errors kept in memory")


class CommandConfig(BaseModel):
    """Child process settings for the install and version-control stages."""

    install_timeout: int = Field(default=600, ge=1, description="Package install timeout in seconds")
    vcs_timeout: int = Field(default=60, ge=1, description="Per git command timeout in seconds")
    commit_message: str = Field(default="Initial commit from DNA CLI")


class ResourceConfig(BaseModel):
    """Host preconditions checked during validation.

    ``min_disk_space_mb`` is the fallback used when a template does not
    declare its own minimum.
    """

    min_disk_space_mb: int = Field(default=500, ge=0)


class Config(BaseModel):
    """Global DNA generator configuration.

    Instances are typically created once by the CLI entry point and then
    passed to the pipeline, the stage runner and the recovery engine.
    """

    templates_dir: Path = Field(default=Path("./templates"))
    manifest_name: str = Field(default="dna.config.json")
    tool_version: str = Field(default=__version__)
    log_level: str = Field(default="WARNING")
    log_file: Path | None = Field(default=None)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    commands: CommandConfig = Field(default_factory=CommandConfig)
    resources: ResourceConfig = Field(default_factory=ResourceConfig)

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Parent directories are created.

        Returns:
            The path where the file was written.
        """
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            DNA_TEMPLATES_DIR, DNA_LOG_LEVEL, DNA_LOG_FILE, DNA_DEBUG,
            DNA_MAX_RETRIES, DNA_AUTO_FIX, DNA_MIN_DISK_SPACE_MB,
            DNA_INSTALL_TIMEOUT, DNA_VCS_TIMEOUT.
        """
        debug = os.environ.get("DNA_DEBUG", "").strip().lower() in _TRUTHY

        recovery_kwargs: dict[str, Any] = {"show_detail": debug}
        if os.environ.get("DNA_MAX_RETRIES"):
            recovery_kwargs["max_retries"] = int(os.environ["DNA_MAX_RETRIES"])
        if os.environ.get("DNA_AUTO_FIX"):
            recovery_kwargs["auto_fix"] = os.environ["DNA_AUTO_FIX"].strip().lower() in _TRUTHY

        command_kwargs: dict[str, Any] = {}
        if os.environ.get("DNA_INSTALL_TIMEOUT"):
            command_kwargs["install_timeout"] = int(os.environ["DNA_INSTALL_TIMEOUT"])
        if os.environ.get("DNA_VCS_TIMEOUT"):
            command_kwargs["vcs_timeout"] = int(os.environ["DNA_VCS_TIMEOUT"])

        resource_kwargs: dict[str, Any] = {}
        if os.environ.get("DNA_MIN_DISK_SPACE_MB"):
            resource_kwargs["min_disk_space_mb"] = int(os.environ["DNA_MIN_DISK_SPACE_MB"])

        log_level = "DEBUG" if debug else os.environ.get("DNA_LOG_LEVEL", "WARNING")
        log_file = os.environ.get("DNA_LOG_FILE")

        return cls(
            templates_dir=Path(os.environ.get("DNA_TEMPLATES_DIR", "./templates")),
            log_level=log_level.upper(),
            log_file=Path(log_file) if log_file else None,
            recovery=RecoveryConfig(**recovery_kwargs),
            commands=CommandConfig(**command_kwargs),
            resources=ResourceConfig(**resource_kwargs),
        )
