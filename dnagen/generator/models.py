"""Data model for project generation.

Immutable request models (``ProjectConfig``, ``GenerationOptions``) are
pydantic v2 models validated at construction. The per-run state
(``PipelineRun``) and the result (``PipelineResult``) are plain dataclasses
owned by the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dnagen.errors.types import DNAError

from .validation import output_path_problem, project_name_problem


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class PackageManager(str, Enum):
    """Package manager used by the install stage."""
    NONE = "none"
    NPM = "npm"
    YARN = "yarn"
    PNPM = "pnpm"

    @property
    def install_command(self) -> list[str]:
        """Install argv, empty for ``none``."""
        if self is PackageManager.NONE:
            return []
        return [self.value, "install"]


class Stage(str, Enum):
    """The six generation stages, in execution order."""
    VALIDATE = "validate"
    PREPARE_DIRECTORY = "prepare_directory"
    GENERATE_FILES = "generate_files"
    INSTALL_DEPENDENCIES = "install_dependencies"
    INITIALIZE_VCS = "initialize_vcs"
    FINALIZE = "finalize"

    @property
    def number(self) -> int:
        return STAGE_ORDER.index(self) + 1

    @property
    def label(self) -> str:
        return _STAGE_LABELS[self]

    @property
    def fatal(self) -> bool:
        """Fatal stages roll the run back on an unrecovered failure."""
        return self not in (Stage.INSTALL_DEPENDENCIES, Stage.INITIALIZE_VCS)


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.VALIDATE,
    Stage.PREPARE_DIRECTORY,
    Stage.GENERATE_FILES,
    Stage.INSTALL_DEPENDENCIES,
    Stage.INITIALIZE_VCS,
    Stage.FINALIZE,
)

_STAGE_LABELS: dict[Stage, str] = {
    Stage.VALIDATE: "Validating configuration",
    Stage.PREPARE_DIRECTORY: "Preparing project directory",
    Stage.GENERATE_FILES: "Generating project files",
    Stage.INSTALL_DEPENDENCIES: "Installing dependencies",
    Stage.INITIALIZE_VCS: "Initializing git repository",
    Stage.FINALIZE: "Finalizing project",
}


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class Outcome(str, Enum):
    """Final classification of a pipeline run."""
    SUCCESS = "success"
    DEPENDENCY_DEGRADED = "dependency-degraded"
    VALIDATION = "validation"
    GENERATION = "generation"
    FATAL_ROLLED_BACK = "fatal-rolled-back"
    FATAL = "fatal"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES: dict[Outcome, int] = {
    Outcome.SUCCESS: 0,
    Outcome.DEPENDENCY_DEGRADED: 0,
    Outcome.VALIDATION: 2,
    Outcome.GENERATION: 3,
    Outcome.FATAL_ROLLED_BACK: 4,
    Outcome.FATAL: 5,
}


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ProjectConfig(BaseModel):
    """What to generate and where. Immutable once constructed."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Project name")
    output_path: Path = Field(..., description="Absolute target directory")
    template_id: str = Field(..., min_length=1)
    framework_id: str = Field(..., min_length=1)
    module_ids: tuple[str, ...] = Field(default=())
    variables: dict[str, str] = Field(default_factory=dict)
    package_manager: PackageManager = Field(default=PackageManager.NPM)
    skip_install: bool = Field(default=False)
    skip_vcs_init: bool = Field(default=False)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        problem = project_name_problem(value)
        if problem is not None:
            raise ValueError(f"Invalid project name '{value}': {problem}")
        return value

    @field_validator("output_path", mode="before")
    @classmethod
    def _check_output_path(cls, value: Any) -> Any:
        if isinstance(value, (str, Path)):
            problem = output_path_problem(value)
            if problem is not None:
                raise ValueError(f"Unsafe output path '{value}': {problem}")
        return value

    @field_validator("module_ids")
    @classmethod
    def _dedupe_modules(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(dict.fromkeys(value))


class GenerationOptions(BaseModel):
    """How to run the pipeline."""

    model_config = ConfigDict(frozen=True)

    interactive: bool = Field(default=False)
    dry_run: bool = Field(default=False)
    overwrite: bool = Field(default=False)
    backup_on_overwrite: bool = Field(default=True)
    report_progress: bool = Field(default=True)


# ---------------------------------------------------------------------------
# Template and render models
# ---------------------------------------------------------------------------

class TemplateMetadata(BaseModel):
    """Metadata describing one installed template."""
    id: str
    name: str
    type: str
    framework: str
    description: str = ""
    dna_modules: list[str] = Field(default_factory=list, description="Compatible module ids")
    features: list[str] = Field(default_factory=list)
    min_disk_space_mb: Optional[int] = Field(default=None, ge=0)
    path: Optional[Path] = Field(default=None, description="Template source directory")


class RenderRequest(BaseModel):
    template_id: str
    name: str
    type: str
    framework: str
    module_ids: list[str] = Field(default_factory=list)
    output_path: Path
    variables: dict[str, str] = Field(default_factory=dict)


class RenderResult(BaseModel):
    success: bool
    errors: list[str] = Field(default_factory=list)
    files: list[Path] = Field(default_factory=list)


class Manifest(BaseModel):
    """Contents of the ``dna.config.json`` written into every project."""
    template: str
    framework: str
    modules: list[str] = Field(default_factory=list)
    generated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str


# ---------------------------------------------------------------------------
# Run state and result
# ---------------------------------------------------------------------------

_TRANSITIONS: dict[RunStatus, tuple[RunStatus, ...]] = {
    RunStatus.PENDING: (RunStatus.RUNNING,),
    RunStatus.RUNNING: (RunStatus.SUCCEEDED, RunStatus.FAILED),
    RunStatus.FAILED: (RunStatus.ROLLED_BACK,),
    RunStatus.SUCCEEDED: (),
    RunStatus.ROLLED_BACK: (),
}


@dataclass
class PipelineRun:
    """Mutable state for one pipeline execution.

    ``created_paths`` lists every directory this run created, in creation
    order. Rollback only ever touches those paths and the backup.
    """
    output_path: Path
    stage_index: int = 0
    backup_path: Optional[Path] = None
    created_paths: list[Path] = field(default_factory=list)
    status: RunStatus = RunStatus.PENDING
    stages_completed: list[Stage] = field(default_factory=list)

    def _move_to(self, target: RunStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise RuntimeError(
                f"Illegal run transition {self.status.value} -> {target.value}"
            )
        self.status = target

    def start(self) -> None:
        self._move_to(RunStatus.RUNNING)

    def succeed(self) -> None:
        self._move_to(RunStatus.SUCCEEDED)

    def fail(self) -> None:
        self._move_to(RunStatus.FAILED)

    def mark_rolled_back(self) -> None:
        self._move_to(RunStatus.ROLLED_BACK)

    def record_created(self, path: Path) -> None:
        if path not in self.created_paths:
            self.created_paths.append(path)

    @property
    def owns_output(self) -> bool:
        """True when this run created the output directory or backed it up."""
        return self.output_path in self.created_paths or self.backup_path is not None


@dataclass
class PipelineResult:
    """Outcome of one ``GenerationPipeline.run`` call."""
    outcome: Outcome
    status: RunStatus
    output_path: Path
    stages_run: list[Stage] = field(default_factory=list)
    error: Optional[DNAError] = None
    warnings: list[DNAError] = field(default_factory=list)
    backup_path: Optional[Path] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.DEPENDENCY_DEGRADED)

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code

    def summary(self) -> dict[str, str]:
        """Key/value view for the summary table."""
        data = {
            "Outcome": self.outcome.value,
            "Status": self.status.value,
            "Output": str(self.output_path),
            "Stages": ", ".join(s.value for s in self.stages_run) or "none",
        }
        if self.error is not None:
            data["Error"] = f"[{self.error.code}] {self.error.message}"
        if self.warnings:
            data["Warnings"] = ", ".join(w.code for w in self.warnings)
        if self.backup_path is not None:
            data["Backup"] = str(self.backup_path)
        return data
