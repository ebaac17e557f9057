"""Typed error taxonomy for project generation.

Every failure the pipeline reports is a ``DNAError``: a stable ``code``, a
category, a severity, an optional human suggestion and an optional
zero-argument ``auto_fix`` action. Errors are created at the point of
failure and are not modified afterwards.
"""

from __future__ import annotations

import traceback
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Union

AutoFix = Callable[[], Union[None, Awaitable[None]]]


class ErrorCategory(str, Enum):
    """Broad family an error belongs to."""

    VALIDATION = "validation"
    TEMPLATE = "template"
    FILESYSTEM = "filesystem"
    NETWORK = "network"
    DEPENDENCY = "dependency"
    SYSTEM = "system"
    CONFIGURATION = "configuration"
    ROLLBACK = "rollback"
    SECURITY = "security"


class ErrorSeverity(str, Enum):
    """How bad an error is, from ``low`` to ``critical``."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Sort key: 0 for critical, 3 for low."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: dict[ErrorSeverity, int] = {
    ErrorSeverity.CRITICAL: 0,
    ErrorSeverity.HIGH: 1,
    ErrorSeverity.MEDIUM: 2,
    ErrorSeverity.LOW: 3,
}

# Failures in these categories must reach a human; no auto-fix is ever run.
NEVER_AUTO_FIXABLE: frozenset[ErrorCategory] = frozenset(
    {ErrorCategory.ROLLBACK, ErrorCategory.SYSTEM, ErrorCategory.SECURITY}
)


# ---------------------------------------------------------------------------
# Base error
# ---------------------------------------------------------------------------


class DNAError(Exception):
    """Base class for every generation failure.

    Subclasses set the class-level ``category``, ``default_severity`` and
    ``default_recoverable``; concrete errors pass a stable ``code``.

    Attributes:
        code: Stable machine-readable identifier (e.g. ``DIRECTORY_EXISTS``).
        category: The ``ErrorCategory`` of this error.
        severity: The ``ErrorSeverity`` of this error.
        message: Human-readable description.
        suggestion: Optional hint for the operator.
        auto_fix: Optional zero-argument recovery action (sync or async).
        recoverable: Whether the operator can resolve it and retry.
        auto_fixable: ``True`` when an auto-fix is attached and allowed.
        timestamp: Creation time (UTC).
        context: Extra structured details.
    """

    category: ErrorCategory = ErrorCategory.VALIDATION
    default_severity: ErrorSeverity = ErrorSeverity.MEDIUM
    default_recoverable: bool = True

    def __init__(
        self,
        message: str,
        code: str,
        suggestion: str | None = None,
        auto_fix: AutoFix | None = None,
        *,
        severity: ErrorSeverity | None = None,
        recoverable: bool | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.suggestion = suggestion
        self.severity = severity or self.default_severity
        self.recoverable = self.default_recoverable if recoverable is None else recoverable
        if self.category in NEVER_AUTO_FIXABLE:
            auto_fix = None
        self.auto_fix = auto_fix
        self.auto_fixable = auto_fix is not None
        self.context: dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable view of the error."""
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "category": self.category.value,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "auto_fixable": self.auto_fixable,
            "suggestion": self.suggestion,
            "timestamp": self.timestamp.isoformat(),
            "context": {k: str(v) if isinstance(v, Path) else v for k, v in self.context.items()},
        }

    def render(self, detail: bool = False) -> str:
        """Format the error for the operator.

        Always includes the stable code and, when present, the suggestion.
        The traceback is only included when *detail* is set.
        """
        lines = [f"[{self.code}] {self.message}"]
        if self.suggestion:
            lines.append(f"Suggestion: {self.suggestion}")
        if detail:
            trace = self.__cause__ if self.__cause__ is not None else self
            if trace.__traceback__ is not None:
                lines.append("".join(traceback.format_exception(trace)).rstrip())
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Category bases
# ---------------------------------------------------------------------------


class InputValidationError(DNAError):
    """Invalid input or configuration supplied by the caller."""

    category = ErrorCategory.VALIDATION
    default_severity = ErrorSeverity.MEDIUM


class TemplateError(DNAError):
    """Template lookup or rendering failure."""

    category = ErrorCategory.TEMPLATE
    default_severity = ErrorSeverity.HIGH


class FilesystemError(DNAError):
    """Reading, writing or moving files failed."""

    category = ErrorCategory.FILESYSTEM
    default_severity = ErrorSeverity.HIGH


class NetworkError(DNAError):
    category = ErrorCategory.NETWORK
    default_severity = ErrorSeverity.MEDIUM


class DependencyError(DNAError):
    """Package-manager or dependency resolution failure."""

    category = ErrorCategory.DEPENDENCY
    default_severity = ErrorSeverity.HIGH


class HostSystemError(DNAError):
    """A host tool or child process misbehaved."""

    category = ErrorCategory.SYSTEM
    default_severity = ErrorSeverity.HIGH
    default_recoverable = False


class ConfigurationError(DNAError):
    category = ErrorCategory.CONFIGURATION
    default_severity = ErrorSeverity.MEDIUM


class RollbackError(DNAError):
    """Cleanup after a failure did not complete."""

    category = ErrorCategory.ROLLBACK
    default_severity = ErrorSeverity.CRITICAL
    default_recoverable = False


class SecurityError(DNAError):
    category = ErrorCategory.SECURITY
    default_severity = ErrorSeverity.CRITICAL
    default_recoverable = False


# ---------------------------------------------------------------------------
# Concrete errors
# ---------------------------------------------------------------------------


class ProjectNameValidationError(InputValidationError):
    def __init__(self, name: str, reason: str) -> None:
        super().__init__(
            f"Invalid project name '{name}': {reason}",
            "INVALID_PROJECT_NAME",
            "Use letters, digits, hyphens and underscores only. Start with a letter "
            "and keep the length between 3 and 50 characters",
            context={"name": name, "reason": reason},
        )


class TemplateNotFoundError(TemplateError):
    def __init__(self, template_id: str, available: Iterable[str] = ()) -> None:
        available = sorted(available)
        hint = (
            f"Available templates: {', '.join(available)}"
            if available
            else "No templates are installed; check the templates directory"
        )
        super().__init__(
            f"Template '{template_id}' not found",
            "TEMPLATE_NOT_FOUND",
            f"{hint}. Use '--list-templates' to see all templates",
            context={"template_id": template_id, "available": available},
        )


class TemplateValidationFailedError(TemplateError):
    def __init__(self, template_id: str, errors: list[str]) -> None:
        joined = "; ".join(errors) if errors else "unknown rendering error"
        super().__init__(
            f"Template generation failed for '{template_id}': {joined}",
            "TEMPLATE_VALIDATION_FAILED",
            "Check the template variables and module selection, then retry",
            context={"template_id": template_id, "errors": list(errors)},
        )


class DNAModuleConflictError(TemplateError):
    def __init__(self, modules: list[str], reason: str) -> None:
        super().__init__(
            f"DNA module conflict: {', '.join(modules)} - {reason}",
            "DNA_MODULE_CONFLICT",
            f"Choose only one module from the conflicting group: {', '.join(modules)}",
            context={"modules": list(modules), "reason": reason},
        )


class DirectoryExistsError(FilesystemError):
    def __init__(self, path: Path) -> None:
        super().__init__(
            f"Directory '{path}' already exists",
            "DIRECTORY_EXISTS",
            "Choose a different project name, remove the existing directory, "
            "or use the --overwrite flag",
            context={"path": path},
        )


class InsufficientResourcesError(FilesystemError):
    def __init__(self, path: Path, required_mb: int, available_mb: int) -> None:
        super().__init__(
            f"Insufficient disk space at '{path}': required {required_mb}MB, "
            f"available {available_mb}MB",
            "INSUFFICIENT_RESOURCES",
            "Free up disk space or choose a different location",
            context={"path": path, "required_mb": required_mb, "available_mb": available_mb},
        )


class InsufficientPermissionsError(FilesystemError):
    def __init__(self, path: Path, operation: str) -> None:
        super().__init__(
            f"Insufficient permissions to {operation} at '{path}'",
            "INSUFFICIENT_PERMISSIONS",
            "Check file/directory permissions or run with appropriate user privileges",
            context={"path": path, "operation": operation},
        )


class DependencyInstallError(DependencyError):
    def __init__(self, package_manager: str, exit_code: int, stderr: str = "") -> None:
        super().__init__(
            f"Dependency installation failed with {package_manager} (exit code: {exit_code})",
            "DEPENDENCY_ERROR",
            f"Run '{package_manager} install' inside the project, clear the package "
            "manager cache, or try a different package manager",
            context={"package_manager": package_manager, "exit_code": exit_code, "stderr": stderr},
        )


class PackageManagerNotFoundError(DependencyError):
    def __init__(self, package_manager: str) -> None:
        super().__init__(
            f"Package manager '{package_manager}' not found",
            "PACKAGE_MANAGER_NOT_FOUND",
            f"Install {package_manager} or pick another one with --package-manager",
            context={"package_manager": package_manager},
        )


class VersionControlError(HostSystemError):
    def __init__(self, command: str, exit_code: int, stderr: str = "") -> None:
        super().__init__(
            f"Version control command failed (exit {exit_code}): {command}",
            "VCS_INIT_FAILED",
            "Initialise the repository manually with 'git init', 'git add .' and 'git commit'",
            context={"command": command, "exit_code": exit_code, "stderr": stderr},
        )


class MissingSystemToolError(HostSystemError):
    def __init__(self, tool: str, purpose: str) -> None:
        super().__init__(
            f"Required system tool '{tool}' not found (needed for {purpose})",
            "MISSING_SYSTEM_TOOL",
            f"Install {tool} and make sure it is on PATH",
            context={"tool": tool, "purpose": purpose},
        )


class StageInterruptedError(HostSystemError):
    def __init__(self, stage: str) -> None:
        super().__init__(
            f"Stage '{stage}' was interrupted before it finished",
            "STAGE_INTERRUPTED",
            "Re-run the command, with a longer timeout if one was set",
            context={"stage": stage},
        )


class ManifestWriteError(ConfigurationError):
    def __init__(self, path: Path, reason: str, auto_fix: AutoFix | None = None) -> None:
        super().__init__(
            f"Could not write project manifest '{path}': {reason}",
            "CONFIGURATION_ERROR",
            "Check that the project directory is writable, then re-run the generator",
            auto_fix,
            severity=ErrorSeverity.HIGH,
            context={"path": path, "reason": reason},
        )


class RollbackFailedError(RollbackError):
    def __init__(self, path: Path, reason: str, leftovers: Iterable[Path] = ()) -> None:
        leftovers = [str(p) for p in leftovers]
        super().__init__(
            f"Rollback of '{path}' failed: {reason}",
            "ROLLBACK_FAILED",
            "Manual cleanup may be required. Check the project directory and any "
            "'.backup.' sibling directory",
            context={"path": path, "reason": reason, "leftovers": leftovers},
        )


class UnsafePathError(SecurityError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            f"Unsafe path detected: {path} - {reason}",
            "UNSAFE_PATH",
            "Use an absolute path without '..' components or special characters",
            context={"path": path, "reason": reason},
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def is_recoverable(error: DNAError) -> bool:
    return error.recoverable


def is_auto_fixable(error: DNAError) -> bool:
    return error.auto_fixable and error.auto_fix is not None


def critical_errors(errors: Iterable[DNAError]) -> list[DNAError]:
    """Return only the errors with ``critical`` severity."""
    return [e for e in errors if e.severity is ErrorSeverity.CRITICAL]


def errors_by_category(
    errors: Iterable[DNAError], category: ErrorCategory
) -> list[DNAError]:
    return [e for e in errors if e.category is category]


def sort_by_severity(errors: Iterable[DNAError]) -> list[DNAError]:
    """Most severe first; stable for equal severities."""
    return sorted(errors, key=lambda e: e.severity.rank)
