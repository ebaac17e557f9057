"""DNA generator error handling.

Typed error taxonomy plus the recovery engine that decides whether a
failed operation may be retried, continued in degraded mode, or aborted.

Key classes:
    DNAError             - Base error with code, category, severity, suggestion
    ErrorRecoveryEngine  - Retry / degrade / abort decisions with bounded retries
    RecoveryPlan         - Deterministic recovery description for one error
"""

from .recovery import (
    ErrorRecoveryEngine,
    RecoveryOptions,
    RecoveryPlan,
    RiskLevel,
    build_recovery_plan,
    classify_error,
)
from .types import (
    ConfigurationError,
    DependencyError,
    DependencyInstallError,
    DirectoryExistsError,
    DNAError,
    DNAModuleConflictError,
    ErrorCategory,
    ErrorSeverity,
    FilesystemError,
    HostSystemError,
    InputValidationError,
    InsufficientPermissionsError,
    InsufficientResourcesError,
    ManifestWriteError,
    MissingSystemToolError,
    NetworkError,
    PackageManagerNotFoundError,
    ProjectNameValidationError,
    RollbackError,
    RollbackFailedError,
    SecurityError,
    StageInterruptedError,
    TemplateError,
    TemplateNotFoundError,
    TemplateValidationFailedError,
    UnsafePathError,
    VersionControlError,
    critical_errors,
    errors_by_category,
    is_auto_fixable,
    is_recoverable,
    sort_by_severity,
)

__all__ = [
    # Taxonomy
    "DNAError",
    "ErrorCategory",
    "ErrorSeverity",
    "InputValidationError",
    "TemplateError",
    "FilesystemError",
    "NetworkError",
    "DependencyError",
    "HostSystemError",
    "ConfigurationError",
    "RollbackError",
    "SecurityError",
    # Concrete errors
    "ProjectNameValidationError",
    "TemplateNotFoundError",
    "TemplateValidationFailedError",
    "DNAModuleConflictError",
    "DirectoryExistsError",
    "InsufficientResourcesError",
    "InsufficientPermissionsError",
    "DependencyInstallError",
    "PackageManagerNotFoundError",
    "VersionControlError",
    "MissingSystemToolError",
    "StageInterruptedError",
    "ManifestWriteError",
    "RollbackFailedError",
    "UnsafePathError",
    # Helpers
    "is_recoverable",
    "is_auto_fixable",
    "critical_errors",
    "errors_by_category",
    "sort_by_severity",
    # Recovery
    "ErrorRecoveryEngine",
    "RecoveryOptions",
    "RecoveryPlan",
    "RiskLevel",
    "build_recovery_plan",
    "classify_error",
]
