"""Error recovery engine.

Normalises any failure into a ``DNAError``, derives a deterministic
recovery plan from its category and severity, and decides whether the
caller may retry or continue (``True``) or must abort (``False``).

The engine is an explicit object: construct one and hand it to the
pipeline. Error history and per-code retry counters live on the instance
and are guarded by a lock so several pipeline runs in one process can
share it.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
import threading
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, Field
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from dnagen.config import RecoveryConfig

from .types import (
    DependencyError,
    DNAError,
    ErrorCategory,
    ErrorSeverity,
    FilesystemError,
    InputValidationError,
    NetworkError,
    critical_errors,
    errors_by_category,
    sort_by_severity,
)

logger = logging.getLogger(__name__)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecoveryOptions(BaseModel):
    """Per-call switches for :meth:`ErrorRecoveryEngine.handle`."""

    interactive: bool = Field(default=True)
    auto_fix: bool = Field(default=False)
    show_detail: bool = Field(default=False)
    graceful_degradation: bool = Field(default=True)
    max_retries: int = Field(default=3, ge=0)

    @classmethod
    def from_settings(cls, settings: RecoveryConfig) -> "RecoveryOptions":
        return cls(
            interactive=settings.interactive,
            auto_fix=settings.auto_fix,
            show_detail=settings.show_detail,
            graceful_degradation=settings.graceful_degradation,
            max_retries=settings.max_retries,
        )


@dataclass(frozen=True)
class RecoveryPlan:
    """How an error can be resolved. Derived, never stored."""

    can_recover: bool
    auto_fix_available: bool
    manual_steps: tuple[str, ...]
    risk_level: RiskLevel
    alternative_approaches: tuple[str, ...] = ()
    estimated_time: str = "1-2 minutes"


# ---------------------------------------------------------------------------
# Recovery plan construction
# ---------------------------------------------------------------------------

_PLAN_TABLE: dict[ErrorCategory, dict[str, Any]] = {
    ErrorCategory.VALIDATION: {
        "steps": (
            "Review the validation error details",
            "Correct the invalid input or configuration",
            "Retry the operation",
        ),
        "alternatives": (),
        "risk": RiskLevel.LOW,
        "time": "1-2 minutes",
    },
    ErrorCategory.TEMPLATE: {
        "steps": (
            "Check template availability and version",
            "Update the templates directory if needed",
            "Verify template and module compatibility",
            "Try an alternative template if available",
        ),
        "alternatives": (
            "Use a different template",
            "Drop the DNA modules that fail to render",
        ),
        "risk": RiskLevel.MEDIUM,
        "time": "2-5 minutes",
    },
    ErrorCategory.FILESYSTEM: {
        "steps": (
            "Check file and directory permissions",
            "Verify available disk space",
            "Ensure the target directory is writable",
        ),
        "alternatives": (
            "Use a different output directory",
            "Free up disk space",
        ),
        "risk": RiskLevel.MEDIUM,
        "time": "2-3 minutes",
    },
    ErrorCategory.NETWORK: {
        "steps": (
            "Check the internet connection",
            "Verify proxy settings if behind a firewall",
            "Wait and retry if the service is temporarily unavailable",
        ),
        "alternatives": (
            "Skip dependency installation and install later",
            "Use an offline package cache",
        ),
        "risk": RiskLevel.LOW,
        "time": "1-5 minutes",
    },
    ErrorCategory.DEPENDENCY: {
        "steps": (
            "Clear the package manager cache",
            "Update the package manager to its latest version",
            "Check the generated package manifest for syntax errors",
        ),
        "alternatives": (
            "Skip dependency installation temporarily",
            "Install dependencies manually inside the project",
            "Use a different package manager (npm/yarn/pnpm)",
        ),
        "risk": RiskLevel.MEDIUM,
        "time": "3-10 minutes",
    },
    ErrorCategory.SYSTEM: {
        "steps": (
            "Check system requirements",
            "Install missing system tools",
            "Restart the terminal if PATH changed",
        ),
        "alternatives": (
            "Use a container with the required tools",
        ),
        "risk": RiskLevel.HIGH,
        "time": "5-15 minutes",
    },
    ErrorCategory.CONFIGURATION: {
        "steps": (
            "Review the configuration error details",
            "Fix or regenerate the configuration file",
        ),
        "alternatives": (),
        "risk": RiskLevel.MEDIUM,
        "time": "2-5 minutes",
    },
    ErrorCategory.ROLLBACK: {
        "steps": (
            "Review the rollback failure details",
            "Manually clean up partially created files",
            "Restore the '.backup.' directory if one was left behind",
        ),
        "alternatives": (),
        "risk": RiskLevel.HIGH,
        "time": "5-30 minutes",
    },
    ErrorCategory.SECURITY: {
        "steps": (
            "Review the reported path or input",
            "Use a safe absolute path without traversal components",
        ),
        "alternatives": (),
        "risk": RiskLevel.HIGH,
        "time": "1-2 minutes",
    },
}

_NON_RECOVERABLE: frozenset[ErrorCategory] = frozenset(
    {ErrorCategory.ROLLBACK, ErrorCategory.SYSTEM, ErrorCategory.SECURITY}
)

_DEGRADABLE: frozenset[ErrorCategory] = frozenset(
    {ErrorCategory.NETWORK, ErrorCategory.DEPENDENCY}
)


def _risk_for(base: RiskLevel, severity: ErrorSeverity) -> RiskLevel:
    if severity is ErrorSeverity.CRITICAL:
        return RiskLevel.HIGH
    if severity is ErrorSeverity.HIGH and base is RiskLevel.LOW:
        return RiskLevel.MEDIUM
    return base


def build_recovery_plan(error: DNAError) -> RecoveryPlan:
    """Derive the recovery plan for *error*.

    Classification (``can_recover``, steps, risk) depends only on the
    error's category and severity. The suggestion, if any, becomes the
    first manual step.
    """
    entry = _PLAN_TABLE[error.category]
    can_recover = (
        error.category not in _NON_RECOVERABLE
        and error.severity is not ErrorSeverity.CRITICAL
    )
    steps = tuple(entry["steps"])
    if error.suggestion:
        steps = (error.suggestion,) + steps
    return RecoveryPlan(
        can_recover=can_recover,
        auto_fix_available=error.auto_fixable,
        manual_steps=steps,
        risk_level=_risk_for(entry["risk"], error.severity),
        alternative_approaches=tuple(entry["alternatives"]),
        estimated_time=entry["time"],
    )


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

# Text fallbacks, checked in order, when the exception type says nothing.
_MESSAGE_RULES: list[tuple[re.Pattern[str], Callable[[str], DNAError]]] = [
    (
        re.compile(r"ENOENT|no such file|file not found|not found", re.IGNORECASE),
        lambda msg: FilesystemError(
            msg, "FILE_NOT_FOUND", "Check if the file exists and the path is correct"
        ),
    ),
    (
        re.compile(r"EACCES|EPERM|permission denied", re.IGNORECASE),
        lambda msg: FilesystemError(
            msg,
            "PERMISSION_DENIED",
            "Check file permissions or run with appropriate privileges",
        ),
    ),
    (
        re.compile(r"ECONNREFUSED|ECONNRESET|ETIMEDOUT|connection refused|network", re.IGNORECASE),
        lambda msg: NetworkError(
            msg, "NETWORK_ERROR", "Check the internet connection and try again"
        ),
    ),
    (
        re.compile(r"\b(npm|yarn|pnpm)\b|dependency|dependencies|package manager", re.IGNORECASE),
        lambda msg: DependencyError(
            msg,
            "DEPENDENCY_ERROR",
            "Check the package manager and dependency configuration",
        ),
    ),
]


def classify_error(raw: object) -> DNAError:
    """Convert any raised value into a ``DNAError``.

    Structured information (the exception type) wins over the message
    text; message patterns are only a best-effort fallback. The original
    exception is kept as ``__cause__``.
    """
    if isinstance(raw, DNAError):
        return raw

    if not isinstance(raw, BaseException):
        return InputValidationError(
            f"Unknown error: {raw!r}",
            "UNKNOWN_ERROR",
            "Please try again or report the problem",
        )

    message = str(raw) or type(raw).__name__
    error: DNAError | None = None

    if isinstance(raw, FileNotFoundError):
        error = _MESSAGE_RULES[0][1](message)
    elif isinstance(raw, PermissionError):
        error = _MESSAGE_RULES[1][1](message)
    elif isinstance(raw, ConnectionError):
        error = _MESSAGE_RULES[2][1](message)
    else:
        for pattern, factory in _MESSAGE_RULES:
            if pattern.search(message):
                error = factory(message)
                break

    if error is None:
        error = InputValidationError(
            message, "GENERIC_ERROR", "Please check the operation and try again"
        )
    error.__cause__ = raw
    return error


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

_SEVERITY_STYLE: dict[ErrorSeverity, str] = {
    ErrorSeverity.CRITICAL: "bold red",
    ErrorSeverity.HIGH: "red",
    ErrorSeverity.MEDIUM: "yellow",
    ErrorSeverity.LOW: "blue",
}


class ErrorRecoveryEngine:
    """Decides retry vs. abort for failures raised during generation.

    Args:
        confirm: Confirmation collaborator (``confirm(prompt) -> bool``)
            used for interactive recovery. Without one, interactive
            recovery is skipped.
        history_limit: Maximum number of errors kept in memory.
        console: Rich console for error panels.
    """

    def __init__(
        self,
        confirm: Any | None = None,
        history_limit: int = 100,
        console: Console | None = None,
    ) -> None:
        self._confirm = confirm
        self._history: deque[DNAError] = deque(maxlen=history_limit)
        self._retry_counts: dict[str, int] = {}
        self._lock = threading.Lock()
        self.console = console or Console(stderr=True)

    # -- Public API --------------------------------------------------------

    async def handle(self, raw: object, options: RecoveryOptions | None = None) -> bool:
        """Handle one failure.

        Returns:
            ``True`` when the caller may retry or continue, ``False`` when it
            must abort the enclosing operation.
        """
        opts = options or RecoveryOptions()
        error = classify_error(raw)

        # Check and reserve the attempt in one step so concurrent callers
        # cannot all pass the bound.
        with self._lock:
            self._history.append(error)
            retry_count = self._retry_counts.get(error.code, 0)
            exhausted = retry_count >= opts.max_retries
            if not exhausted:
                self._retry_counts[error.code] = retry_count + 1

        logger.debug(
            "Handling %s (category=%s severity=%s attempt=%d/%d)",
            error.code,
            error.category.value,
            error.severity.value,
            retry_count + 1,
            opts.max_retries,
        )

        if exhausted:
            self._display_final(error, opts)
            return False

        plan = build_recovery_plan(error)
        self._display(error, plan, opts)

        if opts.auto_fix and plan.auto_fix_available:
            if await self._attempt_auto_fix(error):
                return True

        if opts.interactive and plan.can_recover:
            if await self._attempt_interactive(error, plan):
                return True

        if opts.graceful_degradation and self.can_degrade(error):
            logger.warning(
                "%s: continuing with reduced functionality", error.code
            )
            self._release(error.code)
            return True

        return False

    def record(self, raw: object) -> DNAError:
        """Add a failure to the history without deciding anything."""
        error = classify_error(raw)
        with self._lock:
            self._history.append(error)
        return error

    async def handle_many(
        self, errors: list[object], options: RecoveryOptions | None = None
    ) -> bool:
        """Handle several failures, most severe first.

        Every critical error must recover. The remaining ones are handled
        non-interactively, grouped by category; the first one that neither
        recovers nor is recoverable stops the batch.
        """
        opts = options or RecoveryOptions()
        normalised = sort_by_severity(classify_error(e) for e in errors)

        for error in critical_errors(normalised):
            if not await self.handle(error, opts):
                return False

        quiet = opts.model_copy(update={"interactive": False})
        rest = [e for e in normalised if e.severity is not ErrorSeverity.CRITICAL]
        for category in ErrorCategory:
            group = errors_by_category(rest, category)
            if not group:
                continue
            logger.info("Handling %d %s error(s)", len(group), category.value)
            for error in group:
                if not await self.handle(error, quiet) and not error.recoverable:
                    return False
        return True

    @staticmethod
    def can_degrade(error: DNAError) -> bool:
        """Network and dependency failures, and anything low severity."""
        return error.category in _DEGRADABLE or error.severity is ErrorSeverity.LOW

    @property
    def history(self) -> tuple[DNAError, ...]:
        with self._lock:
            return tuple(self._history)

    def retry_count(self, code: str) -> int:
        with self._lock:
            return self._retry_counts.get(code, 0)

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
            self._retry_counts.clear()

    def stats(self) -> dict[str, Any]:
        """Totals by category and severity plus the share of codes retried."""
        with self._lock:
            history = list(self._history)
            retried = sum(1 for count in self._retry_counts.values() if count > 0)
        total = len(history)
        return {
            "total": total,
            "by_category": dict(Counter(e.category.value for e in history)),
            "by_severity": dict(Counter(e.severity.value for e in history)),
            "recovery_rate": (retried / total) * 100 if total else 0.0,
        }

    def report(self) -> str:
        """Return a JSON error report for diagnostics."""
        with self._lock:
            history = list(self._history)
            attempts = dict(self._retry_counts)
        codes = Counter(e.code for e in history)
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "total_errors": len(history),
            "errors_by_category": dict(Counter(e.category.value for e in history)),
            "errors_by_severity": dict(Counter(e.severity.value for e in history)),
            "most_common_errors": [
                {"code": code, "count": count} for code, count in codes.most_common(5)
            ],
            "recovery_attempts": attempts,
            "recent_errors": [
                {
                    "code": e.code,
                    "message": e.message,
                    "category": e.category.value,
                    "severity": e.severity.value,
                    "timestamp": e.timestamp.isoformat(),
                }
                for e in history[-10:]
            ],
        }
        return json.dumps(payload, indent=2)

    # -- Recovery strategies -----------------------------------------------

    def _release(self, code: str) -> None:
        with self._lock:
            count = self._retry_counts.get(code, 0)
            if count > 1:
                self._retry_counts[code] = count - 1
            else:
                self._retry_counts.pop(code, None)

    async def _attempt_auto_fix(self, error: DNAError) -> bool:
        if error.auto_fix is None:
            return False
        logger.info("Attempting automatic recovery for %s", error.code)
        try:
            result = error.auto_fix()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("Automatic recovery for %s failed: %s", error.code, exc)
            return False
        logger.info("Automatic recovery for %s succeeded", error.code)
        return True

    async def _attempt_interactive(self, error: DNAError, plan: RecoveryPlan) -> bool:
        if self._confirm is None:
            return False
        self.console.print("[bold blue]Manual recovery steps:[/bold blue]")
        for index, step in enumerate(plan.manual_steps, start=1):
            self.console.print(f"  [blue]{index}.[/blue] {escape(step)}")
        return bool(
            await asyncio.to_thread(
                self._confirm.confirm, "Have you completed the manual steps?"
            )
        )

    # -- Presentation ------------------------------------------------------

    def _display(self, error: DNAError, plan: RecoveryPlan, opts: RecoveryOptions) -> None:
        lines = [
            f"[bold]Error:[/bold] {escape(error.message)}",
            f"[dim]Code: {error.code} | Category: {error.category.value} | "
            f"Severity: {error.severity.value}[/dim]",
            "",
        ]
        if plan.can_recover:
            lines.append("[green]Recovery available[/green]")
            if plan.auto_fix_available:
                lines.append("  - auto-fix available")
            lines.append(f"  - estimated time: {plan.estimated_time}")
            lines.append(f"  - risk level: {plan.risk_level.value}")
        else:
            lines.append("[red]Manual intervention required[/red]")

        if error.suggestion:
            lines.extend(["", f"[yellow]Suggestion:[/yellow] {escape(error.suggestion)}"])
        if plan.alternative_approaches:
            lines.extend(["", "[cyan]Alternative approaches:[/cyan]"])
            lines.extend(f"  - {escape(a)}" for a in plan.alternative_approaches)
        if opts.show_detail:
            detail = error.render(detail=True).split("\n", 2)
            if len(detail) == 3:
                lines.extend(["", f"[dim]{escape(detail[2])}[/dim]"])
        else:
            lines.extend(["", "[dim]Run with --debug for more details[/dim]"])

        self.console.print(
            Panel(
                "\n".join(lines),
                title=f"[bold]{error.code}[/bold]",
                border_style=_SEVERITY_STYLE[error.severity],
            )
        )

    def _display_final(self, error: DNAError, opts: RecoveryOptions) -> None:
        logger.error("%s is unrecoverable after %d attempt(s)", error.code, opts.max_retries)
        body = (
            "[bold red]UNRECOVERABLE ERROR[/bold red]\n\n"
            f"{escape(error.message)}\n\n"
            "[yellow]This error could not be resolved after repeated attempts.[/yellow]\n\n"
            f"[dim]Error Code: {error.code}\n"
            f"Category: {error.category.value}\n"
            f"Severity: {error.severity.value}[/dim]"
        )
        if error.suggestion:
            body += f"\n\n[yellow]Suggestion:[/yellow] {escape(error.suggestion)}"
        self.console.print(Panel(body, border_style="red"))
