"""Unit tests for error classification, recovery plans and the recovery engine."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from dnagen.config import RecoveryConfig
from dnagen.errors import (
    DependencyInstallError,
    DirectoryExistsError,
    ErrorCategory,
    ErrorRecoveryEngine,
    ErrorSeverity,
    FilesystemError,
    InputValidationError,
    NetworkError,
    RecoveryOptions,
    RiskLevel,
    RollbackFailedError,
    StageInterruptedError,
    UnsafePathError,
    build_recovery_plan,
    classify_error,
)


def _confirmer(answer: bool = True) -> MagicMock:
    confirmer = MagicMock()
    confirmer.confirm.return_value = answer
    return confirmer


# ---------------------------------------------------------------------------
# classify_error
# ---------------------------------------------------------------------------


class TestClassifyError:
    @pytest.mark.unit
    def test_dna_error_passes_through(self):
        err = DirectoryExistsError(Path("/tmp/x"))
        assert classify_error(err) is err

    @pytest.mark.unit
    def test_file_not_found_by_type(self):
        raw = FileNotFoundError(2, "gone")
        err = classify_error(raw)
        assert err.code == "FILE_NOT_FOUND"
        assert err.category is ErrorCategory.FILESYSTEM
        assert err.__cause__ is raw

    @pytest.mark.unit
    def test_permission_by_type(self):
        assert classify_error(PermissionError("nope")).code == "PERMISSION_DENIED"

    @pytest.mark.unit
    def test_connection_by_type(self):
        err = classify_error(ConnectionRefusedError("refused"))
        assert err.code == "NETWORK_ERROR"
        assert err.category is ErrorCategory.NETWORK

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "message, code",
        [
            ("ENOENT: no such file or directory", "FILE_NOT_FOUND"),
            ("EACCES: permission denied, mkdir", "PERMISSION_DENIED"),
            ("connect ECONNREFUSED 127.0.0.1:443", "NETWORK_ERROR"),
            ("npm ERR! code ERESOLVE", "DEPENDENCY_ERROR"),
        ],
    )
    def test_message_fallback(self, message, code):
        assert classify_error(RuntimeError(message)).code == code

    @pytest.mark.unit
    def test_type_wins_over_message(self):
        # Message mentions npm, but the type says permission.
        assert classify_error(PermissionError("npm cache")).code == "PERMISSION_DENIED"

    @pytest.mark.unit
    def test_generic_exception(self):
        err = classify_error(RuntimeError("something odd"))
        assert err.code == "GENERIC_ERROR"
        assert isinstance(err, InputValidationError)

    @pytest.mark.unit
    def test_non_exception(self):
        err = classify_error("just a string")
        assert err.code == "UNKNOWN_ERROR"
        assert "just a string" in err.message


# ---------------------------------------------------------------------------
# build_recovery_plan
# ---------------------------------------------------------------------------


class TestRecoveryPlan:
    @pytest.mark.unit
    def test_validation_plan(self):
        plan = build_recovery_plan(InputValidationError("bad", "BAD"))
        assert plan.can_recover is True
        assert plan.auto_fix_available is False
        assert plan.risk_level is RiskLevel.LOW
        assert plan.manual_steps[-1] == "Retry the operation"

    @pytest.mark.unit
    def test_suggestion_is_first_step(self):
        err = DirectoryExistsError(Path("/tmp/x"))
        plan = build_recovery_plan(err)
        assert plan.manual_steps[0] == err.suggestion

    @pytest.mark.unit
    def test_dependency_plan_has_alternatives(self):
        plan = build_recovery_plan(DependencyInstallError("npm", 1))
        assert plan.can_recover is True
        assert any("Skip dependency installation" in a for a in plan.alternative_approaches)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error",
        [RollbackFailedError(Path("/x"), "r"), UnsafePathError("../x", "r")],
    )
    def test_final_categories_cannot_recover(self, error):
        plan = build_recovery_plan(error)
        assert plan.can_recover is False
        assert plan.risk_level is RiskLevel.HIGH

    @pytest.mark.unit
    def test_critical_severity_cannot_recover(self):
        err = FilesystemError("x", "X", severity=ErrorSeverity.CRITICAL)
        plan = build_recovery_plan(err)
        assert plan.can_recover is False
        assert plan.risk_level is RiskLevel.HIGH

    @pytest.mark.unit
    def test_high_severity_lifts_low_risk(self):
        err = NetworkError("x", "X", severity=ErrorSeverity.HIGH)
        assert build_recovery_plan(err).risk_level is RiskLevel.MEDIUM

    @pytest.mark.unit
    def test_plan_is_deterministic(self):
        err = DirectoryExistsError(Path("/tmp/x"))
        assert build_recovery_plan(err) == build_recovery_plan(err)


# ---------------------------------------------------------------------------
# RecoveryOptions
# ---------------------------------------------------------------------------


class TestRecoveryOptions:
    @pytest.mark.unit
    def test_from_settings(self):
        opts = RecoveryOptions.from_settings(
            RecoveryConfig(interactive=False, auto_fix=True, max_retries=1)
        )
        assert opts.interactive is False
        assert opts.auto_fix is True
        assert opts.max_retries == 1
        assert opts.graceful_degradation is True


# ---------------------------------------------------------------------------
# ErrorRecoveryEngine.handle
# ---------------------------------------------------------------------------


class TestEngineHandle:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sync_auto_fix_grants_retry(self, quiet_console):
        fix = MagicMock(return_value=None)
        err = FilesystemError("x", "FIXME", auto_fix=fix)
        engine = ErrorRecoveryEngine(console=quiet_console)

        granted = await engine.handle(
            err, RecoveryOptions(interactive=False, auto_fix=True)
        )

        assert granted is True
        fix.assert_called_once()
        assert engine.retry_count("FIXME") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_async_auto_fix_is_awaited(self, quiet_console):
        fix = AsyncMock(return_value=None)
        err = FilesystemError("x", "FIXME", auto_fix=fix)
        engine = ErrorRecoveryEngine(console=quiet_console)

        assert await engine.handle(err, RecoveryOptions(interactive=False, auto_fix=True))
        fix.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_auto_fix_falls_through(self, quiet_console):
        fix = MagicMock(side_effect=OSError("still broken"))
        err = FilesystemError("x", "FIXME", auto_fix=fix)
        engine = ErrorRecoveryEngine(console=quiet_console)

        granted = await engine.handle(
            err,
            RecoveryOptions(interactive=False, auto_fix=True, graceful_degradation=False),
        )

        assert granted is False
        assert engine.retry_count("FIXME") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_auto_fix_ignored_when_disabled(self, quiet_console):
        fix = MagicMock()
        err = FilesystemError("x", "FIXME", auto_fix=fix)
        engine = ErrorRecoveryEngine(console=quiet_console)

        await engine.handle(err, RecoveryOptions(interactive=False, auto_fix=False))
        fix.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_interactive_confirmation(self, quiet_console):
        confirmer = _confirmer(True)
        engine = ErrorRecoveryEngine(confirm=confirmer, console=quiet_console)

        granted = await engine.handle(DirectoryExistsError(Path("/tmp/x")), RecoveryOptions())

        assert granted is True
        confirmer.confirm.assert_called_once_with("Have you completed the manual steps?")
        assert engine.retry_count("DIRECTORY_EXISTS") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_interactive_declined(self, quiet_console):
        engine = ErrorRecoveryEngine(confirm=_confirmer(False), console=quiet_console)
        granted = await engine.handle(
            DirectoryExistsError(Path("/tmp/x")),
            RecoveryOptions(graceful_degradation=False),
        )
        assert granted is False
        assert engine.retry_count("DIRECTORY_EXISTS") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unrecoverable_never_prompts(self, quiet_console):
        confirmer = _confirmer(True)
        engine = ErrorRecoveryEngine(confirm=confirmer, console=quiet_console)

        granted = await engine.handle(UnsafePathError("../x", "traversal"), RecoveryOptions())

        assert granted is False
        confirmer.confirm.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_graceful_degradation_does_not_count(self, quiet_console):
        engine = ErrorRecoveryEngine(console=quiet_console)
        err = DependencyInstallError("npm", 1)

        granted = await engine.handle(err, RecoveryOptions(interactive=False))

        assert granted is True
        assert engine.retry_count("DEPENDENCY_ERROR") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_degradation_disabled_aborts(self, quiet_console):
        engine = ErrorRecoveryEngine(console=quiet_console)
        granted = await engine.handle(
            DependencyInstallError("npm", 1),
            RecoveryOptions(interactive=False, graceful_degradation=False),
        )
        assert granted is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_bound(self, quiet_console):
        """An operator who always says yes still gets at most max_retries retries."""
        confirmer = _confirmer(True)
        engine = ErrorRecoveryEngine(confirm=confirmer, console=quiet_console)
        opts = RecoveryOptions(max_retries=3, graceful_degradation=False)

        results = [
            await engine.handle(DirectoryExistsError(Path("/tmp/x")), opts) for _ in range(5)
        ]

        assert results == [True, True, True, False, False]
        assert confirmer.confirm.call_count == 3
        assert "UNRECOVERABLE ERROR" in quiet_console.file.getvalue()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_zero_retries_aborts_immediately(self, quiet_console):
        confirmer = _confirmer(True)
        engine = ErrorRecoveryEngine(confirm=confirmer, console=quiet_console)
        granted = await engine.handle(
            DirectoryExistsError(Path("/tmp/x")), RecoveryOptions(max_retries=0)
        )
        assert granted is False
        confirmer.confirm.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_raw_exceptions_are_normalised(self, quiet_console):
        engine = ErrorRecoveryEngine(console=quiet_console)
        await engine.handle(RuntimeError("odd"), RecoveryOptions(interactive=False))
        assert engine.history[-1].code == "GENERIC_ERROR"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_bound_holds_for_concurrent_calls(self, quiet_console):
        """Concurrent failures with the same code share one retry budget."""

        async def _slow_fix() -> None:
            await asyncio.sleep(0.01)

        engine = ErrorRecoveryEngine(console=quiet_console)
        opts = RecoveryOptions(interactive=False, auto_fix=True, max_retries=1)

        results = await asyncio.gather(
            *(engine.handle(FilesystemError("x", "SAME", auto_fix=_slow_fix), opts) for _ in range(3))
        )

        assert results.count(True) == 1
        assert engine.retry_count("SAME") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_degradation_returns_reserved_attempt(self, quiet_console):
        engine = ErrorRecoveryEngine(console=quiet_console)
        opts = RecoveryOptions(interactive=False, max_retries=1)

        for _ in range(3):
            assert await engine.handle(DependencyInstallError("npm", 1), opts) is True
        assert engine.retry_count("DEPENDENCY_ERROR") == 0

    @pytest.mark.unit
    def test_record_only_appends_history(self, quiet_console):
        engine = ErrorRecoveryEngine(console=quiet_console)
        recorded = engine.record(StageInterruptedError("generate_files"))
        assert engine.history == (recorded,)
        assert engine.retry_count("STAGE_INTERRUPTED") == 0
        assert quiet_console.file.getvalue() == ""


# ---------------------------------------------------------------------------
# History, stats, report
# ---------------------------------------------------------------------------


class TestEngineBookkeeping:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_history_is_bounded(self, quiet_console):
        engine = ErrorRecoveryEngine(history_limit=2, console=quiet_console)
        opts = RecoveryOptions(interactive=False, max_retries=10)
        for code in ("A", "B", "C"):
            await engine.handle(InputValidationError(code, code), opts)
        assert [e.code for e in engine.history] == ["B", "C"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stats_and_report(self, quiet_console):
        engine = ErrorRecoveryEngine(console=quiet_console)
        opts = RecoveryOptions(interactive=False)
        await engine.handle(DependencyInstallError("npm", 1), opts)
        await engine.handle(InputValidationError("bad", "BAD"), opts)
        await engine.handle(InputValidationError("bad", "BAD"), opts)

        stats = engine.stats()
        assert stats["total"] == 3
        assert stats["by_category"] == {"dependency": 1, "validation": 2}
        assert stats["by_severity"]["high"] == 1

        report = json.loads(engine.report())
        assert report["total_errors"] == 3
        assert report["most_common_errors"][0] == {"code": "BAD", "count": 2}
        assert report["recovery_attempts"] == {"BAD": 2}
        assert len(report["recent_errors"]) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clear_history(self, quiet_console):
        engine = ErrorRecoveryEngine(console=quiet_console)
        await engine.handle(InputValidationError("bad", "BAD"), RecoveryOptions(interactive=False))
        engine.clear_history()
        assert engine.history == ()
        assert engine.retry_count("BAD") == 0
        assert engine.stats()["total"] == 0


# ---------------------------------------------------------------------------
# handle_many
# ---------------------------------------------------------------------------


class TestHandleMany:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_critical_error_aborts_batch(self, quiet_console):
        engine = ErrorRecoveryEngine(console=quiet_console)
        ok = await engine.handle_many(
            [InputValidationError("a", "A"), RollbackFailedError(Path("/x"), "r")],
            RecoveryOptions(interactive=False),
        )
        assert ok is False
        assert engine.history[0].code == "ROLLBACK_FAILED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recoverable_errors_do_not_abort(self, quiet_console):
        engine = ErrorRecoveryEngine(console=quiet_console)
        ok = await engine.handle_many(
            [InputValidationError("a", "A"), DependencyInstallError("npm", 1)],
            RecoveryOptions(interactive=False),
        )
        assert ok is True
        assert len(engine.history) == 2
