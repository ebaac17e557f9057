"""DNA generator pipeline orchestrator.

Implements the six-stage transactional generation pipeline:

Stage 1: VALIDATE             -- Template lookup, compatibility and disk checks.
Stage 2: PREPARE_DIRECTORY    -- Backup/overwrite handling and directory creation.
Stage 3: GENERATE_FILES       -- Render the base template and DNA modules.
Stage 4: INSTALL_DEPENDENCIES -- Package manager install (non-fatal).
Stage 5: INITIALIZE_VCS       -- git init / add / commit (non-fatal).
Stage 6: FINALIZE             -- Write the ``dna.config.json`` manifest.

A failure in a fatal stage goes to the recovery engine; unless it grants a
retry the run is rolled back. Failures in non-fatal stages are recorded as
warnings and the run continues.

Usage::

    dnagen my-app --template react-basic
    dnagen my-app -t react-basic -m auth,testing --dry-run
    dnagen --list-templates
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from dnagen import __version__
from dnagen.config import Config
from dnagen.errors import (
    DNAError,
    ErrorRecoveryEngine,
    ProjectNameValidationError,
    RecoveryOptions,
    RollbackFailedError,
    StageInterruptedError,
    UnsafePathError,
    classify_error,
)
from dnagen.generator import (
    STAGE_ORDER,
    FileTemplateRegistry,
    GenerationOptions,
    JinjaTemplateRenderer,
    Outcome,
    PackageManager,
    PipelineResult,
    PipelineRun,
    ProjectConfig,
    ProjectGenerator,
    RichConfirmer,
    RichStageReporter,
    Stage,
    validate_output_path,
    validate_project_name,
)
from dnagen.utils import (
    console,
    format_duration,
    print_error,
    print_success,
    print_summary_table,
    print_warning,
    setup_logging,
)

logger = logging.getLogger(__name__)

# Outcome reported when a fatal stage fails and rollback is clean.
_FAILURE_OUTCOMES: dict[Stage, Outcome] = {
    Stage.VALIDATE: Outcome.VALIDATION,
    Stage.PREPARE_DIRECTORY: Outcome.FATAL_ROLLED_BACK,
    Stage.GENERATE_FILES: Outcome.GENERATION,
    Stage.FINALIZE: Outcome.FATAL_ROLLED_BACK,
}


# ---------------------------------------------------------------------------
# Pipeline Orchestrator
# ---------------------------------------------------------------------------


class GenerationPipeline:
    """Runs the six generation stages as one transaction.

    Attributes:
        generator: Stage implementations and rollback.
        engine: Error recovery engine; the only source of stage retries.
        confirmer: Optional yes/no collaborator for the overwrite prompt.
        reporter: Optional progress collaborator.
        recovery_options: Default recovery switches for :meth:`run`.
    """

    def __init__(
        self,
        generator: ProjectGenerator,
        engine: ErrorRecoveryEngine,
        confirmer: Any | None = None,
        reporter: Any | None = None,
        recovery_options: RecoveryOptions | None = None,
        console: Console | None = None,
    ) -> None:
        self.generator = generator
        self.engine = engine
        self.confirmer = confirmer
        self.reporter = reporter
        self.recovery_options = recovery_options or RecoveryOptions()
        self.console = console

    async def run(
        self,
        project: ProjectConfig,
        options: GenerationOptions,
        recovery: RecoveryOptions | None = None,
    ) -> PipelineResult:
        """Generate *project*.

        Returns:
            A ``PipelineResult``; stage failures never escape as exceptions.

        Raises:
            asyncio.CancelledError: If the caller cancels the run. A
                cancellation during a fatal stage rolls the run back first.
        """
        started = time.monotonic()
        base = recovery or self.recovery_options
        fatal_opts = base.model_copy(
            update={
                "graceful_degradation": False,
                "interactive": base.interactive and options.interactive,
            }
        )
        quiet_opts = base.model_copy(update={"interactive": False})

        run = PipelineRun(output_path=project.output_path)
        run.start()
        stages_run: list[Stage] = []
        warnings: list[DNAError] = []

        logger.info(
            "Generating '%s' from template '%s' into %s%s",
            project.name,
            project.template_id,
            project.output_path,
            " (dry run)" if options.dry_run else "",
        )

        for index, stage in enumerate(STAGE_ORDER):
            run.stage_index = index
            if stage is Stage.PREPARE_DIRECTORY:
                options = await self._confirm_overwrite(project, options)

            self._report_start(stage, options)
            stages_run.append(stage)

            if stage.fatal:
                error = await self._run_fatal(stage, project, options, run, fatal_opts)
                if error is not None:
                    result = await self._fail(run, stage, error, stages_run, warnings, quiet_opts)
                    result.duration_seconds = time.monotonic() - started
                    self._print_final_summary(result)
                    return result
            else:
                error = await self._run_non_fatal(stage, project, options, run, quiet_opts)
                if error is not None:
                    warnings.append(error)

            run.stages_completed.append(stage)
            self._report_progress((index + 1) / len(STAGE_ORDER), options)

        run.succeed()
        result = PipelineResult(
            outcome=Outcome.DEPENDENCY_DEGRADED if warnings else Outcome.SUCCESS,
            status=run.status,
            output_path=project.output_path,
            stages_run=stages_run,
            warnings=warnings,
            backup_path=run.backup_path,
            duration_seconds=time.monotonic() - started,
        )
        logger.info("Generation finished: %s", result.outcome.value)
        self._print_final_summary(result)
        return result

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    async def _run_fatal(
        self,
        stage: Stage,
        project: ProjectConfig,
        options: GenerationOptions,
        run: PipelineRun,
        opts: RecoveryOptions,
    ) -> DNAError | None:
        """Run a fatal stage until it succeeds or the engine refuses a retry."""
        stage_fn = self.generator.stage(stage)
        while True:
            # Recovery sits inside the outer try: a cancellation while the
            # engine awaits an auto-fix or a confirmation still rolls back.
            try:
                try:
                    await stage_fn(project, options, run)
                    return None
                except Exception as exc:
                    error = classify_error(exc)
                    logger.error(
                        "Stage %s failed: [%s] %s", stage.value, error.code, error.message
                    )
                    if not await self.engine.handle(error, opts):
                        return error
            except asyncio.CancelledError:
                logger.warning("Stage %s cancelled; rolling back", stage.value)
                self.engine.record(StageInterruptedError(stage.value))
                run.fail()
                if self.generator.rollback(run):
                    run.mark_rolled_back()
                raise
            logger.info("Retrying stage %s", stage.value)

    async def _run_non_fatal(
        self,
        stage: Stage,
        project: ProjectConfig,
        options: GenerationOptions,
        run: PipelineRun,
        opts: RecoveryOptions,
    ) -> DNAError | None:
        try:
            await self.generator.stage(stage)(project, options, run)
        except asyncio.CancelledError:
            logger.warning("Stage %s cancelled; keeping the project", stage.value)
            self.engine.record(StageInterruptedError(stage.value))
            raise
        except Exception as exc:
            error = classify_error(exc)
            await self.engine.handle(error, opts)
            logger.warning(
                "Stage %s failed, continuing: [%s] %s", stage.value, error.code, error.message
            )
            return error
        return None

    async def _fail(
        self,
        run: PipelineRun,
        stage: Stage,
        error: DNAError,
        stages_run: list[Stage],
        warnings: list[DNAError],
        opts: RecoveryOptions,
    ) -> PipelineResult:
        run.fail()
        if self.generator.rollback(run):
            run.mark_rolled_back()
            outcome = _FAILURE_OUTCOMES[stage]
        else:
            outcome = Outcome.FATAL
            leftovers = [
                p for p in (run.output_path, run.backup_path, *run.created_paths)
                if p is not None and p.exists()
            ]
            rollback_error = RollbackFailedError(
                run.output_path, f"cleanup after {error.code} did not complete", leftovers
            )
            rollback_error.__cause__ = error
            await self.engine.handle(rollback_error, opts)
            warnings.append(rollback_error)

        logger.error("Generation failed at %s: %s", stage.value, outcome.value)
        return PipelineResult(
            outcome=outcome,
            status=run.status,
            output_path=run.output_path,
            stages_run=stages_run,
            error=error,
            warnings=warnings,
            backup_path=run.backup_path,
        )

    async def _confirm_overwrite(
        self, project: ProjectConfig, options: GenerationOptions
    ) -> GenerationOptions:
        if (
            not options.interactive
            or options.overwrite
            or options.dry_run
            or self.confirmer is None
            or not project.output_path.exists()
        ):
            return options
        approved = await asyncio.to_thread(
            self.confirmer.confirm,
            f"Directory {project.output_path} already exists. Overwrite?",
        )
        if approved:
            return options.model_copy(update={"overwrite": True})
        return options

    # ------------------------------------------------------------------
    # Progress and summary
    # ------------------------------------------------------------------

    def _report_start(self, stage: Stage, options: GenerationOptions) -> None:
        if options.report_progress and self.reporter is not None:
            self.reporter.on_stage_start(stage.label)

    def _report_progress(self, fraction: float, options: GenerationOptions) -> None:
        if options.report_progress and self.reporter is not None:
            self.reporter.on_stage_progress(fraction)

    def _print_final_summary(self, result: PipelineResult) -> None:
        """Print the final generation summary panel."""
        if self.console is None:
            return

        if result.success:
            border_style = "bold green"
            status_text = "[bold green]PROJECT GENERATED[/bold green]"
        else:
            border_style = "bold red"
            status_text = "[bold red]GENERATION FAILED[/bold red]"

        detail_lines = [
            status_text,
            "",
            f"Outcome   : {result.outcome.value}",
            f"Duration  : {format_duration(result.duration_seconds)}",
            f"Stages    : {len(result.stages_run)}/{len(STAGE_ORDER)}",
            f"Output    : {result.output_path}",
        ]
        if result.error is not None:
            detail_lines.append(f"Error     : {result.error.code}")
        if result.warnings:
            detail_lines.append(
                f"Warnings  : {', '.join(w.code for w in result.warnings)}"
            )
        if result.backup_path is not None:
            detail_lines.append(f"Backup    : {result.backup_path}")

        self.console.print()
        self.console.print(
            Panel(
                "\n".join(detail_lines),
                title="[bold]Generation Complete[/bold]",
                border_style=border_style,
            )
        )


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------


def _parse_variables(pairs: list[str]) -> dict[str, str]:
    """Turn ``["KEY=VALUE", ...]`` into a dict. Raises ``ValueError``."""
    variables: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid --var '{pair}', expected KEY=VALUE")
        variables[key.strip()] = value
    return variables


def _split_modules(raw: str | None) -> list[str] | None:
    if raw is None:
        return None
    return [m.strip() for m in raw.split(",") if m.strip()]


def _print_templates(registry: FileTemplateRegistry) -> None:
    templates = registry.list_templates()
    if not templates:
        console.print(f"[yellow]No templates found in {registry.root}[/yellow]")
        return
    table = Table(title="Available Templates", show_header=True, header_style="bold cyan")
    table.add_column("ID", no_wrap=True)
    table.add_column("Name")
    table.add_column("Type", style="dim")
    table.add_column("Framework")
    table.add_column("DNA Modules")
    for template in templates:
        table.add_row(
            template.id,
            template.name,
            template.type,
            template.framework,
            ", ".join(template.dna_modules) or "-",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for ``dnagen``."""
    import argparse

    parser = argparse.ArgumentParser(
        prog="dnagen",
        description="DNA project generator -- scaffold projects from templates and DNA modules",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  dnagen my-app --template react-basic\n"
            "  dnagen my-app -t react-basic -m auth,testing -p pnpm\n"
            "  dnagen my-app -t react-basic --overwrite --dry-run\n"
            "  dnagen --list-templates\n"
        ),
    )
    parser.add_argument("name", nargs="?", help="Project name")
    parser.add_argument("--template", "-t", help="Template id")
    parser.add_argument(
        "--framework", "-f", help="Framework id (default: the template's framework)"
    )
    parser.add_argument("--output", "-o", help="Output directory (default: ./<name>)")
    parser.add_argument(
        "--modules", "-m", help="Comma-separated DNA modules (default: the template's modules)"
    )
    parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Template variable (repeatable)",
    )
    parser.add_argument(
        "--package-manager", "-p",
        choices=[pm.value for pm in PackageManager],
        default=PackageManager.NPM.value,
        help="Package manager for dependency installation (default: npm)",
    )
    parser.add_argument("--skip-install", action="store_true", help="Skip dependency installation")
    parser.add_argument("--skip-git", action="store_true", help="Skip git initialisation")
    parser.add_argument("--dry-run", action="store_true", help="Show what would happen, change nothing")
    parser.add_argument("--overwrite", action="store_true", help="Replace an existing directory")
    parser.add_argument(
        "--no-backup", action="store_true", help="Do not back up a directory being overwritten"
    )
    parser.add_argument("--yes", "-y", action="store_true", help="Never prompt")
    parser.add_argument("--no-progress", action="store_true", help="Hide stage progress")
    parser.add_argument("--auto-fix", action="store_true", help="Run automatic fixes when available")
    parser.add_argument("--max-retries", type=int, default=None, help="Retries per error code")
    parser.add_argument("--templates-dir", default=None, help="Templates root directory")
    parser.add_argument("--debug", action="store_true", help="Verbose logging and tracebacks")
    parser.add_argument("--list-templates", action="store_true", help="List templates and exit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args(argv)

    settings = Config.from_env()
    if args.templates_dir:
        settings.templates_dir = Path(args.templates_dir)
    if args.debug:
        settings.log_level = "DEBUG"
        settings.recovery.show_detail = True
    if args.auto_fix:
        settings.recovery.auto_fix = True
    if args.max_retries is not None:
        if args.max_retries < 0:
            parser.error("--max-retries must be >= 0")
        settings.recovery.max_retries = args.max_retries

    interactive = not args.yes and sys.stdin.isatty()
    settings.recovery.interactive = settings.recovery.interactive and interactive

    setup_logging(settings.log_level, settings.log_file)
    registry = FileTemplateRegistry(settings.templates_dir)

    if args.list_templates:
        _print_templates(registry)
        sys.exit(0)

    if not args.name:
        parser.error("the project name is required")
    if not args.template:
        parser.error("--template is required")

    try:
        variables = _parse_variables(args.var)
    except ValueError as exc:
        parser.error(str(exc))

    detail = settings.recovery.show_detail
    try:
        validate_project_name(args.name)
        output = Path(args.output).expanduser() if args.output else Path(args.name)
        if not output.is_absolute():
            output = Path.cwd() / output
        output = validate_output_path(output)
    except (ProjectNameValidationError, UnsafePathError) as exc:
        print_error(exc.render(detail=detail))
        sys.exit(Outcome.VALIDATION.exit_code)

    template = registry.get_template(args.template)
    modules = _split_modules(args.modules)
    if modules is None:
        modules = list(template.dna_modules) if template is not None else []
    framework = args.framework or (template.framework if template is not None else "unknown")

    try:
        project = ProjectConfig(
            name=args.name,
            output_path=output,
            template_id=args.template,
            framework_id=framework,
            module_ids=modules,
            variables=variables,
            package_manager=PackageManager(args.package_manager),
            skip_install=args.skip_install,
            skip_vcs_init=args.skip_git,
        )
    except ValidationError as exc:
        print_error(f"[INVALID_CONFIGURATION] {exc}")
        sys.exit(Outcome.VALIDATION.exit_code)

    options = GenerationOptions(
        interactive=interactive,
        dry_run=args.dry_run,
        overwrite=args.overwrite,
        backup_on_overwrite=not args.no_backup,
        report_progress=not args.no_progress,
    )

    confirmer = RichConfirmer() if interactive else None
    engine = ErrorRecoveryEngine(
        confirm=confirmer, history_limit=settings.recovery.history_limit
    )
    generator = ProjectGenerator(settings, registry, JinjaTemplateRenderer(registry))
    pipeline = GenerationPipeline(
        generator,
        engine,
        confirmer=confirmer,
        reporter=RichStageReporter(),
        recovery_options=RecoveryOptions.from_settings(settings.recovery),
        console=console,
    )

    try:
        result = asyncio.run(pipeline.run(project, options))
    except KeyboardInterrupt:
        print_error("Generation interrupted")
        sys.exit(130)

    print_summary_table(result.summary(), title="Generation Summary")
    for warning in result.warnings:
        print_warning(warning.render(detail=detail))
    if result.error is not None:
        print_error(result.error.render(detail=detail))
    elif result.success:
        print_success(f"Project '{project.name}' is ready at {project.output_path}")

    if detail:
        logger.debug("Error report:\n%s", engine.report())

    sys.exit(result.exit_code)


if __name__ == "__main__":
    main()
