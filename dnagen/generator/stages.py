"""The six generation stages and rollback.

Each stage is an ``async`` method taking ``(project, options, run)``. Stages
raise typed ``DNAError`` subclasses at the point of failure and record
every directory they create on the ``PipelineRun`` so :meth:`rollback` can
undo exactly that and nothing else.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sys
import time
from pathlib import Path
from typing import Any, Awaitable, Callable

from dnagen.config import Config
from dnagen.errors.types import (
    DependencyInstallError,
    DirectoryExistsError,
    FilesystemError,
    InsufficientPermissionsError,
    InsufficientResourcesError,
    ManifestWriteError,
    MissingSystemToolError,
    PackageManagerNotFoundError,
    TemplateNotFoundError,
    TemplateValidationFailedError,
    VersionControlError,
)
from dnagen.utils import run_command, save_json

from .models import (
    GenerationOptions,
    Manifest,
    PackageManager,
    PipelineRun,
    ProjectConfig,
    RenderRequest,
    Stage,
    TemplateMetadata,
)

logger = logging.getLogger(__name__)

_MB = 1024 * 1024

StageFn = Callable[[ProjectConfig, GenerationOptions, PipelineRun], Awaitable[None]]


class ProjectGenerator:
    """Runs individual generation stages against the filesystem.

    Args:
        settings: Global configuration (timeouts, disk threshold, manifest name).
        lookup: Template lookup collaborator.
        renderer: Template renderer collaborator.
    """

    def __init__(self, settings: Config, lookup: Any, renderer: Any) -> None:
        self.settings = settings
        self.lookup = lookup
        self.renderer = renderer

    def stage(self, stage: Stage) -> StageFn:
        """Return the coroutine function implementing *stage*."""
        return getattr(self, stage.value)

    # ------------------------------------------------------------------
    # Stage 1: validate
    # ------------------------------------------------------------------

    async def validate(
        self, project: ProjectConfig, options: GenerationOptions, run: PipelineRun
    ) -> None:
        """Check the template and host preconditions. Never writes."""
        template = self._require_template(project.template_id)

        incompatible = [m for m in project.module_ids if m not in template.dna_modules]
        if incompatible:
            logger.warning(
                "Modules %s are not declared compatible with template '%s'",
                ", ".join(incompatible),
                template.id,
            )
        if project.framework_id != template.framework:
            logger.warning(
                "Framework '%s' differs from template framework '%s'",
                project.framework_id,
                template.framework,
            )

        anchor = _nearest_existing(project.output_path)
        required_mb = (
            template.min_disk_space_mb
            if template.min_disk_space_mb is not None
            else self.settings.resources.min_disk_space_mb
        )
        usage = await asyncio.to_thread(shutil.disk_usage, anchor)
        available_mb = usage.free // _MB
        logger.debug(
            "Disk space at %s: %dMB free, %dMB required", anchor, available_mb, required_mb
        )
        if available_mb < required_mb:
            raise InsufficientResourcesError(anchor, required_mb, available_mb)

        writable_dir = anchor if anchor.is_dir() else anchor.parent
        if not _is_writable(writable_dir):
            raise InsufficientPermissionsError(writable_dir, "create the project directory")

    # ------------------------------------------------------------------
    # Stage 2: prepare_directory
    # ------------------------------------------------------------------

    async def prepare_directory(
        self, project: ProjectConfig, options: GenerationOptions, run: PipelineRun
    ) -> None:
        path = project.output_path
        if options.dry_run:
            logger.info("[dry run] would create %s", path)
            return

        if (path.exists() or path.is_symlink()) and path not in run.created_paths:
            if not options.overwrite:
                raise DirectoryExistsError(path)
            if options.backup_on_overwrite and run.backup_path is None:
                run.backup_path = await self._backup(path)
            logger.info("Removing existing %s", path)
            await asyncio.to_thread(_remove_path, path)

        created = await asyncio.to_thread(_make_dirs, path)
        for directory in created:
            run.record_created(directory)

        if sys.platform != "win32":
            await asyncio.to_thread(path.chmod, 0o755)

    async def _backup(self, path: Path) -> Path:
        # The backup path must be new: a failed copy discards it.
        stamp = int(time.time() * 1000)
        backup = path.with_name(f"{path.name}.backup.{stamp}")
        while backup.exists() or backup.is_symlink():
            stamp += 1
            backup = path.with_name(f"{path.name}.backup.{stamp}")
        logger.info("Backing up %s to %s", path, backup)
        try:
            await asyncio.to_thread(_copy_path, path, backup)
        except OSError as exc:
            await asyncio.to_thread(_discard_partial, backup)
            raise FilesystemError(
                f"Could not back up '{path}': {exc}",
                "BACKUP_FAILED",
                "Check free disk space and permissions next to the project directory, "
                "or re-run with --no-backup",
                context={"path": path, "backup": backup},
            ) from exc
        return backup

    # ------------------------------------------------------------------
    # Stage 3: generate_files
    # ------------------------------------------------------------------

    async def generate_files(
        self, project: ProjectConfig, options: GenerationOptions, run: PipelineRun
    ) -> None:
        if options.dry_run:
            logger.info(
                "[dry run] would render '%s' with modules %s",
                project.template_id,
                list(project.module_ids),
            )
            return

        template = self._require_template(project.template_id)
        request = RenderRequest(
            template_id=project.template_id,
            name=project.name,
            type=template.type,
            framework=project.framework_id,
            module_ids=list(project.module_ids),
            output_path=project.output_path,
            variables=dict(project.variables),
        )
        result = await self.renderer.render(request)
        if not result.success:
            raise TemplateValidationFailedError(project.template_id, result.errors)
        logger.info("Generated %d file(s) in %s", len(result.files), project.output_path)

    # ------------------------------------------------------------------
    # Stage 4: install_dependencies
    # ------------------------------------------------------------------

    async def install_dependencies(
        self, project: ProjectConfig, options: GenerationOptions, run: PipelineRun
    ) -> None:
        manager = project.package_manager
        if options.dry_run or project.skip_install or manager is PackageManager.NONE:
            logger.info("Skipping dependency installation")
            return

        argv = manager.install_command
        try:
            returncode, _, stderr = await run_command(
                argv,
                cwd=project.output_path,
                timeout=self.settings.commands.install_timeout,
            )
        except FileNotFoundError as exc:
            raise PackageManagerNotFoundError(manager.value) from exc

        if returncode != 0:
            raise DependencyInstallError(manager.value, returncode, stderr)

    # ------------------------------------------------------------------
    # Stage 5: initialize_vcs
    # ------------------------------------------------------------------

    async def initialize_vcs(
        self, project: ProjectConfig, options: GenerationOptions, run: PipelineRun
    ) -> None:
        if options.dry_run or project.skip_vcs_init:
            logger.info("Skipping git initialisation")
            return

        commands = [
            ["git", "init"],
            ["git", "add", "."],
            ["git", "commit", "-m", self.settings.commands.commit_message],
        ]
        for argv in commands:
            try:
                returncode, _, stderr = await run_command(
                    argv,
                    cwd=project.output_path,
                    timeout=self.settings.commands.vcs_timeout,
                )
            except FileNotFoundError as exc:
                raise MissingSystemToolError("git", "repository initialisation") from exc
            if returncode != 0:
                raise VersionControlError(" ".join(argv), returncode, stderr)

    # ------------------------------------------------------------------
    # Stage 6: finalize
    # ------------------------------------------------------------------

    async def finalize(
        self, project: ProjectConfig, options: GenerationOptions, run: PipelineRun
    ) -> None:
        if options.dry_run:
            logger.info("[dry run] would write %s", self.settings.manifest_name)
            return

        manifest = Manifest(
            template=project.template_id,
            framework=project.framework_id,
            modules=list(project.module_ids),
            version=self.settings.tool_version,
        )
        target = project.output_path / self.settings.manifest_name
        try:
            await save_json(manifest.model_dump(mode="json"), target)
        except OSError as exc:
            def recreate_directory() -> None:
                target.parent.mkdir(parents=True, exist_ok=True)

            auto_fix = recreate_directory if isinstance(exc, FileNotFoundError) else None
            raise ManifestWriteError(target, str(exc), auto_fix) from exc

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback(self, run: PipelineRun) -> bool:
        """Undo the filesystem effects of *run*. Never raises.

        Returns:
            ``True`` when everything was restored. Calling it again after a
            clean rollback is a no-op that also returns ``True``.
        """
        path = run.output_path
        ok = True

        if run.owns_output and (path.exists() or path.is_symlink()):
            try:
                _remove_path(path)
                logger.info("Removed %s", path)
            except OSError as exc:
                logger.error("Rollback could not remove %s: %s", path, exc)
                ok = False

        if run.backup_path is not None:
            backup = run.backup_path
            if not backup.exists():
                logger.error("Backup %s is missing; cannot restore %s", backup, path)
                ok = False
            elif path.exists() or path.is_symlink():
                logger.error("Cannot restore %s: the path is still occupied", backup)
                ok = False
            else:
                try:
                    shutil.move(str(backup), str(path))
                    run.backup_path = None
                    logger.info("Restored backup %s to %s", backup, path)
                except OSError as exc:
                    logger.error("Rollback could not restore %s: %s", backup, exc)
                    ok = False

        for directory in reversed(run.created_paths):
            if directory == path or not directory.is_dir():
                continue
            try:
                if any(directory.iterdir()):
                    logger.debug("Leaving non-empty parent %s", directory)
                    continue
                directory.rmdir()
            except OSError as exc:
                logger.error("Rollback could not remove %s: %s", directory, exc)
                ok = False

        if ok:
            run.created_paths.clear()
        return ok

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_template(self, template_id: str) -> TemplateMetadata:
        template = self.lookup.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id, self.lookup.get_all_template_ids())
        return template


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def _nearest_existing(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path(path.anchor or "/")


def _is_writable(path: Path) -> bool:
    return os.access(path, os.W_OK | os.X_OK)


def _make_dirs(path: Path) -> list[Path]:
    """Create *path* and missing parents; return the created ones, top first."""
    missing = [p for p in (path, *path.parents) if not p.exists()]
    created: list[Path] = []
    for directory in reversed(missing):
        directory.mkdir()
        created.append(directory)
    return created


def _copy_path(source: Path, target: Path) -> None:
    if source.is_dir() and not source.is_symlink():
        shutil.copytree(source, target, symlinks=True)
    else:
        shutil.copy2(source, target, follow_symlinks=False)


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _discard_partial(backup: Path) -> None:
    if not (backup.exists() or backup.is_symlink()):
        return
    try:
        _remove_path(backup)
    except OSError as exc:
        logger.warning("Could not remove partial backup %s: %s", backup, exc)
