"""Unit tests for ProjectGenerator.rollback."""

from __future__ import annotations

import hashlib
from pathlib import Path
from unittest.mock import patch

import pytest

from dnagen.generator import GenerationOptions, PipelineRun


def _tree_digest(root: Path) -> dict[str, str]:
    return {
        p.relative_to(root).as_posix(): hashlib.sha256(p.read_bytes()).hexdigest()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


def _started(path: Path) -> PipelineRun:
    run = PipelineRun(output_path=path)
    run.start()
    return run


class TestRollback:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_removes_created_directory_and_parents(self, generator, project, options):
        run = _started(project.output_path)
        await generator.prepare_directory(project, options, run)
        (project.output_path / "file.txt").write_text("partial")

        assert generator.rollback(run) is True
        assert not project.output_path.exists()
        assert not project.output_path.parent.exists()
        assert run.created_paths == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_is_idempotent(self, generator, project, options):
        run = _started(project.output_path)
        await generator.prepare_directory(project, options, run)

        assert generator.rollback(run) is True
        assert generator.rollback(run) is True
        assert not project.output_path.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restores_backup_byte_for_byte(self, generator, project):
        original = project.output_path
        (original / "nested").mkdir(parents=True)
        (original / "nested" / "data.bin").write_bytes(bytes(range(256)))
        (original / "notes.md").write_text("keep me\n")
        before = _tree_digest(original)

        run = _started(original)
        await generator.prepare_directory(project, GenerationOptions(overwrite=True), run)
        (original / "generated.txt").write_text("new")
        backup = run.backup_path

        assert generator.rollback(run) is True
        assert _tree_digest(original) == before
        assert not backup.exists()
        assert run.backup_path is None

    @pytest.mark.unit
    def test_never_touches_unowned_directory(self, generator, tmp_path: Path):
        existing = tmp_path / "user-dir"
        existing.mkdir()
        (existing / "precious.txt").write_text("do not delete")
        run = _started(existing)

        assert generator.rollback(run) is True
        assert (existing / "precious.txt").read_text() == "do not delete"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keeps_non_empty_parent(self, generator, project, options):
        run = _started(project.output_path)
        await generator.prepare_directory(project, options, run)
        (project.output_path.parent / "sibling.txt").write_text("someone else's")

        assert generator.rollback(run) is True
        assert not project.output_path.exists()
        assert (project.output_path.parent / "sibling.txt").exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_removal_reports_false(self, generator, project, options, caplog):
        run = _started(project.output_path)
        await generator.prepare_directory(project, options, run)

        with patch("dnagen.generator.stages._remove_path", side_effect=OSError("busy")):
            assert generator.rollback(run) is False

        assert "busy" in caplog.text
        assert run.created_paths != []
        # A later attempt can still finish the job.
        assert generator.rollback(run) is True
        assert not project.output_path.exists()

    @pytest.mark.unit
    def test_missing_backup_reports_false(self, generator, tmp_path: Path):
        run = _started(tmp_path / "app")
        run.backup_path = tmp_path / "app.backup.123"

        assert generator.rollback(run) is False
