"""Shared pytest fixtures for the DNA generator test suite.

Provides reusable fixtures for:
- Settings with a zero disk-space threshold
- A real on-disk template tree (base + two DNA modules)
- In-memory template lookup and renderer fakes
- Quiet recovery engines and pipelines wired to the fakes
"""

from __future__ import annotations

import io
import textwrap
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from rich.console import Console

from dnagen.config import Config, ResourceConfig
from dnagen.errors import ErrorRecoveryEngine, RecoveryOptions
from dnagen.generator import (
    FileTemplateRegistry,
    GenerationOptions,
    PackageManager,
    ProjectConfig,
    ProjectGenerator,
    RenderResult,
    TemplateMetadata,
)
from dnagen.pipeline import GenerationPipeline


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path: Path) -> Config:
    """Config pointing at a temp templates root; disk check always passes."""
    return Config(
        templates_dir=tmp_path / "templates",
        resources=ResourceConfig(min_disk_space_mb=0),
    )


@pytest.fixture
def quiet_console() -> Console:
    return Console(file=io.StringIO(), force_terminal=False, width=120)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(content).lstrip("\n"), encoding="utf-8")


@pytest.fixture
def template_root(tmp_path: Path) -> Path:
    """Templates root with one ``react-basic`` template.

    Layout::

        templates/frontend/react-basic/template.yaml
        templates/frontend/react-basic/base/package.json.j2
        templates/frontend/react-basic/base/README.md.j2
        templates/frontend/react-basic/base/static/logo.txt
        templates/frontend/react-basic/modules/auth/src/auth.ts.j2
        templates/frontend/react-basic/modules/testing/jest.config.js
    """
    root = tmp_path / "templates"
    tpl = root / "frontend" / "react-basic"
    _write(
        tpl / "template.yaml",
        """
        id: react-basic
        name: React Basic
        type: frontend
        framework: react
        description: Minimal React starter
        dna_modules:
          - auth
          - testing
        features:
          - routing
        """,
    )
    _write(
        tpl / "base" / "package.json.j2",
        """
        {
          "name": "{{ name | slugify }}",
          "version": "0.1.0"
        }
        """,
    )
    _write(
        tpl / "base" / "README.md.j2",
        """
        # {{ name | pascal_case }}

        Framework: {{ framework }}
        Modules: {{ modules | join(", ") }}
        """,
    )
    _write(tpl / "base" / "static" / "logo.txt", "{{ not rendered }}\n")
    _write(
        tpl / "modules" / "auth" / "src" / "auth.ts.j2",
        """
        export const provider = "{{ auth_provider }}";
        """,
    )
    _write(tpl / "modules" / "testing" / "jest.config.js", "module.exports = {};\n")
    return root


@pytest.fixture
def registry(template_root: Path) -> FileTemplateRegistry:
    return FileTemplateRegistry(template_root)


@pytest.fixture
def react_template() -> TemplateMetadata:
    return TemplateMetadata(
        id="react-basic",
        name="React Basic",
        type="frontend",
        framework="react",
        dna_modules=["auth", "testing"],
    )


class FakeLookup:
    """In-memory ``TemplateLookup``."""

    def __init__(self, *templates: TemplateMetadata) -> None:
        self.templates = {t.id: t for t in templates}

    def get_template(self, template_id: str) -> TemplateMetadata | None:
        return self.templates.get(template_id)

    def get_all_template_ids(self) -> list[str]:
        return sorted(self.templates)


@pytest.fixture
def lookup(react_template: TemplateMetadata) -> FakeLookup:
    return FakeLookup(react_template)


@pytest.fixture
def make_lookup():
    """Factory for in-memory lookups over arbitrary templates."""
    return FakeLookup


@pytest.fixture
def renderer() -> MagicMock:
    """Renderer whose ``render`` writes one file and succeeds."""

    async def _render(request: Any) -> RenderResult:
        target = Path(request.output_path) / "index.js"
        target.write_text("console.log('hi');\n", encoding="utf-8")
        return RenderResult(success=True, files=[target])

    fake = MagicMock()
    fake.render = AsyncMock(side_effect=_render)
    return fake


# ---------------------------------------------------------------------------
# Project inputs
# ---------------------------------------------------------------------------

@pytest.fixture
def project(tmp_path: Path) -> ProjectConfig:
    return ProjectConfig(
        name="my-app",
        output_path=tmp_path / "out" / "my-app",
        template_id="react-basic",
        framework_id="react",
        module_ids=("auth",),
        package_manager=PackageManager.NPM,
    )


@pytest.fixture
def options() -> GenerationOptions:
    return GenerationOptions(interactive=False)


@pytest.fixture
def recovery_options() -> RecoveryOptions:
    """Non-interactive, no auto-fix, default retry limit."""
    return RecoveryOptions(interactive=False, auto_fix=False, max_retries=3)


# ---------------------------------------------------------------------------
# Engine, generator, pipeline
# ---------------------------------------------------------------------------

@pytest.fixture
def engine(quiet_console: Console) -> ErrorRecoveryEngine:
    return ErrorRecoveryEngine(console=quiet_console)


@pytest.fixture
def generator(settings: Config, lookup: FakeLookup, renderer: MagicMock) -> ProjectGenerator:
    return ProjectGenerator(settings, lookup, renderer)


@pytest.fixture
def pipeline(
    generator: ProjectGenerator,
    engine: ErrorRecoveryEngine,
    recovery_options: RecoveryOptions,
) -> GenerationPipeline:
    return GenerationPipeline(generator, engine, recovery_options=recovery_options)


@pytest.fixture
def ok_command() -> AsyncMock:
    """``run_command`` replacement that always succeeds."""
    return AsyncMock(return_value=(0, "", ""))
