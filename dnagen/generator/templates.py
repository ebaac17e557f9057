"""File-based template registry and Jinja2 renderer.

A templates root is laid out as::

    <root>/<category>/<template>/template.yaml   (or template.json)
    <root>/<category>/<template>/base/...        rendered for every project
    <root>/<category>/<template>/modules/<id>/...  rendered per DNA module

Files ending in ``.j2`` are rendered with Jinja2 (the suffix is dropped);
everything else is copied verbatim.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from pathlib import Path
from typing import Any, Optional

import yaml
from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateError,
    select_autoescape,
)
from pydantic import ValidationError

from dnagen.utils import load_json

from .models import RenderRequest, RenderResult, TemplateMetadata

logger = logging.getLogger(__name__)

METADATA_FILES = ("template.yaml", "template.yml", "template.json")


# ---------------------------------------------------------------------------
# FileTemplateRegistry
# ---------------------------------------------------------------------------


class FileTemplateRegistry:
    """Discovers templates below a templates root.

    Metadata is read once, lazily. A metadata file that cannot be parsed or
    does not validate is logged and skipped.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._templates: dict[str, TemplateMetadata] | None = None

    def get_template(self, template_id: str) -> Optional[TemplateMetadata]:
        return self._load().get(template_id)

    def get_all_template_ids(self) -> list[str]:
        return sorted(self._load())

    def list_templates(self) -> list[TemplateMetadata]:
        return [self._load()[tid] for tid in self.get_all_template_ids()]

    def reload(self) -> None:
        self._templates = None

    def _load(self) -> dict[str, TemplateMetadata]:
        if self._templates is not None:
            return self._templates

        templates: dict[str, TemplateMetadata] = {}
        if not self.root.is_dir():
            logger.warning("Templates directory %s does not exist", self.root)
            self._templates = templates
            return templates

        for template_dir in sorted(p for p in self.root.glob("*/*") if p.is_dir()):
            meta_file = next(
                (template_dir / n for n in METADATA_FILES if (template_dir / n).is_file()),
                None,
            )
            if meta_file is None:
                continue
            metadata = _read_metadata(meta_file)
            if metadata is None:
                continue
            if metadata.id in templates:
                logger.warning(
                    "Duplicate template id '%s' in %s; keeping %s",
                    metadata.id,
                    template_dir,
                    templates[metadata.id].path,
                )
                continue
            templates[metadata.id] = metadata

        logger.debug("Loaded %d template(s) from %s", len(templates), self.root)
        self._templates = templates
        return templates


def _read_metadata(meta_file: Path) -> TemplateMetadata | None:
    try:
        if meta_file.suffix == ".json":
            raw = load_json(meta_file)
        else:
            raw = yaml.safe_load(meta_file.read_text(encoding="utf-8"))
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.warning("Skipping unreadable template metadata %s: %s", meta_file, exc)
        return None

    if not isinstance(raw, dict):
        logger.warning("Skipping template metadata %s: expected a mapping", meta_file)
        return None

    raw.setdefault("id", meta_file.parent.name)
    raw.setdefault("name", raw["id"])
    raw.setdefault("type", meta_file.parent.parent.name)
    raw["path"] = meta_file.parent
    try:
        return TemplateMetadata.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Skipping invalid template metadata %s: %s", meta_file, exc)
        return None


# ---------------------------------------------------------------------------
# JinjaTemplateRenderer
# ---------------------------------------------------------------------------


class JinjaTemplateRenderer:
    """Renders a template's base tree and its selected DNA modules.

    Module trees are rendered after the base tree, in request order, so a
    module file replaces a base file at the same relative path. Errors are
    collected per file; rendering continues past a failing file.
    """

    def __init__(self, lookup: Any) -> None:
        self.lookup = lookup

    async def render(self, request: RenderRequest) -> RenderResult:
        template = self.lookup.get_template(request.template_id)
        if template is None or template.path is None:
            return RenderResult(
                success=False,
                errors=[f"Template '{request.template_id}' has no source directory"],
            )

        env = _make_environment(template.path)
        context = _build_context(request, template)
        out_base = Path(request.output_path)

        errors: list[str] = []
        written: list[Path] = []

        trees = [("base", template.path / "base")]
        for module_id in request.module_ids:
            module_dir = template.path / "modules" / module_id
            if not module_dir.is_dir():
                errors.append(f"DNA module '{module_id}' is not provided by '{template.id}'")
                continue
            trees.append((f"modules/{module_id}", module_dir))

        for prefix, tree in trees:
            if not tree.is_dir():
                logger.debug("No %s tree in %s", prefix, template.path)
                continue
            for source in sorted(p for p in tree.rglob("*") if p.is_file()):
                rel = source.relative_to(tree)
                try:
                    target = await self._render_file(env, prefix, rel, source, out_base, context)
                except (TemplateError, OSError, UnicodeDecodeError) as exc:
                    errors.append(f"{prefix}/{rel.as_posix()}: {exc}")
                    continue
                if target not in written:
                    written.append(target)

        logger.info(
            "Rendered %d file(s) for '%s' with %d error(s)",
            len(written),
            request.template_id,
            len(errors),
        )
        return RenderResult(success=not errors, errors=errors, files=written)

    async def _render_file(
        self,
        env: Environment,
        prefix: str,
        rel: Path,
        source: Path,
        out_base: Path,
        context: dict[str, Any],
    ) -> Path:
        if source.suffix == ".j2":
            target = out_base / rel.with_suffix("")
            template = env.get_template(f"{prefix}/{rel.as_posix()}")
            content = template.render(**context)
            await asyncio.to_thread(_write_file, target, content)
        else:
            target = out_base / rel
            await asyncio.to_thread(_copy_file, source, target)
        return target


def _make_environment(template_root: Path) -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(template_root)),
        autoescape=select_autoescape([]),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["slugify"] = _slugify_filter
    env.filters["pascal_case"] = _pascal_case_filter
    env.filters["snake_case"] = _snake_case_filter
    env.filters["camel_case"] = _camel_case_filter
    return env


def _build_context(request: RenderRequest, template: TemplateMetadata) -> dict[str, Any]:
    # User variables may not shadow the built-in names.
    context: dict[str, Any] = dict(request.variables)
    context.update(
        {
            "name": request.name,
            "project_name": request.name,
            "type": request.type,
            "framework": request.framework,
            "modules": list(request.module_ids),
            "template": template.model_dump(exclude={"path"}),
            "variables": dict(request.variables),
        }
    )
    return context


# ---------------------------------------------------------------------------
# Jinja2 custom filters
# ---------------------------------------------------------------------------

def _slugify_filter(value: str) -> str:
    """Convert a string to a URL/filename-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower().strip())
    return slug.strip("-")


def _pascal_case_filter(value: str) -> str:
    """Convert ``some-thing`` or ``some_thing`` to ``SomeThing``."""
    parts = re.split(r"[-_\s]+", value)
    return "".join(word.capitalize() for word in parts if word)


def _snake_case_filter(value: str) -> str:
    """Convert ``SomeThing`` or ``some-thing`` to ``some_thing``."""
    s1 = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", value)
    s2 = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s1)
    return re.sub(r"[-\s]+", "_", s2).lower()


def _camel_case_filter(value: str) -> str:
    pascal = _pascal_case_filter(value)
    if pascal:
        return pascal[0].lower() + pascal[1:]
    return ""


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _write_file(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _copy_file(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, target)
