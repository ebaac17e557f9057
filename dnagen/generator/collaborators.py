"""Interfaces the pipeline depends on, plus the Rich console defaults.

The pipeline only talks to templates, prompts and progress output through
these protocols so each can be swapped (tests use simple fakes).
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from rich.console import Console
from rich.prompt import Confirm

from dnagen.utils import console as default_console
from dnagen.utils import print_stage_header

from .models import STAGE_ORDER, RenderRequest, RenderResult, TemplateMetadata


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class TemplateLookup(Protocol):
    def get_template(self, template_id: str) -> Optional[TemplateMetadata]: ...

    def get_all_template_ids(self) -> list[str]: ...


@runtime_checkable
class TemplateRenderer(Protocol):
    async def render(self, request: RenderRequest) -> RenderResult: ...


@runtime_checkable
class Confirmer(Protocol):
    def confirm(self, prompt: str) -> bool: ...


@runtime_checkable
class ProgressReporter(Protocol):
    def on_stage_start(self, name: str) -> None: ...

    def on_stage_progress(self, fraction: float) -> None: ...


# ---------------------------------------------------------------------------
# Rich defaults
# ---------------------------------------------------------------------------

class RichConfirmer:
    """Yes/no prompt on the terminal. Defaults to "no"."""

    def __init__(self, console: Console | None = None, default: bool = False) -> None:
        self.console = console or default_console
        self.default = default

    def confirm(self, prompt: str) -> bool:
        return Confirm.ask(prompt, default=self.default, console=self.console)


class RichStageReporter:
    """Prints a numbered rule per stage and the running completion percentage."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or default_console
        self._number = 0

    def on_stage_start(self, name: str) -> None:
        # Known labels carry their own position; a reused reporter restarts at 1.
        labels = [stage.label for stage in STAGE_ORDER]
        if name in labels:
            self._number = labels.index(name) + 1
        else:
            self._number += 1
        print_stage_header(self._number, name, total=len(STAGE_ORDER))

    def on_stage_progress(self, fraction: float) -> None:
        self.console.print(f"[dim]{fraction:.0%} complete[/dim]")
