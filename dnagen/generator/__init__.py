"""DNA generator core -- data model, stages, rollback and collaborators.

Quick usage::

    from dnagen.generator import ProjectConfig, ProjectGenerator

    project = ProjectConfig(
        name="my-app",
        output_path="/tmp/my-app",
        template_id="react-basic",
        framework_id="react",
    )
"""

from dnagen.generator.collaborators import (
    Confirmer,
    ProgressReporter,
    RichConfirmer,
    RichStageReporter,
    TemplateLookup,
    TemplateRenderer,
)
from dnagen.generator.models import (
    STAGE_ORDER,
    GenerationOptions,
    Manifest,
    Outcome,
    PackageManager,
    PipelineResult,
    PipelineRun,
    ProjectConfig,
    RenderRequest,
    RenderResult,
    RunStatus,
    Stage,
    TemplateMetadata,
)
from dnagen.generator.stages import ProjectGenerator
from dnagen.generator.templates import FileTemplateRegistry, JinjaTemplateRenderer
from dnagen.generator.validation import (
    output_path_problem,
    project_name_problem,
    validate_output_path,
    validate_project_name,
)

__all__ = [
    "STAGE_ORDER",
    "Confirmer",
    "FileTemplateRegistry",
    "GenerationOptions",
    "JinjaTemplateRenderer",
    "Manifest",
    "Outcome",
    "PackageManager",
    "PipelineResult",
    "PipelineRun",
    "ProgressReporter",
    "ProjectConfig",
    "ProjectGenerator",
    "RenderRequest",
    "RenderResult",
    "RichConfirmer",
    "RichStageReporter",
    "RunStatus",
    "Stage",
    "TemplateLookup",
    "TemplateMetadata",
    "TemplateRenderer",
    "output_path_problem",
    "project_name_problem",
    "validate_output_path",
    "validate_project_name",
]
