"""DNA project generator.

Scaffolds new projects from a base template plus composable DNA modules,
through a transactional six-stage pipeline with rollback and an explicit
error recovery engine.
"""

__version__ = "0.1.0"
