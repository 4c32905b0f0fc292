"""
Templating Context

Responsibilities:
- Resolves template identifiers to versioned Typst templates and manifests
- Checks RenderContexts against the manifest's required fields
- Binds context data into templates through named, reusable transforms

Owns: Template loading, context validation, Typst source generation
Never: Runs the typesetting compiler
"""

from rxdoc.contexts.templating.renderer import TemplateRenderer
from rxdoc.contexts.templating.template_registry import TemplateRegistry, TemplateSource
from rxdoc.contexts.templating.transforms import TRANSFORMS

__all__ = [
    "TemplateRegistry",
    "TemplateRenderer",
    "TemplateSource",
    "TRANSFORMS",
]
