"""
Rendering Context

Responsibilities:
- Runs the Typst compiler as an isolated subprocess
- Captures artifacts from stdout or writes them atomically to disk
- Converts compiler failures into typed errors or result objects
- Validates rendered pages against golden images (test-time)

Owns: Typst invocation, artifact output, golden-image validation
Never: Modifies template content
"""

from rxdoc.contexts.rendering.compiler import (
    CompilationResult,
    Compiler,
    OutputFormat,
    TypstCompiler,
    compile_document,
)
from rxdoc.contexts.rendering.validator import (
    ArtifactValidator,
    ValidationResult,
    validate_document,
)

__all__ = [
    "ArtifactValidator",
    "CompilationResult",
    "Compiler",
    "OutputFormat",
    "TypstCompiler",
    "ValidationResult",
    "compile_document",
    "validate_document",
]
