"""
Exception hierarchy for the document pipeline.

Internal components raise these; the pipeline orchestrator catches them at its
boundary and converts them into a PipelineResult.
"""

from pathlib import Path
from typing import List, Optional, Sequence


class RxdocError(Exception):
    """Base class for all pipeline errors."""


class TemplateNotFoundError(RxdocError):
    """
    Raised when a template identifier does not resolve to a template directory.

    Attributes:
        template_id: The identifier that failed to resolve
        search_path: Where the registry looked
    """

    def __init__(self, template_id: str, search_path: Optional[Path] = None, reason: str = ""):
        self.template_id = template_id
        self.search_path = search_path

        parts = [f"Template not found: '{template_id}'"]
        if search_path is not None:
            parts.append(f"Searched in: {search_path}")
        if reason:
            parts.append(reason)

        super().__init__("\n".join(parts))


class MissingFieldError(RxdocError):
    """
    Raised when a RenderContext lacks one or more required fields.

    Attributes:
        missing_fields: Dotted names of every missing field (e.g. 'patient.name')
        template_id: Template that declared the fields as required
    """

    def __init__(self, missing_fields: Sequence[str], template_id: Optional[str] = None):
        self.missing_fields = list(missing_fields)
        self.template_id = template_id

        message = f"Missing required field(s): {', '.join(self.missing_fields)}"
        if template_id:
            message += f" (template '{template_id}')"

        super().__init__(message)


class TemplateRenderError(RxdocError):
    """
    Raised when template rendering fails for reasons other than missing data.

    Attributes:
        template_id: Template being rendered
        template_path: Path to the template file
        original_error: The original Jinja2 error
    """

    def __init__(
        self,
        message: str,
        template_id: Optional[str] = None,
        template_path: Optional[Path] = None,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.template_id = template_id
        self.template_path = template_path
        self.original_error = original_error

        parts = [message]

        if template_id and template_path:
            parts.append(f"\nTemplate: {template_path}")
            parts.append(f"Identifier: {template_id}")

        if original_error:
            parts.append(f"\nOriginal error: {str(original_error)}")

        super().__init__("\n".join(parts))


class CompilationError(RxdocError):
    """
    Raised when the external typesetting compiler fails.

    Attributes:
        message: Error description
        diagnostics: Raw diagnostic text from the compiler (stderr)
        errors: Parsed error lines
        warnings: Parsed warning lines
        record_id: Record that triggered the compilation, when known
        command: Command line that was executed
    """

    def __init__(
        self,
        message: str,
        diagnostics: str = "",
        errors: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
        record_id: Optional[str] = None,
        command: Optional[List[str]] = None,
    ):
        self.message = message
        self.diagnostics = diagnostics
        self.errors = errors or []
        self.warnings = warnings or []
        self.record_id = record_id
        self.command = command

        parts = [message]
        if record_id:
            parts.append(f"Record: {record_id}")
        if diagnostics:
            # Truncate long compiler output
            text = diagnostics if len(diagnostics) <= 2000 else diagnostics[:2000] + "..."
            parts.append(f"\nCompiler output:\n{text}")

        super().__init__("\n".join(parts))


class CompilationExitError(CompilationError):
    """The compiler ran but exited with a nonzero status."""

    def __init__(self, message: str, returncode: int, **kwargs):
        self.returncode = returncode
        super().__init__(message, **kwargs)


class CompilationSpawnError(CompilationError):
    """The compiler process could not be started (missing binary, permissions)."""


class CompilationTimeoutError(CompilationError):
    """The compiler exceeded its time budget and was terminated."""

    def __init__(self, message: str, timeout: float, **kwargs):
        self.timeout = timeout
        super().__init__(message, **kwargs)


class ValidationMismatchError(RxdocError):
    """
    Raised by the artifact validator when rendered pages differ from golden images.

    Never raised on the production path.

    Attributes:
        report: Human-readable diff report
        issues: Individual issue lines
    """

    def __init__(self, report: str, issues: Optional[List[str]] = None):
        self.report = report
        self.issues = issues or []
        super().__init__(report)


class PageCountMismatchError(ValidationMismatchError):
    """Rendered page count differs from the declared expected page count."""

    def __init__(self, expected: int, actual: int, report: str = ""):
        self.expected = expected
        self.actual = actual
        message = report or (
            f"Page count mismatch: expected {expected} page(s), got {actual}. "
            "Update validation.expected_page_count in the template manifest if the layout changed."
        )
        super().__init__(message, issues=[f"issue:page_count::expected:{expected}::actual:{actual}"])


class ArtifactStorageError(RxdocError):
    """Raised when a compiled artifact cannot be written to its destination."""

    def __init__(self, message: str, path: Optional[Path] = None):
        self.path = path
        super().__init__(f"{message}: {path}" if path else message)


class UnexpectedPipelineError(RxdocError):
    """
    Wraps an exception outside the taxonomy raised during a pipeline invocation.

    Attributes:
        original_error: The exception that was caught
    """

    def __init__(self, original_error: Exception):
        self.original_error = original_error
        super().__init__(f"Unexpected {type(original_error).__name__}: {original_error}")
