"""
Document Pipeline

Sequences template rendering and compilation for one record and reports the
outcome as a typed PipelineResult. Every invocation is independent: the
pipeline holds only collaborators and configuration, never per-call state.

State machine per invocation:

    PENDING -> RENDERED -> COMPILED -> DONE
       \\          \\           \\
        +----------+-----------+--> FAILED

No retries are attempted; callers inspect PipelineError.kind and decide.
"""

import hashlib
import json
import os
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from dotenv import load_dotenv
from loguru import logger

from rxdoc.contexts.rendering.compiler import Compiler, OutputFormat, TypstCompiler, write_atomic
from rxdoc.contexts.templating.renderer import TemplateRenderer
from rxdoc.exceptions import (
    ArtifactStorageError,
    CompilationError,
    CompilationSpawnError,
    CompilationTimeoutError,
    MissingFieldError,
    RxdocError,
    TemplateNotFoundError,
    TemplateRenderError,
    UnexpectedPipelineError,
    ValidationMismatchError,
)
from rxdoc.utils.pdf_processing import pdf_page_count_from_bytes

load_dotenv()
DEFAULT_TEMPLATE_ID = os.getenv("RXDOC_DEFAULT_TEMPLATE", "prescription")
OUTPUT_PATH = os.getenv("RXDOC_OUTPUT_PATH")
MAX_WORKERS = int(os.getenv("RXDOC_MAX_WORKERS", "4"))

CONTEXT_PREFIX = "[pipeline]"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class PipelineState(str, Enum):
    PENDING = "pending"
    RENDERED = "rendered"
    COMPILED = "compiled"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = frozenset({PipelineState.DONE, PipelineState.FAILED})

_NEXT_STATE = {
    PipelineState.PENDING: PipelineState.RENDERED,
    PipelineState.RENDERED: PipelineState.COMPILED,
    PipelineState.COMPILED: PipelineState.DONE,
}


class ErrorKind(str, Enum):
    """Why a pipeline invocation failed."""

    TEMPLATE_NOT_FOUND = "template_not_found"
    MISSING_FIELD = "missing_field"
    RENDER_FAILED = "render_failed"
    COMPILATION_FAILED = "compilation_failed"
    COMPILATION_TIMEOUT = "compilation_timeout"
    COMPILER_UNAVAILABLE = "compiler_unavailable"
    VALIDATION_FAILED = "validation_failed"
    STORAGE_FAILED = "storage_failed"
    INTERNAL = "internal"


# Kinds a caller may reasonably retry without changing its input
RETRYABLE_KINDS = frozenset(
    {ErrorKind.COMPILATION_FAILED, ErrorKind.COMPILATION_TIMEOUT, ErrorKind.STORAGE_FAILED}
)


def classify_error(error: RxdocError) -> ErrorKind:
    """Map an exception from a pipeline stage to its ErrorKind."""
    if isinstance(error, TemplateNotFoundError):
        return ErrorKind.TEMPLATE_NOT_FOUND
    if isinstance(error, MissingFieldError):
        return ErrorKind.MISSING_FIELD
    if isinstance(error, TemplateRenderError):
        return ErrorKind.RENDER_FAILED
    if isinstance(error, CompilationTimeoutError):
        return ErrorKind.COMPILATION_TIMEOUT
    if isinstance(error, CompilationSpawnError):
        return ErrorKind.COMPILER_UNAVAILABLE
    if isinstance(error, CompilationError):
        return ErrorKind.COMPILATION_FAILED
    if isinstance(error, ValidationMismatchError):
        return ErrorKind.VALIDATION_FAILED
    if isinstance(error, ArtifactStorageError):
        return ErrorKind.STORAGE_FAILED
    return ErrorKind.INTERNAL


@dataclass(frozen=True)
class ArtifactHandle:
    """
    A compiled artifact handed to the caller. Never mutated after creation.

    Attributes:
        record_id: Record the artifact was generated for
        template_id: Template identifier
        template_version: Template version from the manifest
        output_format: Artifact format
        data: Artifact bytes (single-file formats)
        pages: One image per page (raster mode)
        path: Where the artifact was stored, if persisted
        page_count: Number of pages, when known
    """

    record_id: str
    template_id: str
    template_version: str
    output_format: OutputFormat
    data: bytes = field(default=b"", repr=False)
    pages: Tuple[bytes, ...] = field(default=(), repr=False)
    path: Optional[Path] = None
    page_count: Optional[int] = None

    @property
    def sha256(self) -> str:
        digest = hashlib.sha256(self.data)
        for page in self.pages:
            digest.update(page)
        return digest.hexdigest()

    def read_bytes(self) -> bytes:
        """Artifact bytes, from memory or from the stored file."""
        if self.data or self.path is None:
            return self.data
        return self.path.read_bytes()


@dataclass(frozen=True)
class PipelineError:
    """
    Structured failure returned instead of raising.

    Attributes:
        kind: Failure category
        message: Human-readable summary
        record_id: Record that failed
        failed_in: State the invocation was in when it failed
        diagnostics: Compiler output or diff report, when available
        missing_fields: Dotted field names (MISSING_FIELD only)
        cause: The original exception
    """

    kind: ErrorKind
    message: str
    record_id: str
    failed_in: PipelineState
    diagnostics: str = ""
    missing_fields: Tuple[str, ...] = ()
    cause: Optional[RxdocError] = field(default=None, repr=False, compare=False)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


@dataclass
class PipelineResult:
    """
    Outcome of one pipeline invocation.

    Exactly one of artifact (state DONE) or error (state FAILED) is set once
    the invocation finishes.
    """

    record_id: str
    template_id: str
    state: PipelineState = PipelineState.PENDING
    transitions: List[PipelineState] = field(default_factory=lambda: [PipelineState.PENDING])
    artifact: Optional[ArtifactHandle] = None
    error: Optional[PipelineError] = None
    source: Optional[str] = field(default=None, repr=False)
    elapsed_time: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.DONE

    def advance(self) -> PipelineState:
        """Move to the next state in the success path."""
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Cannot advance from terminal state {self.state.value}")
        self.state = _NEXT_STATE[self.state]
        self.transitions.append(self.state)
        return self.state

    def fail(self, error: RxdocError) -> PipelineError:
        """Move to FAILED, recording the originating error."""
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Cannot fail from terminal state {self.state.value}")

        diagnostics = ""
        if isinstance(error, CompilationError):
            diagnostics = error.diagnostics
        elif isinstance(error, ValidationMismatchError):
            diagnostics = error.report

        self.error = PipelineError(
            kind=classify_error(error),
            message=str(error).splitlines()[0] if str(error) else type(error).__name__,
            record_id=self.record_id,
            failed_in=self.state,
            diagnostics=diagnostics,
            missing_fields=tuple(getattr(error, "missing_fields", ())),
            cause=error,
        )
        self.artifact = None
        self.state = PipelineState.FAILED
        self.transitions.append(self.state)
        return self.error

    def unwrap(self) -> ArtifactHandle:
        """
        Return the artifact or raise the originating error.

        Raises:
            RxdocError: The error that failed the invocation
        """
        if self.ok:
            return self.artifact
        if self.error is not None and self.error.cause is not None:
            raise self.error.cause
        raise RxdocError(f"Pipeline for '{self.record_id}' did not complete ({self.state.value})")


def resolve_record_id(context: Mapping[str, Any], record_id: Optional[str] = None) -> str:
    """
    Stable identifier for logging and file naming.

    Uses the explicit argument, then the context's record_id field, then a
    content hash of the context so identical input gets the same identifier.
    """
    if record_id:
        return str(record_id)
    value = context.get("record_id") if isinstance(context, Mapping) else None
    if value not in (None, ""):
        return str(value)
    payload = json.dumps(context, sort_keys=True, default=str).encode("utf-8")
    return f"ctx-{hashlib.sha256(payload).hexdigest()[:12]}"


def artifact_filename(record_id: str, output_format: OutputFormat) -> str:
    """Filesystem-safe artifact name for a record."""
    stem = _UNSAFE_FILENAME_CHARS.sub("_", record_id).strip("._") or "record"
    return f"{stem}{output_format.suffix}"


class DocumentPipeline:
    """
    Render-then-compile orchestrator.

    Args:
        renderer: Template renderer (default: TemplateRenderer())
        compiler: Compiler capability (default: TypstCompiler())
        output_dir: Persist PDFs as {output_dir}/{record_id}.pdf (default:
                    RXDOC_OUTPUT_PATH, or keep artifacts in memory only)
        default_template_id: Template used when none is given
        log: Logging collaborator; each invocation binds record_id onto it

    Example:
        >>> pipeline = DocumentPipeline()
        >>> result = pipeline.generate({"record_id": "R-1", "patient": {...}, "date": "2024-03-05"})
        >>> if result.ok:
        ...     pdf_bytes = result.artifact.read_bytes()
        ... elif result.error.kind is ErrorKind.MISSING_FIELD:
        ...     print(result.error.missing_fields)
    """

    def __init__(
        self,
        renderer: Optional[TemplateRenderer] = None,
        compiler: Optional[Compiler] = None,
        output_dir: Optional[Path] = None,
        default_template_id: str = DEFAULT_TEMPLATE_ID,
        log=logger,
    ):
        self.renderer = renderer or TemplateRenderer()
        self.compiler = compiler or TypstCompiler()
        if output_dir is None and OUTPUT_PATH:
            output_dir = Path(OUTPUT_PATH)
        self.output_dir = Path(output_dir) if output_dir else None
        self.default_template_id = default_template_id
        self.log = log

    def generate(
        self,
        context: Mapping[str, Any],
        template_id: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> PipelineResult:
        """
        Generate a PDF for one record.

        Never raises for pipeline failures; inspect result.ok / result.error.

        Args:
            context: RenderContext
            template_id: Template identifier (default: default_template_id)
            record_id: Stable record identifier (default: see resolve_record_id)

        Returns:
            PipelineResult holding an ArtifactHandle or a PipelineError
        """

        def compile_pdf(source: str, rid: str, version: str, tid: str) -> ArtifactHandle:
            data = self.compiler.compile(source, OutputFormat.PDF, record_id=rid)
            return ArtifactHandle(
                record_id=rid,
                template_id=tid,
                template_version=version,
                output_format=OutputFormat.PDF,
                data=data,
                page_count=pdf_page_count_from_bytes(data),
            )

        return self._run(context, template_id, record_id, compile_pdf, persist=True)

    def render_pages(
        self,
        context: Mapping[str, Any],
        template_id: Optional[str] = None,
        record_id: Optional[str] = None,
        output_format: OutputFormat = OutputFormat.PNG,
        validator=None,  # ArtifactValidator
    ) -> PipelineResult:
        """
        Run the same pipeline in raster mode, producing one image per page.

        When a validator is given, its result decides between DONE and FAILED
        (kind VALIDATION_FAILED). Raster artifacts are never persisted.
        """

        def compile_raster(source: str, rid: str, version: str, tid: str) -> ArtifactHandle:
            pages = self.compiler.compile_pages(source, output_format, record_id=rid)
            return ArtifactHandle(
                record_id=rid,
                template_id=tid,
                template_version=version,
                output_format=output_format,
                pages=tuple(pages),
                page_count=len(pages),
            )

        return self._run(
            context, template_id, record_id, compile_raster, persist=False, validator=validator
        )

    def generate_many(
        self,
        contexts: Iterable[Mapping[str, Any]],
        template_id: Optional[str] = None,
        max_workers: int = MAX_WORKERS,
    ) -> List[PipelineResult]:
        """
        Run independent generate() calls concurrently.

        Returns:
            Results in the same order as contexts
        """
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rxdoc") as executor:
            futures = [executor.submit(self.generate, context, template_id) for context in contexts]
            return [future.result() for future in futures]

    def _run(
        self,
        context: Mapping[str, Any],
        template_id: Optional[str],
        record_id: Optional[str],
        compile_step,
        persist: bool,
        validator=None,
    ) -> PipelineResult:
        template_id = template_id or self.default_template_id
        record_id = resolve_record_id(context, record_id)
        log = self.log.bind(record_id=record_id, template=template_id)
        result = PipelineResult(record_id=record_id, template_id=template_id)

        log.info(f"{CONTEXT_PREFIX} Starting {record_id} with template '{template_id}'")
        start_time = time.time()

        try:
            source = self.renderer.render(template_id, context, log=log)
            result.source = source
            result.advance()
            log.debug(f"{CONTEXT_PREFIX} State: {result.state.value}")

            version = self.renderer.resolve(template_id).version
            artifact = compile_step(source, record_id, version, template_id)
            result.advance()
            log.debug(f"{CONTEXT_PREFIX} State: {result.state.value} ({artifact.page_count} page(s))")

            if validator is not None:
                validation = validator.validate(list(artifact.pages), name=record_id)
                if not validation.is_valid:
                    raise ValidationMismatchError(validation.report, issues=validation.issues)

            if persist and self.output_dir is not None:
                artifact = self._store(artifact)

            result.artifact = artifact
            result.advance()
        except RxdocError as e:
            self._log_failure(result.fail(e), log)
        except Exception as e:
            # Nothing escapes an invocation
            log.opt(exception=e).debug(f"{CONTEXT_PREFIX} Unexpected error")
            wrapped = UnexpectedPipelineError(e)
            wrapped.__cause__ = e
            self._log_failure(result.fail(wrapped), log)

        result.elapsed_time = time.time() - start_time
        if result.ok:
            log.success(
                f"{CONTEXT_PREFIX} Done {record_id} ({result.elapsed_time:.2f}s, "
                f"sha256 {result.artifact.sha256[:12]})"
            )
        return result

    @staticmethod
    def _log_failure(error: PipelineError, log) -> None:
        log.error(
            f"{CONTEXT_PREFIX} Failed in {error.failed_in.value}: [{error.kind.value}] {error.message}"
        )
        if error.diagnostics:
            log.opt(raw=True).debug(f"{error.diagnostics}\n")

    def _store(self, artifact: ArtifactHandle) -> ArtifactHandle:
        path = self.output_dir / artifact_filename(artifact.record_id, artifact.output_format)
        try:
            write_atomic(path, artifact.data)
        except OSError as e:
            raise ArtifactStorageError(f"Could not write artifact ({e})", path) from e
        return ArtifactHandle(
            record_id=artifact.record_id,
            template_id=artifact.template_id,
            template_version=artifact.template_version,
            output_format=artifact.output_format,
            data=artifact.data,
            path=path,
            page_count=artifact.page_count,
        )
