"""
Typst Compilation Module

Runs the external Typst compiler as an isolated subprocess. Source text is fed
over stdin; the artifact is captured from stdout or written to a file.
"""

import os
import re
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from dotenv import load_dotenv
from loguru import logger

from rxdoc.contexts.rendering.logger import (
    _log_debug,
    log_compilation_result,
    log_compilation_start,
)
from rxdoc.exceptions import (
    CompilationError,
    CompilationExitError,
    CompilationSpawnError,
    CompilationTimeoutError,
)

load_dotenv()

TYPST_COMPILER = os.getenv("TYPST_COMPILER", "typst")
COMPILE_TIMEOUT_S = float(os.getenv("RXDOC_COMPILE_TIMEOUT", "60"))
RASTER_PPI = int(os.getenv("RXDOC_PPI", "72"))
IGNORE_SYSTEM_FONTS = os.getenv("RXDOC_IGNORE_SYSTEM_FONTS", "true").lower() == "true"
FONT_PATHS = [Path(p) for p in os.getenv("RXDOC_FONT_PATHS", "").split(os.pathsep) if p]
# Fixed creation timestamp so identical input yields identical bytes
SOURCE_DATE_EPOCH = os.getenv("SOURCE_DATE_EPOCH", "0")

# Typst reads from stdin / writes to stdout when given "-"
STDIO = "-"
# Output template for multi-page raster export ({p} is the page number)
PAGE_TEMPLATE = "page-{p}"
_PAGE_NUMBER = re.compile(r"page-(\d+)\.")

_ERROR_LINE = re.compile(r"^error: (.+)$", re.MULTILINE)
_WARNING_LINE = re.compile(r"^warning: (.+)$", re.MULTILINE)


class OutputFormat(str, Enum):
    """Artifact formats supported by the compiler."""

    PDF = "pdf"
    PNG = "png"
    SVG = "svg"

    @property
    def suffix(self) -> str:
        return f".{self.value}"

    @property
    def is_paged_image(self) -> bool:
        """Image formats produce one file per page."""
        return self is not OutputFormat.PDF


@dataclass
class CompilationResult:
    """
    Result of a compilation that never raises.

    Attributes:
        success: Whether compilation succeeded
        output_format: Requested artifact format
        data: Artifact bytes when captured from stdout
        output_path: Path to the artifact when written to a file
        stderr: Diagnostic output from the compiler
        errors: Parsed compiler errors
        warnings: Parsed compiler warnings
        error_type: "exit", "spawn" or "timeout" on failure
        elapsed_time: Seconds spent compiling
    """

    success: bool
    output_format: OutputFormat = OutputFormat.PDF
    data: Optional[bytes] = None
    output_path: Optional[Path] = None
    stderr: str = ""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error_type: Optional[str] = None
    elapsed_time: float = 0.0


def parse_diagnostics(stderr: str) -> Tuple[List[str], List[str]]:
    """
    Parse Typst diagnostic output for errors and warnings.

    Typst prints each diagnostic as "error: <message>" or "warning: <message>"
    followed by an indented source excerpt.

    Args:
        stderr: Compiler standard error output

    Returns:
        Tuple of (errors, warnings)
    """
    errors = [m.group(1).strip() for m in _ERROR_LINE.finditer(stderr)]
    warnings = [m.group(1).strip() for m in _WARNING_LINE.finditer(stderr)]
    return errors, warnings


def _error_type(error: CompilationError) -> str:
    if isinstance(error, CompilationTimeoutError):
        return "timeout"
    if isinstance(error, CompilationSpawnError):
        return "spawn"
    return "exit"


class Compiler(ABC):
    """
    Typesetting compiler capability.

    The pipeline depends only on this interface, so production code, the
    golden-image validator and tests can swap implementations.
    """

    name = "compiler"

    @abstractmethod
    def compile(
        self,
        source: str,
        output_format: OutputFormat = OutputFormat.PDF,
        record_id: Optional[str] = None,
    ) -> bytes:
        """
        Compile source text to a single artifact.

        Raises:
            CompilationError: On any compiler failure
        """

    @abstractmethod
    def compile_pages(
        self,
        source: str,
        output_format: OutputFormat = OutputFormat.PNG,
        record_id: Optional[str] = None,
    ) -> List[bytes]:
        """
        Compile source text to one image per page, in page order.

        Raises:
            CompilationError: On any compiler failure
        """

    def compile_to_file(
        self,
        source: str,
        output_path: Path,
        output_format: OutputFormat = OutputFormat.PDF,
        record_id: Optional[str] = None,
    ) -> Path:
        """
        Compile source text and write the artifact atomically to output_path.

        Nothing is written to output_path if compilation fails.
        """
        data = self.compile(source, output_format, record_id=record_id)
        return write_atomic(Path(output_path), data)


def write_atomic(output_path: Path, data: bytes) -> Path:
    """
    Write bytes via a temporary sibling file and rename into place.

    Readers never see a partially written file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=output_path.parent, prefix=f".{output_path.stem}.", suffix=".tmp"
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, output_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return output_path


class TypstCompiler(Compiler):
    """
    Compiler implementation running the Typst CLI.

    Each call spawns its own process with its own pipes; instances hold only
    configuration and can be shared between threads.

    Args:
        executable: Typst binary (default: TYPST_COMPILER env, "typst")
        timeout: Seconds before the process is killed (default: RXDOC_COMPILE_TIMEOUT)
        ppi: Pixels per inch for raster output (default: RXDOC_PPI)
        root: Project root for resolving files referenced by the source
        font_paths: Extra font directories
        ignore_system_fonts: Use only embedded and font_paths fonts
        extra_args: Additional arguments inserted before input/output
    """

    name = "typst"

    def __init__(
        self,
        executable: Optional[str] = None,
        timeout: Optional[float] = None,
        ppi: Optional[int] = None,
        root: Optional[Path] = None,
        font_paths: Optional[Sequence[Path]] = None,
        ignore_system_fonts: Optional[bool] = None,
        extra_args: Optional[Sequence[str]] = None,
        log=logger,
    ):
        self.executable = str(executable or TYPST_COMPILER)
        self.timeout = COMPILE_TIMEOUT_S if timeout is None else timeout
        self.ppi = RASTER_PPI if ppi is None else ppi
        self.root = Path(root) if root else None
        self.font_paths = list(FONT_PATHS if font_paths is None else font_paths)
        self.ignore_system_fonts = (
            IGNORE_SYSTEM_FONTS if ignore_system_fonts is None else ignore_system_fonts
        )
        self.extra_args = list(extra_args or [])
        self.log = log

    def build_command(self, output: str, output_format: OutputFormat) -> List[str]:
        """
        Build the compiler command line.

        Args:
            output: Output path, page template, or "-" for stdout
            output_format: Artifact format

        Returns:
            Argument list for subprocess
        """
        cmd = [self.executable, "compile", "--format", output_format.value]
        if output_format.is_paged_image:
            cmd += ["--ppi", str(self.ppi)]
        if self.root is not None:
            cmd += ["--root", str(self.root)]
        for font_path in self.font_paths:
            cmd += ["--font-path", str(font_path)]
        if self.ignore_system_fonts:
            cmd.append("--ignore-system-fonts")
        cmd += self.extra_args
        cmd += [STDIO, output]
        return cmd

    def _environment(self) -> dict:
        env = dict(os.environ)
        env["SOURCE_DATE_EPOCH"] = SOURCE_DATE_EPOCH
        return env

    def _run(self, cmd: List[str], source: str, record_id: Optional[str]) -> Tuple[bytes, str]:
        """
        Run the compiler once, feeding source over stdin.

        The process and its pipes are released on every exit path: the Popen
        context manager closes the pipes and waits, and timeouts kill and drain
        the process before raising.

        Returns:
            (stdout bytes, decoded stderr)
        """
        _log_debug(f"Running: {' '.join(cmd)}", self.log)

        try:
            payload = source.encode("utf-8")
        except UnicodeEncodeError as e:
            raise CompilationError(
                f"Source is not valid UTF-8 text: {e.reason}",
                record_id=record_id,
                command=cmd,
            ) from e

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.root,
                env=self._environment(),
            )
        except OSError as e:
            raise CompilationSpawnError(
                f"Could not start compiler '{self.executable}': {e}",
                record_id=record_id,
                command=cmd,
            ) from e

        with proc:
            try:
                stdout, stderr = proc.communicate(payload, timeout=self.timeout)
            except subprocess.TimeoutExpired:
                proc.kill()
                stdout, stderr = proc.communicate()
                raise CompilationTimeoutError(
                    f"Compiler timed out after {self.timeout:g}s",
                    timeout=self.timeout,
                    diagnostics=stderr.decode("utf-8", errors="replace"),
                    record_id=record_id,
                    command=cmd,
                )
            except BaseException:
                proc.kill()
                raise

        stderr_text = stderr.decode("utf-8", errors="replace")
        errors, warnings = parse_diagnostics(stderr_text)

        if proc.returncode != 0:
            if not errors:
                last_line = stderr_text.strip().splitlines()[-1:] or [
                    f"exit status {proc.returncode}"
                ]
                errors = last_line
            raise CompilationExitError(
                f"Compiler exited with status {proc.returncode}",
                returncode=proc.returncode,
                diagnostics=stderr_text,
                errors=errors,
                warnings=warnings,
                record_id=record_id,
                command=cmd,
            )

        for warning in warnings:
            _log_debug(f"Compiler warning: {warning}", self.log)

        return stdout, stderr_text

    def compile(
        self,
        source: str,
        output_format: OutputFormat = OutputFormat.PDF,
        record_id: Optional[str] = None,
    ) -> bytes:
        """
        Compile source text, capturing the artifact from stdout.

        Image formats only work for single-page documents here; use
        compile_pages() for multi-page raster output.
        """
        cmd = self.build_command(STDIO, output_format)
        stdout, stderr_text = self._run(cmd, source, record_id)

        if not stdout:
            raise CompilationError(
                "Compiler produced no output",
                diagnostics=stderr_text,
                record_id=record_id,
                command=cmd,
            )
        return stdout

    def compile_pages(
        self,
        source: str,
        output_format: OutputFormat = OutputFormat.PNG,
        record_id: Optional[str] = None,
    ) -> List[bytes]:
        """Compile to one image per page via a private temporary directory."""
        if not output_format.is_paged_image:
            return [self.compile(source, output_format, record_id=record_id)]

        with tempfile.TemporaryDirectory(prefix="rxdoc-pages-") as tmp_dir:
            tmp_path = Path(tmp_dir)
            output = str(tmp_path / f"{PAGE_TEMPLATE}{output_format.suffix}")
            cmd = self.build_command(output, output_format)
            _, stderr_text = self._run(cmd, source, record_id)

            pages = []
            for page_file in tmp_path.glob(f"page-*{output_format.suffix}"):
                match = _PAGE_NUMBER.match(page_file.name)
                if match:
                    pages.append((int(match.group(1)), page_file.read_bytes()))

        if not pages:
            raise CompilationError(
                "Compiler produced no pages",
                diagnostics=stderr_text,
                record_id=record_id,
                command=cmd,
            )
        return [data for _, data in sorted(pages)]

    def compile_to_file(
        self,
        source: str,
        output_path: Path,
        output_format: OutputFormat = OutputFormat.PDF,
        record_id: Optional[str] = None,
    ) -> Path:
        """
        Compile directly to a file without exposing partial output.

        The compiler writes to a temporary sibling which is renamed into place
        only after a zero exit status; otherwise it is removed.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=output_path.parent, prefix=f".{output_path.stem}.", suffix=output_format.suffix
        )
        os.close(fd)
        tmp_path = Path(tmp_name)

        try:
            self._run(self.build_command(str(tmp_path), output_format), source, record_id)
            if not tmp_path.exists() or tmp_path.stat().st_size == 0:
                raise CompilationError(
                    "Compiler produced no output", record_id=record_id
                )
            os.replace(tmp_path, output_path)
        finally:
            tmp_path.unlink(missing_ok=True)

        return output_path


def compile_document(
    source: str,
    compiler: Optional[Compiler] = None,
    output_path: Optional[Path] = None,
    output_format: OutputFormat = OutputFormat.PDF,
    record_id: str = "-",
    verbose: bool = False,
    log=logger,
) -> CompilationResult:
    """
    Compile Typst source and report the outcome without raising.

    Compiler failures (nonzero exit, spawn failure, timeout) are caught, logged
    with the record identifier, and returned as success=False so the caller
    decides whether to retry.

    Args:
        source: Typst source text
        compiler: Compiler to use (default: TypstCompiler())
        output_path: Write the artifact here (atomically); None captures bytes
        output_format: Artifact format
        record_id: Record that triggered this compilation (for logs)
        verbose: Log full compiler diagnostics on success too

    Returns:
        CompilationResult with success status and diagnostic information
    """
    compiler = compiler or TypstCompiler()
    log = log.bind(record_id=record_id)

    destination = str(output_path) if output_path else "stdout"
    log_compilation_start(record_id, output_format.value, destination, log)

    start_time = time.time()
    try:
        if output_path is not None:
            path = compiler.compile_to_file(source, output_path, output_format, record_id=record_id)
            result = CompilationResult(success=True, output_format=output_format, output_path=path)
        else:
            data = compiler.compile(source, output_format, record_id=record_id)
            result = CompilationResult(success=True, output_format=output_format, data=data)
    except CompilationError as e:
        result = CompilationResult(
            success=False,
            output_format=output_format,
            stderr=e.diagnostics,
            errors=e.errors or [e.message],
            warnings=e.warnings,
            error_type=_error_type(e),
        )

    result.elapsed_time = time.time() - start_time
    log_compilation_result(record_id, result, result.elapsed_time, verbose=verbose, log=log)
    return result
