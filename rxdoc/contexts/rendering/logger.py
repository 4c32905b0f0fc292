"""
Rendering context logger.

Provides logging interface for rendering context with automatic [render] prefix.
All rendering modules should import from this module, not from utils.logger directly.

Every helper takes an optional ``log`` argument so callers can pass a logger
already bound to a record (``logger.bind(record_id=...)``).
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from rxdoc.utils.logger import setup_logger as _setup_logger

load_dotenv()

CONTEXT_PREFIX = "[render]"


def setup_rendering_logger(log_dir: Path) -> Path:
    """
    Setup logger for rendering context.

    Configures loguru with provenance tracking and rendering-specific context.

    Args:
        log_dir: Directory for this rendering session

    Returns:
        Path to log file

    Example:
        from rxdoc.contexts.rendering.logger import setup_rendering_logger

        log_file = setup_rendering_logger(log_dir)
    """
    return _setup_logger(
        context_name="render",
        log_dir=log_dir,
        extra_provenance={"Typst compiler": os.getenv("TYPST_COMPILER", "typst")},
    )


# Wrapper functions with automatic [render] prefix


def _log_info(message: str, log=logger) -> None:
    """Log info message with [render] prefix."""
    log.info(f"{CONTEXT_PREFIX} {message}")


def _log_success(message: str, log=logger) -> None:
    """Log success message with [render] prefix."""
    log.success(f"{CONTEXT_PREFIX} {message}")


def _log_error(message: str, log=logger) -> None:
    """Log error message with [render] prefix."""
    log.error(f"{CONTEXT_PREFIX} {message}")


def _log_warning(message: str, log=logger) -> None:
    """Log warning message with [render] prefix."""
    log.warning(f"{CONTEXT_PREFIX} {message}")


def _log_debug(message: str, log=logger) -> None:
    """Log debug message with [render] prefix."""
    log.debug(f"{CONTEXT_PREFIX} {message}")


# High-level rendering-specific logging helpers


def log_compilation_start(record_id: str, output_format: str, destination: str, log=logger) -> None:
    """Log start of compilation with context."""
    _log_info(f"Starting compilation: {record_id} ({output_format})", log)
    _log_debug(f"  Destination: {destination}", log)


def log_compilation_result(
    record_id: str,
    result,  # CompilationResult
    elapsed_time: float,
    verbose: bool = False,
    log=logger,
) -> None:
    """
    Log compilation result with diagnostics.

    Args:
        record_id: Record identifier
        result: CompilationResult from compile_document()
        elapsed_time: Time taken to compile
        verbose: Show detailed warnings/errors (default: False)
    """
    if result.success:
        _log_success(f"{record_id}: compiled with {len(result.warnings)} warnings ({elapsed_time:.2f}s)", log)
        if result.output_path:
            _log_debug(f"  Output: {result.output_path}", log)
    else:
        _log_error(
            f"{record_id}: compilation failed [{result.error_type}] "
            f"with {len(result.errors)} errors ({elapsed_time:.2f}s)",
            log,
        )
        error_limit = 10 if verbose else 5
        for i, err in enumerate(result.errors[:error_limit], 1):
            _log_error(f"  Error {i}: {err}", log)
        if len(result.errors) > error_limit:
            _log_error(f"  ... and {len(result.errors) - error_limit} more errors", log)

    if result.warnings:
        _log_warning(f"{len(result.warnings)} warnings detected", log)
        warning_limit = 10 if verbose else 3
        for i, warn in enumerate(result.warnings[:warning_limit], 1):
            _log_debug(f"  Warning {i}: {warn}", log)
        if len(result.warnings) > warning_limit:
            _log_debug(f"  ... and {len(result.warnings) - warning_limit} more warnings", log)

    # Full compiler output in verbose mode (or always on failure)
    # opt(raw=True) keeps multi-line output free of per-line prefixes
    if (verbose or not result.success) and result.stderr:
        log.opt(raw=True).debug(f"\n{'=' * 80}\nTYPST STDERR:\n{'=' * 80}\n{result.stderr}\n")


def log_validation_start(name: str, golden_dir: Path, expected_page_count: int, log=logger) -> None:
    """Log start of golden-image validation."""
    _log_info(f"Validating {name} against goldens", log)
    _log_debug(f"  Golden directory: {golden_dir}", log)
    _log_debug(f"  Expected pages: {expected_page_count}", log)


def log_validation_result(name: str, result, log=logger) -> None:  # ValidationResult
    """Log validation outcome and each issue."""
    if result.is_valid:
        _log_success(f"{name}: {result.actual_page_count} page(s) match goldens", log)
        return

    _log_error(f"{name}: validation failed with {len(result.issues)} issue(s)", log)
    for issue in result.issues:
        _log_error(f"  {issue}", log)
