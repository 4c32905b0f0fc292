"""
Templating context logger.

Provides logging interface for templating context with automatic [template] prefix.
All templating modules should import from this module, not from utils.logger directly.

Every helper takes an optional ``log`` argument so callers can pass a logger
already bound to a record (``logger.bind(record_id=...)``).
"""

from pathlib import Path

from loguru import logger

CONTEXT_PREFIX = "[template]"


# Wrapper functions with automatic [template] prefix


def _log_info(message: str, log=logger) -> None:
    """Log info message with [template] prefix."""
    log.info(f"{CONTEXT_PREFIX} {message}")


def _log_error(message: str, log=logger) -> None:
    """Log error message with [template] prefix."""
    log.error(f"{CONTEXT_PREFIX} {message}")


def _log_debug(message: str, log=logger) -> None:
    """Log debug message with [template] prefix."""
    log.debug(f"{CONTEXT_PREFIX} {message}")


# High-level templating-specific logging helpers


def log_template_loaded(template_id: str, version: str, template_path: Path, log=logger) -> None:
    """Log first load of a template into the registry cache."""
    _log_debug(f"Loaded template '{template_id}' v{version}", log)
    _log_debug(f"  Source: {template_path}", log)


def log_render_result(
    template_id: str,
    source_length: int,
    elapsed_time: float,
    defaulted_fields=(),
    log=logger,
) -> None:
    """
    Log a successful render.

    Args:
        template_id: Template identifier
        source_length: Number of characters of generated Typst source
        elapsed_time: Time taken to render
        defaulted_fields: Optional fields filled from manifest defaults
    """
    _log_info(f"Rendered '{template_id}': {source_length} chars ({elapsed_time:.3f}s)", log)
    if defaulted_fields:
        _log_debug(f"  Defaulted optional fields: {', '.join(defaulted_fields)}", log)
