"""
Template Renderer

Binds a RenderContext into a versioned Typst template, producing Typst source text.
"""

import copy
import time
from typing import Any, Dict, List, Mapping, Optional

from jinja2 import TemplateError, UndefinedError
from loguru import logger

from rxdoc.contexts.templating.logger import _log_error, log_render_result
from rxdoc.contexts.templating.template_registry import TemplateRegistry, TemplateSource
from rxdoc.exceptions import MissingFieldError, TemplateRenderError

_MISSING = object()


def lookup_field(context: Mapping[str, Any], dotted_name: str) -> Any:
    """
    Resolve a dotted field name against nested mappings.

    Returns the module-level _MISSING sentinel when any path segment is absent.

    Example:
        >>> lookup_field({"patient": {"name": "Ada"}}, "patient.name")
        'Ada'
    """
    current: Any = context
    for part in dotted_name.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _assign_field(context: Dict[str, Any], dotted_name: str, value: Any) -> None:
    """Set a dotted field on nested dicts, creating intermediate dicts as needed."""
    parts = dotted_name.split(".")
    current = context
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def find_missing_fields(context: Mapping[str, Any], required_fields) -> List[str]:
    """Required fields that are absent from the context or set to None."""
    missing = []
    for name in required_fields:
        value = lookup_field(context, name)
        if value is _MISSING or value is None:
            missing.append(name)
    return missing


def _undefined_name(error: UndefinedError) -> str:
    # Jinja messages look like "'dict object' has no attribute 'age'" or "'age' is undefined"
    message = str(error)
    quoted = [part for i, part in enumerate(message.split("'")) if i % 2 == 1]
    return quoted[-1] if quoted else message


class TemplateRenderer:
    """
    Renders templates from a TemplateRegistry with a RenderContext.

    The renderer has no per-call state; one instance can serve concurrent callers.
    """

    def __init__(self, registry: Optional[TemplateRegistry] = None):
        self.registry = registry or TemplateRegistry()

    def resolve(self, template_id: str) -> TemplateSource:
        """Resolve a template identifier (raises TemplateNotFoundError)."""
        return self.registry.get(template_id)

    def build_context(self, source: TemplateSource, context: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Validate a RenderContext and build the template variables.

        Required fields are checked first; optional fields missing from the
        context are filled with their manifest defaults. The caller's mapping is
        never modified.

        Raises:
            MissingFieldError: If any required field is absent or None
        """
        missing = find_missing_fields(context, source.required_fields)
        if missing:
            raise MissingFieldError(missing, template_id=source.template_id)

        variables = copy.deepcopy(dict(context))
        for name, default in source.optional_fields.items():
            if lookup_field(variables, name) is _MISSING:
                _assign_field(variables, name, copy.deepcopy(default))

        return variables

    def render(self, template_id: str, context: Mapping[str, Any], log=logger) -> str:
        """
        Render a template with a RenderContext.

        Args:
            template_id: Template identifier
            context: RenderContext mapping
            log: Logger (typically bound to a record) for diagnostics

        Returns:
            Typst source text

        Raises:
            TemplateNotFoundError: If template_id does not resolve
            MissingFieldError: If a required field is missing, or the template
                               references a field the context does not provide
            TemplateRenderError: If rendering fails or produces no output
        """
        source = self.resolve(template_id)
        variables = self.build_context(source, context)
        defaulted = [
            name for name in source.optional_fields if lookup_field(context, name) is _MISSING
        ]

        start_time = time.time()
        try:
            text = source.template.render(
                **variables,
                template={"id": source.template_id, "version": source.version},
            )
        except UndefinedError as e:
            _log_error(f"Template '{template_id}' referenced undefined data: {e}", log)
            raise MissingFieldError([_undefined_name(e)], template_id=template_id) from e
        except TemplateError as e:
            _log_error(f"Template '{template_id}' failed to render: {e}", log)
            raise TemplateRenderError(
                "Template rendering failed",
                template_id=template_id,
                template_path=source.template_path,
                original_error=e,
            ) from e
        except TemplateRenderError as e:
            _log_error(f"Template '{template_id}' rejected its data: {e.message}", log)
            raise TemplateRenderError(
                e.message,
                template_id=template_id,
                template_path=source.template_path,
                original_error=e.original_error,
            ) from e
        except Exception as e:
            _log_error(f"Template '{template_id}' transform raised {type(e).__name__}: {e}", log)
            raise TemplateRenderError(
                "Template transform failed",
                template_id=template_id,
                template_path=source.template_path,
                original_error=e,
            ) from e

        if not text.strip():
            raise TemplateRenderError(
                "Template rendered to empty output",
                template_id=template_id,
                template_path=source.template_path,
            )

        # Typst reads UTF-8 only; lone surrogates cannot be encoded
        try:
            text.encode("utf-8")
        except UnicodeEncodeError as e:
            _log_error(f"Template '{template_id}' rendered text that is not valid UTF-8", log)
            raise TemplateRenderError(
                "Rendered source is not valid UTF-8",
                template_id=template_id,
                template_path=source.template_path,
                original_error=e,
            ) from e

        log_render_result(
            template_id, len(text), time.time() - start_time, defaulted_fields=defaulted, log=log
        )
        return text
