"""
Template Registry

Resolves template identifiers to versioned Typst templates and their manifests.
"""

import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv
from jinja2 import Environment, FileSystemLoader, StrictUndefined, Template, TemplateNotFound
from jinja2 import TemplateSyntaxError
from omegaconf import OmegaConf
from omegaconf.errors import OmegaConfBaseException

from rxdoc.contexts.templating.logger import log_template_loaded
from rxdoc.contexts.templating.transforms import TEMPLATE_GLOBALS, TRANSFORMS
from rxdoc.exceptions import TemplateNotFoundError, TemplateRenderError

load_dotenv()
DEFAULT_TEMPLATES_PATH = Path(__file__).parent / "templates"
TEMPLATES_PATH = Path(os.getenv("RXDOC_TEMPLATES_PATH", str(DEFAULT_TEMPLATES_PATH)))

TEMPLATE_FILENAME = "template.typ.jinja"
MANIFEST_FILENAME = "manifest.yaml"

# Identifiers are directory names; no separators or parent references
_VALID_TEMPLATE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(frozen=True)
class TemplateSource:
    """
    A versioned template and its manifest.

    Attributes:
        template_id: Stable identifier (directory name under the template root)
        version: Template version from the manifest
        template_path: Path to template.typ.jinja
        template: Compiled Jinja2 template
        required_fields: Dotted field names the context must provide
        optional_fields: Dotted field names with their defaults
        expected_page_count: Page count the golden images were produced with
        description: Free-text description
    """

    template_id: str
    version: str
    template_path: Path
    template: Template = field(repr=False, compare=False)
    required_fields: Tuple[str, ...] = ()
    optional_fields: Dict[str, Any] = field(default_factory=dict)
    expected_page_count: Optional[int] = None
    description: str = ""

    @property
    def directory(self) -> Path:
        return self.template_path.parent


def _parse_optional_fields(entries) -> Dict[str, Any]:
    """
    Normalize the manifest's optional_fields list.

    Entries are either a bare dotted name (default None) or a mapping with
    'name' and 'default'. Dotted names are kept in list form in YAML because
    they cannot be used as mapping keys.
    """
    fields: Dict[str, Any] = {}
    for entry in entries or ():
        if isinstance(entry, str):
            fields[entry] = None
        else:
            fields[entry["name"]] = entry.get("default")
    return fields


class TemplateRegistry:
    """
    Registry for loading and caching Typst templates.

    Templates live in {templates_path}/{template_id}/template.typ.jinja next to a
    manifest.yaml, and use custom delimiters to avoid conflicts with Typst syntax:
    - Variable: <<< var >>>
    - Block: <%% block %%>
    - Comment: <# comment #>

    Loaded templates are cached; the cache is safe to share between threads.
    """

    def __init__(self, templates_path: Optional[Path] = None):
        """
        Initialize the template registry.

        Args:
            templates_path: Root directory of template directories. Defaults to
                            RXDOC_TEMPLATES_PATH from environment, or the packaged templates
        """
        if templates_path is None:
            templates_path = TEMPLATES_PATH

        self.templates_path = Path(templates_path)
        self._cache: Dict[str, TemplateSource] = {}
        self._lock = threading.Lock()

        self.env = Environment(
            loader=FileSystemLoader(str(self.templates_path)),
            # Catches silent failures
            undefined=StrictUndefined,
            variable_start_string="<<<",
            variable_end_string=">>>",
            block_start_string="<%%",
            block_end_string="%%>",
            comment_start_string="<#",
            comment_end_string="#>",
            # Preserve whitespace so generated source stays readable
            trim_blocks=False,
            lstrip_blocks=False,
            keep_trailing_newline=True,
            autoescape=False,
        )
        self.env.filters.update(TRANSFORMS)
        self.env.globals.update(TEMPLATE_GLOBALS)

    def get(self, template_id: str) -> TemplateSource:
        """
        Get a template by identifier, loading and caching it if necessary.

        Args:
            template_id: Template identifier (e.g., 'prescription')

        Returns:
            TemplateSource with compiled template and manifest data

        Raises:
            TemplateNotFoundError: If the identifier does not resolve
            TemplateRenderError: If the template has Jinja2 syntax errors
        """
        with self._lock:
            cached = self._cache.get(template_id)
        if cached is not None:
            return cached

        source = self._load(template_id)

        with self._lock:
            # Another thread may have loaded it meanwhile; keep the first one
            return self._cache.setdefault(template_id, source)

    def _load(self, template_id: str) -> TemplateSource:
        if not isinstance(template_id, str) or not _VALID_TEMPLATE_ID.match(template_id):
            raise TemplateNotFoundError(
                str(template_id), self.templates_path, reason="Invalid template identifier"
            )

        template_dir = self.templates_path / template_id
        manifest_path = template_dir / MANIFEST_FILENAME
        if not manifest_path.is_file():
            raise TemplateNotFoundError(
                template_id, self.templates_path, reason=f"No {MANIFEST_FILENAME} in {template_dir}"
            )

        try:
            template = self.env.get_template(f"{template_id}/{TEMPLATE_FILENAME}")
        except TemplateNotFound as e:
            raise TemplateNotFoundError(
                template_id, self.templates_path, reason=f"No {TEMPLATE_FILENAME} in {template_dir}"
            ) from e
        except TemplateSyntaxError as e:
            raise TemplateRenderError(
                "Template has invalid syntax",
                template_id=template_id,
                template_path=template_dir / TEMPLATE_FILENAME,
                original_error=e,
            ) from e

        manifest = self._load_manifest(template_id, manifest_path)

        source = TemplateSource(
            template_id=template_id,
            version=str(manifest.get("version", "0")),
            template_path=template_dir / TEMPLATE_FILENAME,
            template=template,
            required_fields=tuple(manifest.get("required_fields") or ()),
            optional_fields=_parse_optional_fields(manifest.get("optional_fields")),
            expected_page_count=(manifest.get("validation") or {}).get("expected_page_count"),
            description=manifest.get("description", ""),
        )
        log_template_loaded(template_id, source.version, source.template_path)
        return source

    def _load_manifest(self, template_id: str, manifest_path: Path) -> Dict[str, Any]:
        try:
            manifest = OmegaConf.to_container(OmegaConf.load(manifest_path), resolve=True)
        except (OmegaConfBaseException, yaml.YAMLError, ValueError) as e:
            raise TemplateRenderError(
                "Template manifest could not be loaded",
                template_id=template_id,
                template_path=manifest_path,
                original_error=e,
            ) from e

        if not isinstance(manifest, dict):
            raise TemplateRenderError(
                "Template manifest must be a mapping",
                template_id=template_id,
                template_path=manifest_path,
            )
        return manifest

    def get_template_path(self, template_id: str) -> Path:
        """
        Get the file path for a template.

        Args:
            template_id: Template identifier

        Returns:
            Path to template file (may not exist)
        """
        return self.templates_path / template_id / TEMPLATE_FILENAME

    def list_templates(self):
        """Identifiers of all template directories under the template root."""
        if not self.templates_path.is_dir():
            return []
        return sorted(
            p.name for p in self.templates_path.iterdir() if (p / MANIFEST_FILENAME).is_file()
        )

    def clear_cache(self):
        """Clear the template cache."""
        with self._lock:
            self._cache.clear()

    def is_cached(self, template_id: str) -> bool:
        """
        Check if a template is in the cache.

        Args:
            template_id: Template identifier

        Returns:
            True if cached, False otherwise
        """
        with self._lock:
            return template_id in self._cache
