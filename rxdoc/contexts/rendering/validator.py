"""
Golden-image validation of rendered documents.

Re-runs the render pipeline in raster mode and compares each page image with a
stored golden image. Used by the test suite and the `validate` CLI command,
never on the production path.

Golden sets live in {golden_root}/{template_id}/{scenario}/page-{n}.png. The
expected page count is the template manifest's validation.expected_page_count,
so a layout change that adds or removes pages fails loudly until the manifest
and goldens are updated together.
"""

import io
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from dotenv import load_dotenv
from loguru import logger
from PIL import Image

from rxdoc.contexts.rendering.logger import (
    _log_info,
    _log_warning,
    log_validation_result,
    log_validation_start,
)
from rxdoc.exceptions import PageCountMismatchError, ValidationMismatchError
from rxdoc.utils.pdf_processing import pdf_page_count_from_bytes

load_dotenv()

GOLDEN_PATH = Path(os.getenv("RXDOC_GOLDEN_PATH", "tests/goldens"))
# Largest per-channel difference (0-255) still treated as equal
CHANNEL_TOLERANCE = int(os.getenv("RXDOC_CHANNEL_TOLERANCE", "0"))
# Largest fraction of differing pixels still accepted as a match
MAX_DIFF_RATIO = float(os.getenv("RXDOC_MAX_DIFF_RATIO", "0"))

GOLDEN_PAGE_NAME = "page-{page}.png"


@dataclass
class PageComparison:
    """
    Comparison of one rendered page with its golden image.

    Attributes:
        page_number: 1-based page number
        golden_path: Golden image location
        matches: Whether the page is within tolerance
        differing_pixels: Pixels whose channel delta exceeds the tolerance
        total_pixels: Pixels in the golden image
        max_channel_delta: Largest per-channel difference found
        diff_bbox: (left, top, right, bottom) of the differing region
        message: Reason for a mismatch
    """

    page_number: int
    golden_path: Path
    matches: bool
    differing_pixels: int = 0
    total_pixels: int = 0
    max_channel_delta: int = 0
    diff_bbox: Optional[Tuple[int, int, int, int]] = None
    message: str = ""

    @property
    def diff_ratio(self) -> float:
        return self.differing_pixels / self.total_pixels if self.total_pixels else 0.0


@dataclass
class ValidationResult:
    """
    Result of validating rendered pages against a golden set.

    Attributes:
        is_valid: Whether every check passed
        expected_page_count: Declared page count
        actual_page_count: Pages actually rendered
        pages: Per-page comparisons (empty when the page count is wrong)
        issues: One line per failed check
        saved_files: Diagnostic images written (only when requested)
    """

    is_valid: bool
    expected_page_count: int
    actual_page_count: int
    pages: List[PageComparison] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)
    saved_files: List[Path] = field(default_factory=list)

    @property
    def page_count_matches(self) -> bool:
        return self.expected_page_count == self.actual_page_count

    @property
    def report(self) -> str:
        return generate_diff_report(self)


def generate_diff_report(result: ValidationResult) -> str:
    """
    Build a readable report of validation failures.

    Reports:
    - Page count mismatch (no page comparison is attempted in that case)
    - Per-page mismatches with pixel statistics and the differing region
    """
    if result.is_valid:
        return f"All {result.actual_page_count} page(s) match goldens."

    lines = []
    if not result.page_count_matches:
        lines.append(
            f"Page count mismatch: expected {result.expected_page_count}, "
            f"got {result.actual_page_count}"
        )
        lines.append(
            "action: Update validation.expected_page_count in the template manifest "
            "and regenerate goldens if the layout change is intended"
        )

    for page in result.pages:
        if page.matches:
            continue
        lines.append(f"Page {page.page_number}: {page.message}")
        if page.total_pixels:
            lines.append(
                f"  differing pixels: {page.differing_pixels}/{page.total_pixels} "
                f"({page.diff_ratio:.4%}), max channel delta: {page.max_channel_delta}"
            )
        if page.diff_bbox:
            lines.append(f"  region: {page.diff_bbox}")
        lines.append(f"  golden: {page.golden_path}")

    for path in result.saved_files:
        lines.append(f"saved: {path}")

    return "\n".join(lines)


def _load_rgba(data: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(data)) as image:
        return np.asarray(image.convert("RGBA"), dtype=np.int16)


class ArtifactValidator:
    """
    Compares rendered page images with a golden set.

    Args:
        golden_dir: Directory holding page-{n}.png golden images
        expected_page_count: Declared number of pages
        channel_tolerance: Per-channel delta (0-255) treated as equal
        max_diff_ratio: Fraction of differing pixels still accepted
        save_mismatches_to: Directory for actual/diff images of failing pages.
                            Nothing is written unless this is set.
    """

    def __init__(
        self,
        golden_dir: Path,
        expected_page_count: int,
        channel_tolerance: int = CHANNEL_TOLERANCE,
        max_diff_ratio: float = MAX_DIFF_RATIO,
        save_mismatches_to: Optional[Path] = None,
        log=logger,
    ):
        if expected_page_count < 1:
            raise ValueError(f"expected_page_count must be positive, got {expected_page_count}")

        self.golden_dir = Path(golden_dir)
        self.expected_page_count = expected_page_count
        self.channel_tolerance = channel_tolerance
        self.max_diff_ratio = max_diff_ratio
        self.save_mismatches_to = Path(save_mismatches_to) if save_mismatches_to else None
        self.log = log

    @classmethod
    def for_template(
        cls,
        template_source,  # TemplateSource
        scenario: str,
        golden_root: Optional[Path] = None,
        expected_page_count: Optional[int] = None,
        **kwargs,
    ) -> "ArtifactValidator":
        """
        Build a validator for a template scenario.

        The expected page count defaults to the manifest's declared value.

        Raises:
            ValueError: If neither the manifest nor the caller declares a page count
        """
        expected = expected_page_count or template_source.expected_page_count
        if expected is None:
            raise ValueError(
                f"Template '{template_source.template_id}' declares no "
                "validation.expected_page_count in its manifest"
            )
        golden_root = Path(golden_root) if golden_root else GOLDEN_PATH
        golden_dir = golden_root / template_source.template_id / scenario
        return cls(golden_dir, int(expected), **kwargs)

    def golden_path(self, page_number: int) -> Path:
        return self.golden_dir / GOLDEN_PAGE_NAME.format(page=page_number)

    def has_goldens(self) -> bool:
        """True when every expected golden page exists."""
        return all(
            self.golden_path(n).is_file() for n in range(1, self.expected_page_count + 1)
        )

    def compare_page(self, page_number: int, image_bytes: bytes) -> PageComparison:
        """Compare one rendered page with its golden image."""
        golden_path = self.golden_path(page_number)
        if not golden_path.is_file():
            return PageComparison(
                page_number, golden_path, matches=False, message="golden image missing"
            )

        # OSError covers UnidentifiedImageError and truncated image data
        try:
            actual = _load_rgba(image_bytes)
        except OSError:
            return PageComparison(
                page_number, golden_path, matches=False, message="rendered page is not an image"
            )
        try:
            golden = _load_rgba(golden_path.read_bytes())
        except OSError as e:
            _log_warning(f"Unreadable golden {golden_path}: {e}", self.log)
            return PageComparison(
                page_number, golden_path, matches=False, message="golden image unreadable"
            )

        if actual.shape != golden.shape:
            return PageComparison(
                page_number,
                golden_path,
                matches=False,
                total_pixels=golden.shape[0] * golden.shape[1],
                message=(
                    f"size differs: golden {golden.shape[1]}x{golden.shape[0]}, "
                    f"rendered {actual.shape[1]}x{actual.shape[0]}"
                ),
            )

        delta = np.abs(actual - golden).max(axis=2)
        mask = delta > self.channel_tolerance
        differing = int(mask.sum())
        total = int(mask.size)

        bbox = None
        if differing:
            rows = np.flatnonzero(mask.any(axis=1))
            cols = np.flatnonzero(mask.any(axis=0))
            bbox = (int(cols[0]), int(rows[0]), int(cols[-1]) + 1, int(rows[-1]) + 1)

        matches = differing == 0 or differing / total <= self.max_diff_ratio
        return PageComparison(
            page_number,
            golden_path,
            matches=matches,
            differing_pixels=differing,
            total_pixels=total,
            max_channel_delta=int(delta.max()) if delta.size else 0,
            diff_bbox=bbox,
            message="" if matches else "pixels differ from golden",
        )

    def validate(self, pages: Sequence[bytes], name: str = "document") -> ValidationResult:
        """
        Validate rendered page images against the golden set.

        A page count different from expected_page_count fails immediately;
        no subset of pages is compared in that case.
        """
        log_validation_start(name, self.golden_dir, self.expected_page_count, self.log)

        result = ValidationResult(
            is_valid=True,
            expected_page_count=self.expected_page_count,
            actual_page_count=len(pages),
        )

        if len(pages) != self.expected_page_count:
            result.is_valid = False
            result.issues.append(
                f"issue:page_count::expected:{self.expected_page_count}::actual:{len(pages)}"
            )
            for number, data in enumerate(pages, 1):
                self._save(name, number, data, None, result)
            log_validation_result(name, result, self.log)
            return result

        for number, data in enumerate(pages, 1):
            comparison = self.compare_page(number, data)
            result.pages.append(comparison)
            if not comparison.matches:
                result.is_valid = False
                result.issues.append(
                    f"issue:page_mismatch::page:{number}::differing_pixels:"
                    f"{comparison.differing_pixels}::reason:{comparison.message}"
                )
                self._save(name, number, data, comparison, result)

        log_validation_result(name, result, self.log)
        return result

    def assert_matches(self, pages: Sequence[bytes], name: str = "document") -> ValidationResult:
        """
        Validate and raise on failure.

        Raises:
            PageCountMismatchError: If the page count differs from expected
            ValidationMismatchError: If any page differs from its golden
        """
        result = self.validate(pages, name=name)
        if result.is_valid:
            return result
        if not result.page_count_matches:
            raise PageCountMismatchError(
                self.expected_page_count, result.actual_page_count, report=result.report
            )
        raise ValidationMismatchError(result.report, issues=result.issues)

    def write_goldens(self, pages: Sequence[bytes]) -> List[Path]:
        """
        Replace the golden set with the given page images.

        Only called from the explicit update-goldens command. Stale pages beyond
        the new page count are removed.
        """
        self.golden_dir.mkdir(parents=True, exist_ok=True)
        for stale in self.golden_dir.glob("page-*.png"):
            stale.unlink()

        written = []
        for number, data in enumerate(pages, 1):
            path = self.golden_path(number)
            path.write_bytes(data)
            written.append(path)

        _log_info(f"Wrote {len(written)} golden page(s) to {self.golden_dir}", self.log)
        return written

    def _save(
        self,
        name: str,
        page_number: int,
        data: bytes,
        comparison: Optional[PageComparison],
        result: ValidationResult,
    ) -> None:
        """Persist a failing page (and its diff mask) when explicitly requested."""
        if self.save_mismatches_to is None:
            return

        self.save_mismatches_to.mkdir(parents=True, exist_ok=True)
        actual_path = self.save_mismatches_to / f"{name}-page-{page_number}-actual.png"
        actual_path.write_bytes(data)
        result.saved_files.append(actual_path)

        if comparison is None or not comparison.differing_pixels:
            return

        actual = _load_rgba(data)
        golden = _load_rgba(comparison.golden_path.read_bytes())
        mask = (np.abs(actual - golden).max(axis=2) > self.channel_tolerance).astype(np.uint8) * 255
        diff_path = self.save_mismatches_to / f"{name}-page-{page_number}-diff.png"
        Image.fromarray(mask).save(diff_path)
        result.saved_files.append(diff_path)


def check_pdf_page_count(pdf_bytes: bytes, expected_page_count: int) -> int:
    """
    Check the page count of a compiled PDF artifact.

    Returns:
        The page count

    Raises:
        ValidationMismatchError: If the bytes are not a readable PDF
        PageCountMismatchError: If the count differs from expected
    """
    count = pdf_page_count_from_bytes(pdf_bytes)
    if count is None:
        raise ValidationMismatchError("Artifact is not a readable PDF")
    if count != expected_page_count:
        raise PageCountMismatchError(expected_page_count, count)
    return count


def validate_document(
    pipeline,  # DocumentPipeline
    context: Mapping[str, Any],
    scenario: str,
    template_id: Optional[str] = None,
    golden_root: Optional[Path] = None,
    expected_page_count: Optional[int] = None,
    save_mismatches_to: Optional[Path] = None,
) -> ValidationResult:
    """
    Re-run the pipeline in raster mode and validate the pages against goldens.

    Args:
        pipeline: DocumentPipeline whose renderer and compiler are used
        context: RenderContext for the scenario
        scenario: Golden scenario name (e.g., 'empty_prescriptions')
        template_id: Template identifier (default: the pipeline's default)
        golden_root: Root of golden sets (default: RXDOC_GOLDEN_PATH)
        expected_page_count: Override for the manifest's declared page count
        save_mismatches_to: Directory for diagnostic images (opt-in)

    Returns:
        ValidationResult

    Raises:
        RxdocError: If rendering or compilation fails
    """
    template_id = template_id or pipeline.default_template_id
    source = pipeline.renderer.resolve(template_id)
    validator = ArtifactValidator.for_template(
        source,
        scenario,
        golden_root=golden_root,
        expected_page_count=expected_page_count,
        save_mismatches_to=save_mismatches_to,
    )

    artifact = pipeline.render_pages(context, template_id=template_id).unwrap()
    return validator.validate(list(artifact.pages), name=f"{template_id}-{scenario}")
