"""Unit tests for golden-image validation."""

import pytest
from conftest import FIXTURE_GOLDENS_PATH, make_png

from rxdoc.contexts.rendering.validator import (
    ArtifactValidator,
    check_pdf_page_count,
    validate_document,
)
from rxdoc.contexts.templating.template_registry import TemplateRegistry
from rxdoc.exceptions import PageCountMismatchError, ValidationMismatchError
from rxdoc.pipeline import DocumentPipeline

WHITE = (255, 255, 255)
BLACK = (0, 0, 0)


@pytest.fixture
def golden_dir(tmp_path):
    directory = tmp_path / "goldens"
    directory.mkdir()
    (directory / "page-1.png").write_bytes(make_png(WHITE))
    (directory / "page-2.png").write_bytes(make_png(WHITE))
    return directory


@pytest.mark.unit
def test_identical_pages_pass(golden_dir):
    validator = ArtifactValidator(golden_dir, expected_page_count=2)
    result = validator.validate([make_png(WHITE), make_png(WHITE)])

    assert result.is_valid
    assert result.issues == []
    assert [page.matches for page in result.pages] == [True, True]
    assert "All 2 page(s) match" in result.report


@pytest.mark.unit
def test_single_pixel_difference_is_located(golden_dir):
    validator = ArtifactValidator(golden_dir, expected_page_count=2)
    altered = make_png(WHITE, pixels={(5, 7): BLACK})

    result = validator.validate([make_png(WHITE), altered])

    assert not result.is_valid
    page = result.pages[1]
    assert page.differing_pixels == 1
    assert page.diff_bbox == (5, 7, 6, 8)
    assert page.max_channel_delta == 255
    assert result.issues == [
        "issue:page_mismatch::page:2::differing_pixels:1::reason:pixels differ from golden"
    ]
    assert "Page 2" in result.report


@pytest.mark.unit
def test_channel_tolerance(golden_dir):
    nearly_white = make_png((250, 250, 250))

    strict = ArtifactValidator(golden_dir, expected_page_count=2)
    assert not strict.validate([nearly_white, nearly_white]).is_valid

    tolerant = ArtifactValidator(golden_dir, expected_page_count=2, channel_tolerance=8)
    assert tolerant.validate([nearly_white, nearly_white]).is_valid


@pytest.mark.unit
def test_max_diff_ratio(golden_dir):
    altered = make_png(WHITE, pixels={(0, 0): BLACK})
    validator = ArtifactValidator(golden_dir, expected_page_count=2, max_diff_ratio=0.01)

    assert validator.validate([altered, altered]).is_valid


@pytest.mark.unit
def test_page_count_mismatch_compares_nothing(golden_dir):
    validator = ArtifactValidator(golden_dir, expected_page_count=2)
    result = validator.validate([make_png(WHITE), make_png(WHITE), make_png(WHITE)])

    assert not result.is_valid
    assert not result.page_count_matches
    assert result.pages == []
    assert result.issues == ["issue:page_count::expected:2::actual:3"]
    assert "expected_page_count" in result.report


@pytest.mark.unit
def test_fewer_pages_is_a_mismatch(golden_dir):
    # A matching first page must not hide the missing second one
    validator = ArtifactValidator(golden_dir, expected_page_count=2)
    result = validator.validate([make_png(WHITE)])

    assert not result.is_valid
    assert result.issues == ["issue:page_count::expected:2::actual:1"]


@pytest.mark.unit
def test_size_difference(golden_dir):
    validator = ArtifactValidator(golden_dir, expected_page_count=2)
    result = validator.validate([make_png(WHITE, size=(80, 112)), make_png(WHITE)])

    assert not result.is_valid
    assert "size differs" in result.pages[0].message


@pytest.mark.unit
def test_missing_golden_and_non_image(tmp_path):
    validator = ArtifactValidator(tmp_path / "none", expected_page_count=1)
    assert not validator.has_goldens()
    assert validator.validate([make_png()]).pages[0].message == "golden image missing"

    validator.write_goldens([make_png()])
    assert validator.has_goldens()
    assert validator.validate([b"%PDF-1.7"]).pages[0].message == "rendered page is not an image"


@pytest.mark.unit
def test_corrupt_golden_is_a_mismatch(tmp_path):
    validator = ArtifactValidator(tmp_path, expected_page_count=1)
    (tmp_path / "page-1.png").write_bytes(b"not a png")

    result = validator.validate([make_png()])

    assert not result.is_valid
    assert result.pages[0].message == "golden image unreadable"
    assert result.issues[0].startswith("issue:page_mismatch::page:1")


@pytest.mark.unit
def test_assert_matches_raises_typed_errors(golden_dir):
    validator = ArtifactValidator(golden_dir, expected_page_count=2)

    with pytest.raises(PageCountMismatchError) as excinfo:
        validator.assert_matches([make_png(WHITE)])
    assert excinfo.value.expected == 2
    assert excinfo.value.actual == 1

    with pytest.raises(ValidationMismatchError) as excinfo:
        validator.assert_matches([make_png(BLACK), make_png(WHITE)])
    assert not isinstance(excinfo.value, PageCountMismatchError)
    assert excinfo.value.issues[0].startswith("issue:page_mismatch::page:1")


@pytest.mark.unit
def test_diagnostic_images_only_when_requested(golden_dir, tmp_path):
    pages = [make_png(BLACK), make_png(WHITE)]

    ArtifactValidator(golden_dir, expected_page_count=2).validate(pages, name="quiet")
    assert not (tmp_path / "diffs").exists()

    validator = ArtifactValidator(golden_dir, expected_page_count=2, save_mismatches_to=tmp_path / "diffs")
    result = validator.validate(pages, name="loud")

    assert sorted(p.name for p in result.saved_files) == [
        "loud-page-1-actual.png",
        "loud-page-1-diff.png",
    ]
    assert all(p.exists() for p in result.saved_files)


@pytest.mark.unit
def test_write_goldens_removes_stale_pages(golden_dir):
    validator = ArtifactValidator(golden_dir, expected_page_count=1)
    written = validator.write_goldens([make_png(BLACK)])

    assert [p.name for p in written] == ["page-1.png"]
    assert sorted(p.name for p in golden_dir.iterdir()) == ["page-1.png"]


@pytest.mark.unit
def test_for_template_uses_manifest_page_count(tmp_path):
    source = TemplateRegistry().get("prescription")
    validator = ArtifactValidator.for_template(source, "empty_prescriptions", golden_root=tmp_path)

    assert validator.expected_page_count == 1
    assert validator.golden_dir == tmp_path / "prescription" / "empty_prescriptions"


@pytest.mark.unit
def test_for_template_without_declared_count(template_root, tmp_path):
    source = TemplateRegistry(template_root("plain", "x")).get("plain")
    with pytest.raises(ValueError):
        ArtifactValidator.for_template(source, "s", golden_root=tmp_path)


@pytest.mark.unit
def test_invalid_expected_page_count(tmp_path):
    with pytest.raises(ValueError):
        ArtifactValidator(tmp_path, expected_page_count=0)


@pytest.mark.unit
def test_check_pdf_page_count_rejects_non_pdf():
    with pytest.raises(ValidationMismatchError):
        check_pdf_page_count(b"FAKE-PDF\n", 1)


@pytest.mark.unit
def test_validate_document_end_to_end(fake_compiler, empty_context, tmp_path):
    pipeline = DocumentPipeline(compiler=fake_compiler)
    source = pipeline.renderer.resolve("prescription")
    validator = ArtifactValidator.for_template(source, "empty", golden_root=tmp_path)

    # Goldens recorded from one run must match a second run of the same input
    artifact = pipeline.render_pages(empty_context).unwrap()
    validator.write_goldens(list(artifact.pages))

    result = validate_document(pipeline, empty_context, "empty", golden_root=tmp_path)
    assert result.is_valid

    empty_context["prescriptions"] = [{"medicine": "Amoxicillin"}]
    result = validate_document(pipeline, empty_context, "empty", golden_root=tmp_path)
    assert not result.is_valid
    assert result.issues[0].startswith("issue:page_mismatch::page:1")
    assert result.pages[0].diff_bbox == (0, 0, 40, 4)


@pytest.mark.unit
def test_empty_prescriptions_matches_committed_goldens(fake_compiler, empty_context):
    result = validate_document(
        DocumentPipeline(compiler=fake_compiler),
        empty_context,
        "empty_prescriptions",
        golden_root=FIXTURE_GOLDENS_PATH,
    )
    assert result.is_valid, result.report
