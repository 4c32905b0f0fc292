"""
Integration tests for the document pipeline - tests real Typst compilation.
"""

import copy
import shutil

import pytest

from rxdoc.contexts.rendering.compiler import OutputFormat, TypstCompiler, compile_document
from rxdoc.contexts.rendering.validator import (
    GOLDEN_PATH,
    ArtifactValidator,
    check_pdf_page_count,
    validate_document,
)
from rxdoc.exceptions import CompilationExitError
from rxdoc.pipeline import DocumentPipeline, ErrorKind
from rxdoc.utils.pdf_processing import pdf_page_count_from_bytes

# Check if typst is available
TYPST_AVAILABLE = shutil.which("typst") is not None
skip_if_no_typst = pytest.mark.skipif(
    not TYPST_AVAILABLE,
    reason="typst not installed - see https://github.com/typst/typst#installation"
)


@pytest.fixture
def pipeline(tmp_path):
    return DocumentPipeline(compiler=TypstCompiler(), output_dir=tmp_path / "results")


@pytest.mark.integration
@pytest.mark.typst
@skip_if_no_typst
def test_compile_minimal_source():
    """Test compilation of a trivial document to PDF bytes."""
    data = TypstCompiler().compile("= Hello\n\nWorld\n")
    assert data.startswith(b"%PDF")


@pytest.mark.integration
@pytest.mark.typst
@skip_if_no_typst
def test_compile_with_intentional_error():
    """Test that compilation properly detects and reports errors."""
    with pytest.raises(CompilationExitError) as excinfo:
        TypstCompiler().compile("#undefined_function()\n", record_id="RX-broken")

    assert excinfo.value.returncode != 0
    assert len(excinfo.value.errors) > 0
    assert excinfo.value.record_id == "RX-broken"


@pytest.mark.integration
@pytest.mark.typst
@skip_if_no_typst
def test_compile_document_reports_error():
    result = compile_document("#let x = (\n", TypstCompiler(), record_id="RX-broken")
    assert result.success is False
    assert result.error_type == "exit"
    assert result.errors


@pytest.mark.integration
@pytest.mark.typst
@skip_if_no_typst
@pytest.mark.parametrize("context_name", ["empty_context", "full_context"])
def test_generate_prescription(pipeline, context_name, request, tmp_path):
    """Test full generation of a prescription to a stored one-page PDF."""
    context = request.getfixturevalue(context_name)
    result = pipeline.generate(context)

    assert result.ok, f"Generation failed: {result.error}"
    assert result.artifact.path.exists()
    assert result.artifact.path.parent == tmp_path / "results"
    assert pdf_page_count_from_bytes(result.artifact.path.read_bytes()) == 1
    assert result.artifact.page_count == 1
    assert check_pdf_page_count(result.artifact.data, 1) == 1


@pytest.mark.integration
@pytest.mark.typst
@skip_if_no_typst
def test_generation_is_byte_identical(full_context):
    """Identical input must produce identical PDF bytes."""
    pipeline = DocumentPipeline(compiler=TypstCompiler())
    first = pipeline.generate(full_context).unwrap()
    second = pipeline.generate(copy.deepcopy(full_context)).unwrap()

    assert first.data == second.data


@pytest.mark.integration
@pytest.mark.typst
@skip_if_no_typst
def test_raster_pages(empty_context):
    pipeline = DocumentPipeline(compiler=TypstCompiler(ppi=36))
    artifact = pipeline.render_pages(empty_context).unwrap()

    assert artifact.output_format is OutputFormat.PNG
    assert artifact.page_count == 1
    assert artifact.pages[0].startswith(b"\x89PNG")


@pytest.mark.integration
@pytest.mark.typst
@skip_if_no_typst
def test_empty_prescriptions_matches_goldens(empty_context):
    """Compare the empty-prescriptions scenario with its golden images."""
    pipeline = DocumentPipeline(compiler=TypstCompiler())
    source = pipeline.renderer.resolve("prescription")
    validator = ArtifactValidator.for_template(source, "empty_prescriptions")
    assert validator.has_goldens(), (
        f"No goldens in {validator.golden_dir}; record them with: python scripts/generate_pdf.py "
        "update-goldens tests/fixtures/contexts/empty_prescriptions.yaml -s empty_prescriptions"
    )

    result = validate_document(pipeline, empty_context, "empty_prescriptions", golden_root=GOLDEN_PATH)
    assert result.is_valid, result.report


@pytest.mark.integration
@pytest.mark.typst
@skip_if_no_typst
def test_overflowing_document_fails_page_count(full_context, tmp_path):
    """A layout that spills onto extra pages is reported, not partially compared."""
    item = full_context["prescriptions"][0]
    full_context["prescriptions"] = [dict(item, medicine=f"Drug {i}") for i in range(120)]

    pipeline = DocumentPipeline(compiler=TypstCompiler(ppi=36))
    source = pipeline.renderer.resolve("prescription")
    validator = ArtifactValidator.for_template(source, "overflow", golden_root=tmp_path)

    result = pipeline.render_pages(full_context, validator=validator)

    assert result.error.kind is ErrorKind.VALIDATION_FAILED
    issue = result.error.cause.issues[0]
    assert issue.startswith("issue:page_count::expected:1::actual:")
    assert not (tmp_path / "prescription" / "overflow").exists()
