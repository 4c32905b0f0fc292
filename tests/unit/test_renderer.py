"""Unit tests for TemplateRenderer."""

import copy

import pytest

from rxdoc.contexts.templating.renderer import (
    TemplateRenderer,
    find_missing_fields,
    lookup_field,
)
from rxdoc.contexts.templating.template_registry import TemplateRegistry
from rxdoc.exceptions import MissingFieldError, TemplateNotFoundError, TemplateRenderError


@pytest.fixture
def renderer():
    return TemplateRenderer()


@pytest.mark.unit
def test_lookup_field_dotted_paths():
    context = {"patient": {"name": "Ada", "age": None}}
    assert lookup_field(context, "patient.name") == "Ada"
    assert lookup_field(context, "patient.age") is None
    assert find_missing_fields(context, ["patient.name", "patient.id", "patient.age"]) == [
        "patient.id",
        "patient.age",
    ]


@pytest.mark.unit
def test_render_empty_prescriptions(renderer, empty_context):
    source = renderer.render("prescription", empty_context)

    assert '#"Ada Lovelace"' in source
    assert '#"05 Mar 2024"' in source
    assert "#emph[No prescriptions recorded.]" in source
    assert "#table(" not in source
    # Optional fields fall back to their placeholders
    assert '#"Not recorded"' in source
    assert '#"None recorded"' in source
    assert '#"Prescribing physician"' in source


@pytest.mark.unit
def test_render_full_context(renderer, full_context):
    source = renderer.render("prescription", full_context)

    assert '#"Riverside Family Clinic"' in source
    assert '#"41 / Male"' in source
    assert '#"Acute bacterial sinusitis"' in source
    assert '#"Penicillin, Latex"' in source
    assert "#table(" in source
    assert '[#"Azithromycin"]' in source
    assert '[#"Take one hour before food."]' in source
    assert '[#"Do not exceed 4 g per day"]' in source
    assert '#"19 Mar 2024"' in source
    assert "No prescriptions recorded" not in source


@pytest.mark.unit
def test_render_stamps_record_and_template_version(renderer, empty_context):
    source = renderer.render("prescription", empty_context)
    assert '"Record RX-0001 / template v1.0.0"' in source
    assert 'title: "Prescription RX-0001"' in source


@pytest.mark.unit
def test_render_is_deterministic(renderer, full_context):
    first = renderer.render("prescription", full_context)
    second = renderer.render("prescription", copy.deepcopy(full_context))
    assert first == second


@pytest.mark.unit
def test_user_data_cannot_inject_markup(renderer, empty_context):
    empty_context["patient"]["name"] = 'Bob "#strong[x]" \\'
    source = renderer.render("prescription", empty_context)

    assert '#"Bob \\"#strong[x]\\" \\\\"' in source


@pytest.mark.unit
def test_missing_fields_are_all_reported(renderer):
    context = {"record_id": "RX-9", "patient": {"name": None}}

    with pytest.raises(MissingFieldError) as excinfo:
        renderer.render("prescription", context)

    assert excinfo.value.missing_fields == ["patient.name", "patient.id", "date"]
    assert excinfo.value.template_id == "prescription"


@pytest.mark.unit
def test_unknown_template(renderer, empty_context):
    with pytest.raises(TemplateNotFoundError):
        renderer.render("discharge_summary", empty_context)


@pytest.mark.unit
def test_caller_context_is_not_modified(renderer, empty_context):
    before = copy.deepcopy(empty_context)
    renderer.render("prescription", empty_context)
    assert empty_context == before


@pytest.mark.unit
def test_undeclared_field_reference(template_root):
    root = template_root("loose", "#<<< patient.weight >>>\n")
    renderer = TemplateRenderer(TemplateRegistry(root))

    with pytest.raises(MissingFieldError) as excinfo:
        renderer.render("loose", {"patient": {"name": "Ada"}})
    assert excinfo.value.missing_fields == ["weight"]


@pytest.mark.unit
def test_empty_output_is_an_error(template_root):
    root = template_root("blank", "<# nothing #>\n   \n")
    renderer = TemplateRenderer(TemplateRegistry(root))

    with pytest.raises(TemplateRenderError):
        renderer.render("blank", {})


@pytest.mark.unit
def test_runtime_template_error(template_root):
    root = template_root("bad_include", "<%% include \"missing.typ\" %%>\n")
    renderer = TemplateRenderer(TemplateRegistry(root))

    with pytest.raises(TemplateRenderError):
        renderer.render("bad_include", {})


@pytest.mark.unit
def test_non_mapping_prescription(renderer, empty_context):
    empty_context["prescriptions"] = ["Amoxicillin 500 mg"]

    with pytest.raises(TemplateRenderError) as excinfo:
        renderer.render("prescription", empty_context)
    assert excinfo.value.template_id == "prescription"
    assert "must be mappings" in excinfo.value.message


@pytest.mark.unit
def test_failing_transform_is_wrapped(template_root):
    root = template_root("bad_date", "#<<< when | format_date(42) >>>\n")
    renderer = TemplateRenderer(TemplateRegistry(root))

    with pytest.raises(TemplateRenderError) as excinfo:
        renderer.render("bad_date", {"when": "2024-03-05"})
    assert excinfo.value.message == "Template transform failed"
    assert isinstance(excinfo.value.original_error, TypeError)


@pytest.mark.unit
def test_lone_surrogate_is_rejected(renderer, empty_context):
    empty_context["patient"]["name"] = "Ada \udc80"

    with pytest.raises(TemplateRenderError) as excinfo:
        renderer.render("prescription", empty_context)
    assert excinfo.value.message == "Rendered source is not valid UTF-8"
    assert isinstance(excinfo.value.original_error, UnicodeEncodeError)

@pytest.mark.unit
def test_optional_defaults_fill_nested_fields(template_root):
    manifest = (
        'version: "1"\n'
        "required_fields: [record_id]\n"
        "optional_fields:\n"
        "  - name: patient.sex\n"
        "    default: unknown\n"
    )
    root = template_root("defaults", "<<< record_id >>>/<<< patient.sex >>>\n", manifest)
    renderer = TemplateRenderer(TemplateRegistry(root))

    assert renderer.render("defaults", {"record_id": "A"}) == "A/unknown\n"
    assert renderer.render("defaults", {"record_id": "B", "patient": {"sex": "f"}}) == "B/f\n"
