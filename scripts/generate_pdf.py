#!/usr/bin/env python3
"""
Document Generation and Golden-Image Validation CLI

Renders record contexts through Typst templates, compiles them to PDF, and
checks rendered pages against golden images.

Commands:
    render         - Print the Typst source generated for a context
    generate       - Generate a PDF for a single context file
    batch          - Generate PDFs for every context file in a directory
    validate       - Compare rendered pages with a golden scenario
    update-goldens - Regenerate a golden scenario (explicit, overwrites images)

Examples:\n

    generate_pdf.py render tests/fixtures/contexts/empty_prescriptions.yaml

    generate_pdf.py generate tests/fixtures/contexts/two_prescriptions.yaml -o outs/results

    generate_pdf.py batch data/contexts --workers 8

    generate_pdf.py validate tests/fixtures/contexts/empty_prescriptions.yaml -s empty_prescriptions

    generate_pdf.py update-goldens tests/fixtures/contexts/empty_prescriptions.yaml -s empty_prescriptions
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from dotenv import load_dotenv
from omegaconf import OmegaConf
from typing_extensions import Annotated

from rxdoc.contexts.rendering.compiler import TypstCompiler
from rxdoc.contexts.rendering.logger import setup_rendering_logger
from rxdoc.contexts.rendering.validator import ArtifactValidator, validate_document
from rxdoc.contexts.templating.renderer import TemplateRenderer
from rxdoc.exceptions import RxdocError
from rxdoc.pipeline import DEFAULT_TEMPLATE_ID, DocumentPipeline
from rxdoc.utils.timestamp import now

load_dotenv()
LOGS_PATH = Path(os.getenv("LOGS_PATH", "outs/logs"))


def display_path(path: Path) -> str:
    """Return path relative to the working directory for cleaner display."""
    try:
        return str(Path(path).resolve().relative_to(Path.cwd()))
    except ValueError:
        return str(path)


def load_context(context_file: Path) -> Dict[str, Any]:
    """Load a RenderContext from a YAML or JSON file."""
    if not context_file.is_file():
        typer.secho(f"Error: context file not found: {context_file}\n", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    return OmegaConf.to_container(OmegaConf.load(context_file), resolve=True)


def start_session(command: str) -> Path:
    """Create a timestamped log directory and configure logging into it."""
    log_dir = LOGS_PATH / f"{command}_{now()}"
    setup_rendering_logger(log_dir)
    return log_dir


app = typer.Typer(
    help="Generate PDFs from record contexts with Typst and validate rendered pages",
    add_completion=False,
    invoke_without_command=True,
)


@app.callback()
def main(ctx: typer.Context):
    """Show help by default when no command is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


TemplateOption = Annotated[
    str,
    typer.Option("--template", "-t", help="Template identifier"),
]


@app.command("render")
def render_command(
    context_file: Annotated[Path, typer.Argument(help="Context file (YAML or JSON)")],
    template_id: TemplateOption = DEFAULT_TEMPLATE_ID,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write Typst source here instead of stdout"),
    ] = None,
):
    """
    Render a context to Typst source without compiling.

    Examples:\n

        $ generate_pdf.py render context.yaml

        $ generate_pdf.py render context.yaml -o debug.typ
    """
    context = load_context(context_file)

    try:
        source = TemplateRenderer().render(template_id, context)
    except RxdocError as e:
        typer.secho(f"Error: {e}\n", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    if output is None:
        typer.echo(source)
    else:
        output.write_text(source, encoding="utf-8")
        typer.secho(f"✓ Source written to {display_path(output)}", fg=typer.colors.GREEN)


@app.command("generate")
def generate_command(
    context_file: Annotated[Path, typer.Argument(help="Context file (YAML or JSON)")],
    template_id: TemplateOption = DEFAULT_TEMPLATE_ID,
    output_dir: Annotated[
        Path,
        typer.Option("--output-dir", "-o", help="Directory for the generated PDF"),
    ] = Path("outs/results"),
    record_id: Annotated[
        Optional[str],
        typer.Option("--record-id", "-r", help="Override the record identifier"),
    ] = None,
    timeout: Annotated[
        Optional[float],
        typer.Option("--timeout", help="Compiler timeout in seconds", min=1),
    ] = None,
):
    """
    Generate a PDF for one context file.

    Examples:\n

        $ generate_pdf.py generate context.yaml

        $ generate_pdf.py generate context.yaml -o outs/results --timeout 30
    """
    context = load_context(context_file)
    log_dir = start_session("generate")

    typer.secho(f"\nGenerating: {context_file.name}", fg=typer.colors.BLUE, bold=True)
    typer.echo(f"Template: {template_id}")
    typer.echo("")

    pipeline = DocumentPipeline(compiler=TypstCompiler(timeout=timeout), output_dir=output_dir)
    result = pipeline.generate(context, template_id=template_id, record_id=record_id)

    typer.echo("")
    if result.ok:
        typer.secho("✓ Generation succeeded", fg=typer.colors.GREEN, bold=True)
        typer.echo(f"  Pages: {result.artifact.page_count}")
        typer.echo(f"  PDF: {display_path(result.artifact.path)}")
    else:
        error = result.error
        typer.secho(f"✗ Generation failed [{error.kind.value}]", fg=typer.colors.RED, bold=True)
        typer.secho(f"  {error.message}", fg=typer.colors.RED)
        if error.missing_fields:
            typer.echo(f"  Missing fields: {', '.join(error.missing_fields)}")

    typer.echo(f"  Log: {display_path(log_dir / 'render.log')}")
    typer.echo("")

    raise typer.Exit(code=0 if result.ok else 1)


@app.command("batch")
def batch_command(
    directory: Annotated[Path, typer.Argument(help="Directory of context files")],
    pattern: Annotated[
        str,
        typer.Option("--pattern", "-p", help="Glob for selecting context files"),
    ] = "*.yaml",
    template_id: TemplateOption = DEFAULT_TEMPLATE_ID,
    output_dir: Annotated[
        Path,
        typer.Option("--output-dir", "-o", help="Directory for generated PDFs"),
    ] = Path("outs/results"),
    workers: Annotated[
        int,
        typer.Option("--workers", "-w", help="Concurrent generations", min=1, max=64),
    ] = 4,
):
    """
    Generate PDFs for every matching context file, concurrently.

    Examples:\n

        $ generate_pdf.py batch data/contexts

        $ generate_pdf.py batch data/contexts --pattern "*.json" --workers 8
    """
    files = sorted(directory.glob(pattern))
    if not files:
        typer.secho(f"No files matching '{pattern}' in {directory}", fg=typer.colors.YELLOW)
        raise typer.Exit(code=1)

    contexts = [load_context(f) for f in files]
    log_dir = start_session("batch")

    typer.secho(f"\nGenerating {len(files)} documents", fg=typer.colors.BLUE, bold=True)
    pipeline = DocumentPipeline(output_dir=output_dir)
    results = pipeline.generate_many(contexts, template_id=template_id, max_workers=workers)

    typer.echo("")
    failures = 0
    for context_file, result in zip(files, results):
        if result.ok:
            typer.secho(f"  ✓ {context_file.name} -> {display_path(result.artifact.path)}", fg=typer.colors.GREEN)
        else:
            failures += 1
            typer.secho(
                f"  ✗ {context_file.name} [{result.error.kind.value}] {result.error.message}",
                fg=typer.colors.RED,
            )

    typer.echo(f"\n{len(files) - failures}/{len(files)} succeeded")
    typer.echo(f"Log: {display_path(log_dir / 'render.log')}\n")
    raise typer.Exit(code=0 if failures == 0 else 1)


@app.command("validate")
def validate_command(
    context_file: Annotated[Path, typer.Argument(help="Context file for the scenario")],
    scenario: Annotated[str, typer.Option("--scenario", "-s", help="Golden scenario name")],
    template_id: TemplateOption = DEFAULT_TEMPLATE_ID,
    golden_root: Annotated[
        Optional[Path],
        typer.Option("--golden-root", help="Root of golden sets (default: RXDOC_GOLDEN_PATH)"),
    ] = None,
    save_diffs: Annotated[
        Optional[Path],
        typer.Option("--save-diffs", help="Save mismatching pages and diff masks here"),
    ] = None,
):
    """
    Compare rendered pages with a golden scenario.

    Examples:\n

        $ generate_pdf.py validate context.yaml -s empty_prescriptions

        $ generate_pdf.py validate context.yaml -s empty_prescriptions --save-diffs outs/diffs
    """
    context = load_context(context_file)
    start_session("validate")

    typer.secho(f"\nValidating: {template_id}/{scenario}", fg=typer.colors.BLUE, bold=True)

    try:
        result = validate_document(
            DocumentPipeline(),
            context,
            scenario,
            template_id=template_id,
            golden_root=golden_root,
            save_mismatches_to=save_diffs,
        )
    except (RxdocError, ValueError) as e:
        typer.secho(f"Error: {e}\n", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    if result.is_valid:
        typer.secho("\n✓ Validation passed", fg=typer.colors.GREEN, bold=True)
    else:
        typer.secho("\n✗ Validation failed", fg=typer.colors.RED, bold=True)
        typer.echo(result.report)
    typer.echo(f"  Pages: {result.actual_page_count} (expected {result.expected_page_count})")
    typer.echo("")

    raise typer.Exit(code=0 if result.is_valid else 1)


@app.command("update-goldens")
def update_goldens_command(
    context_file: Annotated[Path, typer.Argument(help="Context file for the scenario")],
    scenario: Annotated[str, typer.Option("--scenario", "-s", help="Golden scenario name")],
    template_id: TemplateOption = DEFAULT_TEMPLATE_ID,
    golden_root: Annotated[
        Optional[Path],
        typer.Option("--golden-root", help="Root of golden sets (default: RXDOC_GOLDEN_PATH)"),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Overwrite without confirmation"),
    ] = False,
):
    """
    Render a scenario and store its pages as the new golden images.

    Refuses to write when the page count differs from the manifest's
    validation.expected_page_count; update the manifest first.
    """
    context = load_context(context_file)
    start_session("goldens")

    pipeline = DocumentPipeline()
    try:
        source = pipeline.renderer.resolve(template_id)
        validator = ArtifactValidator.for_template(source, scenario, golden_root=golden_root)
        artifact = pipeline.render_pages(context, template_id=template_id).unwrap()
    except (RxdocError, ValueError) as e:
        typer.secho(f"Error: {e}\n", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    if artifact.page_count != validator.expected_page_count:
        typer.secho(
            f"✗ Rendered {artifact.page_count} page(s) but the manifest declares "
            f"{validator.expected_page_count}. Update validation.expected_page_count first.",
            fg=typer.colors.RED,
            bold=True,
        )
        raise typer.Exit(code=1)

    if not yes:
        typer.confirm(f"Overwrite goldens in {display_path(validator.golden_dir)}?", abort=True)

    written = validator.write_goldens(list(artifact.pages))
    typer.secho(f"✓ Wrote {len(written)} golden page(s)", fg=typer.colors.GREEN, bold=True)
    for path in written:
        typer.echo(f"  {display_path(path)}")


if __name__ == "__main__":
    app()
