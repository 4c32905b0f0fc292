"""Shared fixtures: fake compilers, fake typst executables, sample contexts."""

import hashlib
import io
import threading
from pathlib import Path

import pytest
from omegaconf import OmegaConf
from PIL import Image

from rxdoc.contexts.rendering.compiler import Compiler, OutputFormat

FIXTURES_PATH = Path(__file__).parent / "fixtures"
CONTEXTS_PATH = FIXTURES_PATH / "contexts"
FIXTURE_GOLDENS_PATH = FIXTURES_PATH / "goldens"

PAGE_SIZE = (40, 56)


def make_png(color=(255, 255, 255), size=PAGE_SIZE, pixels=None) -> bytes:
    """Solid-color PNG, optionally with individual pixels overridden."""
    image = Image.new("RGB", size, color)
    for xy, value in (pixels or {}).items():
        image.putpixel(xy, value)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class FakeCompiler(Compiler):
    """
    Deterministic in-process compiler.

    PDF output embeds a hash of the source. Raster output yields one white
    page per "#pagebreak()" + 1; the first page gets a black band of
    TABLE_BAND rows per "#table(" in the source, so only layout-relevant
    changes show up as pixel differences.
    """

    name = "fake"
    TABLE_BAND = 4

    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, record_id, source):
        with self._lock:
            self.calls.append((record_id, source))
        if self.fail_with is not None:
            raise self.fail_with

    @staticmethod
    def digest(source: str) -> str:
        return hashlib.sha256(source.encode("utf-8")).hexdigest()

    def compile(self, source, output_format=OutputFormat.PDF, record_id=None):
        self._record(record_id, source)
        return f"FAKE-{output_format.value.upper()}\n{self.digest(source)}\n".encode()

    def compile_pages(self, source, output_format=OutputFormat.PNG, record_id=None):
        self._record(record_id, source)
        width, height = PAGE_SIZE
        band_rows = min(source.count("#table(") * self.TABLE_BAND, height)
        first = make_png(pixels={(x, y): (0, 0, 0) for x in range(width) for y in range(band_rows)})
        return [first] + [make_png() for _ in range(source.count("#pagebreak()"))]


def load_context(name: str) -> dict:
    return OmegaConf.to_container(OmegaConf.load(CONTEXTS_PATH / f"{name}.yaml"), resolve=True)


@pytest.fixture
def fake_compiler():
    return FakeCompiler()


@pytest.fixture
def empty_context():
    """One patient, zero prescriptions."""
    return load_context("empty_prescriptions")


@pytest.fixture
def full_context():
    """Patient with clinic, doctor and two prescriptions."""
    return load_context("two_prescriptions")


@pytest.fixture
def fake_typst(tmp_path):
    """
    Factory for fake typst executables.

    The body is a POSIX shell script; "$out" holds the last argument (the
    output destination).
    """

    def _make(body: str, name: str = "typst") -> Path:
        script = tmp_path / "bin" / name
        script.parent.mkdir(exist_ok=True)
        script.write_text('#!/bin/sh\nfor out; do :; done\n' + body + "\n")
        script.chmod(0o755)
        return script

    return _make


@pytest.fixture
def template_root(tmp_path):
    """Factory writing a custom template directory and returning its root."""
    root = tmp_path / "templates"

    def _make(template_id: str, template: str, manifest: str = 'version: "0.1"\n') -> Path:
        directory = root / template_id
        directory.mkdir(parents=True, exist_ok=True)
        (directory / "template.typ.jinja").write_text(template)
        (directory / "manifest.yaml").write_text(manifest)
        return root

    return _make
