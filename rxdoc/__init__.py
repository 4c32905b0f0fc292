"""
RXDOC - Reproducible prescription Documents

A pipeline that turns structured clinical record data into PDF documents using
the Typst typesetting compiler, with deterministic output that can be verified
against golden page images.

Architecture:
- Templating Context: Versioned Typst templates and context binding
- Rendering Context: Compiler invocation, output management and validation
- Pipeline: Orchestrates render -> compile for a single record
"""

__version__ = "0.1.0"
