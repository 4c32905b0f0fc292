"""
PDF processing utilities.

Helper functions:
    pdf_page_count_from_bytes: Page count of an in-memory PDF artifact.
"""

import io
from typing import Optional

from PyPDF2 import PdfReader


def pdf_page_count_from_bytes(data: bytes) -> Optional[int]:
    """Get page count from PDF bytes, or None if the bytes are not a readable PDF."""
    if not data.startswith(b"%PDF"):
        return None
    try:
        reader = PdfReader(io.BytesIO(data))
        return len(reader.pages)
    except Exception:
        return None
