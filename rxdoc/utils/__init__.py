"""
Shared utilities for RXDOC.

Common functionality used across contexts:
- Logger setup
- Timestamps
- PDF inspection
"""

from rxdoc.utils.timestamp import now

__all__ = ["now"]
