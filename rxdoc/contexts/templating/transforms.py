"""
Field transforms for Typst templates.

Each transform is a plain function registered as a Jinja2 filter under its own
name, so templates compose them instead of repeating formatting logic:

    <<< patient.name | sentence_case | typst_str >>>
    <<< notes | elide_empty("No notes.") | typst_str >>>
    <<< prescriptions | prescription_rows >>>
"""

import re
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from rxdoc.exceptions import TemplateRenderError

# Columns emitted by prescription_rows, in order. Each entry is
# (header, keys tried in order to find the value on a prescription item).
PRESCRIPTION_COLUMNS = [
    ("Medicine", ("medicine", "drug", "name")),
    ("Dosage", ("dosage", "dose")),
    ("Frequency", ("frequency",)),
    ("Duration", ("duration",)),
    ("Instructions", ("instructions", "notes")),
]

# Characters that must be escaped inside a Typst string literal
_TYPST_STRING_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}

_SENTENCE_END = re.compile(r"([.!?]\s+)")


def is_empty(value: Any) -> bool:
    """True for None, blank strings and empty collections."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def elide_empty(value: Any, fallback: Any = "") -> Any:
    """
    Replace empty data with a fallback.

    Args:
        value: Any context value
        fallback: Returned when value is None, blank, or an empty collection

    Returns:
        The value unchanged, or the fallback

    Example:
        >>> elide_empty(None, "Not recorded")
        'Not recorded'
        >>> elide_empty("  ")
        ''
        >>> elide_empty("Penicillin")
        'Penicillin'
    """
    return fallback if is_empty(value) else value


def sentence_case(value: Any) -> str:
    """
    Lowercase text and capitalize the first letter of each sentence.

    Words written entirely in capitals of length two or more (e.g. "BP",
    "HIV") are treated as acronyms and kept as-is.

    Example:
        >>> sentence_case("take with food. avoid alcohol")
        'Take with food. Avoid alcohol'
        >>> sentence_case("TAKE WITH FOOD")
        'Take with food'
        >>> sentence_case("check BP weekly")
        'Check BP weekly'
    """
    if is_empty(value):
        return ""
    text = str(value).strip()

    # A fully uppercase string carries no acronym information
    shouting = text.isupper()

    words = []
    for word in text.split(" "):
        if not shouting and len(word) > 1 and word.isupper():
            words.append(word)
        else:
            words.append(word.lower())
    text = " ".join(words)

    pieces = _SENTENCE_END.split(text)
    return "".join(_capitalize_first(piece) for piece in pieces)


def _capitalize_first(text: str) -> str:
    for i, char in enumerate(text):
        if char.isalpha():
            return text[:i] + char.upper() + text[i + 1 :]
    return text


def typst_str(value: Any) -> str:
    """
    Render a value as a quoted Typst string literal.

    Used in markup as ``#<<< value | typst_str >>>`` so user data can never be
    interpreted as Typst markup or code.

    Example:
        >>> typst_str('Take "1" #tablet')
        '"Take \\\\"1\\\\" #tablet"'
    """
    text = "" if value is None else str(value)
    escaped = "".join(_TYPST_STRING_ESCAPES.get(char, char) for char in text)
    return f'"{escaped}"'


def format_date(value: Any, fmt: str = "%d %b %Y") -> str:
    """
    Format a date, datetime or ISO 8601 string.

    Strings that do not parse as ISO dates are returned unchanged, so
    pre-formatted dates pass through.

    Example:
        >>> format_date("2024-03-05")
        '05 Mar 2024'
    """
    if is_empty(value):
        return ""
    if isinstance(value, (date, datetime)):
        return value.strftime(fmt)
    try:
        return datetime.fromisoformat(str(value)).strftime(fmt)
    except ValueError:
        return str(value)


def join_nonempty(values: Optional[Iterable[Any]], separator: str = ", ") -> str:
    """Join the non-empty items of a sequence."""
    if values is None:
        return ""
    return separator.join(str(v).strip() for v in values if not is_empty(v))


def _prescription_value(item: Mapping[str, Any], keys) -> str:
    for key in keys:
        value = item.get(key)
        if not is_empty(value):
            return str(value)
    return ""


def prescription_cells(item: Mapping[str, Any]) -> List[str]:
    """Column values for a single prescription, in PRESCRIPTION_COLUMNS order."""
    if not isinstance(item, Mapping):
        raise TemplateRenderError(
            f"Prescription entries must be mappings, got {type(item).__name__}: {item!r}"
        )
    return [_prescription_value(item, keys) for _, keys in PRESCRIPTION_COLUMNS]


def prescription_rows(prescriptions: Optional[Iterable[Mapping[str, Any]]]) -> str:
    """
    Format a prescription list as Typst table cells.

    Each prescription becomes one row of ``[#"..."]`` content cells, one per
    entry in PRESCRIPTION_COLUMNS. Missing values become empty cells.
    Instructions are sentence-cased. An empty list returns an empty string.

    Example:
        >>> print(prescription_rows([{"medicine": "Amoxicillin", "dosage": "500 mg"}]))
        [#"Amoxicillin"], [#"500 mg"], [#""], [#""], [#""],
    """
    if prescriptions is None:
        return ""

    rows = []
    for item in prescriptions:
        cells = prescription_cells(item)
        cells[-1] = sentence_case(cells[-1])
        rows.append(", ".join(f"[#{typst_str(cell)}]" for cell in cells) + ",")

    return "\n".join(rows)


def prescription_headers() -> str:
    """Typst table header cells matching prescription_rows."""
    return ", ".join(f"[*{header}*]" for header, _ in PRESCRIPTION_COLUMNS)


# Registry of named transforms exposed to templates as Jinja2 filters
TRANSFORMS: Dict[str, Callable[..., Any]] = {
    "elide_empty": elide_empty,
    "sentence_case": sentence_case,
    "typst_str": typst_str,
    "format_date": format_date,
    "join_nonempty": join_nonempty,
    "prescription_rows": prescription_rows,
}

# Values exposed to templates as Jinja2 globals
TEMPLATE_GLOBALS: Dict[str, Any] = {
    "prescription_headers": prescription_headers,
    "prescription_column_count": len(PRESCRIPTION_COLUMNS),
}
