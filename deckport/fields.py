"""
Encode and decode the ``notes.flds`` column.

Modern collections separate fields with the unit separator (U+001F).
Older exports used ``|`` or a JSON array, so decoding tries an ordered list
of splitters and takes the first that matches. Each splitter returns a list
of raw fields, or None when the input is not in its format.
"""

import json
import logging
from typing import Callable

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "\x1f"
LEGACY_SEPARATOR = "|"

# Applied in this order after the surrounding quotes are stripped
_ESCAPES = (
    ("''", "'"),
    ("\\n", "\n"),
    ("\\t", "\t"),
    ("\\r", "\r"),
    ("\\\\", "\\"),
)


def _split_unit_separator(raw: str) -> list | None:
    if FIELD_SEPARATOR in raw:
        return raw.split(FIELD_SEPARATOR)
    return None


def _split_pipe(raw: str) -> list | None:
    if LEGACY_SEPARATOR in raw:
        return raw.split(LEGACY_SEPARATOR)
    return None


def _split_json_array(raw: str) -> list | None:
    try:
        parsed = json.loads(raw)
    except (ValueError, RecursionError):
        return None
    if isinstance(parsed, list):
        return parsed
    return None


def _single_field(raw: str) -> list | None:
    return [raw]


SPLITTERS: tuple[Callable[[str], list | None], ...] = (
    _split_unit_separator,
    _split_pipe,
    _split_json_array,
    _single_field,
)


def unescape_field(field) -> str:
    """Undo the quoting and backslash escapes found in exported fields.

    Strips one leading and one trailing single quote, collapses doubled
    quotes, expands ``\\n``, ``\\t``, ``\\r`` and ``\\\\``, then trims
    whitespace. Anything that is not a non-empty string becomes ``""``.
    """
    if not isinstance(field, str) or not field:
        return ""

    if field.startswith("'"):
        field = field[1:]
    if field.endswith("'"):
        field = field[:-1]
    for escaped, plain in _ESCAPES:
        field = field.replace(escaped, plain)
    return field.strip()


def decode_fields(raw) -> list[str]:
    """Split a ``flds`` value into unescaped fields.

    Never raises: ``None`` or non-string input decodes to ``[""]``.

    :param raw: Value of the ``flds`` column.
    :returns: Ordered list of field values.
    """
    if not isinstance(raw, str):
        logger.debug("Non-text field blob %r", raw)
        return [""]

    for splitter in SPLITTERS:
        parts = splitter(raw)
        if parts is not None:
            return [unescape_field(part) for part in parts]
    return [""]


def encode_fields(front: str, back: str) -> str:
    """Join front and back with the unit separator.

    No escaping is applied, so quotes and backslashes are written as-is.
    """
    return f"{front}{FIELD_SEPARATOR}{back}"
