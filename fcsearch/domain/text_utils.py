import json
from typing import Any, Iterator, Optional
from urllib.parse import urljoin, urlparse

import markdown

# Longest substring length kept in the n-gram postings.
MAX_GRAM = 3

# Separates the fields of a record's search text. Never survives query normalization.
FIELD_SEPARATOR = "\n"


def strip_nulls(value: Any) -> Any:
    """
    Recursively remove keys with value None from dictionaries.

    Lists are preserved, but their elements are also cleaned.
    """
    if isinstance(value, dict):
        return {k: strip_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [strip_nulls(v) for v in value]
    return value


def normalize_text(value: Optional[str]) -> str:
    """
    Case-fold a value and collapse runs of whitespace to a single space.

    Record text and query text go through the same function so that
    substring tests between them are case- and spacing-insensitive.
    """
    if not value:
        return ""
    return " ".join(value.split()).casefold()


def render_value(value: Any) -> Optional[str]:
    """
    Render an option default/example as display text.

    Expression objects (``{"_type": "literalExpression", "text": ...}``) are
    reduced to their text; other non-string values become compact JSON.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("text"), str):
        return value["text"]
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def iter_ngrams(text: str, max_n: int = MAX_GRAM) -> Iterator[str]:
    """
    Yield every substring of ``text`` with length 1..max_n (duplicates included).
    """
    length = len(text)
    for start in range(length):
        for n in range(1, max_n + 1):
            end = start + n
            if end > length:
                break
            yield text[start:end]


def segment_suffixes(path: str) -> Iterator[str]:
    """
    Yield the dotted-segment-aligned suffixes of a path.

    ``services.nginx.enable`` yields ``services.nginx.enable``,
    ``nginx.enable`` and ``enable``.
    """
    yield path
    start = path.find(".")
    while start != -1:
        yield path[start + 1:]
        start = path.find(".", start + 1)


def declaration_url(declaration: str) -> Optional[str]:
    """
    Link target for an option declaration, or None if it is not a URL.

    A URL pointing at a module directory is completed with ``default.nix``.
    """
    parsed = urlparse(declaration)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    if parsed.path.endswith(".nix"):
        return declaration
    return urljoin(declaration, "default.nix")


def render_markdown(text: Optional[str]) -> str:
    """Render option documentation (Markdown) to HTML."""
    if not text:
        return ""
    return markdown.markdown(text)
