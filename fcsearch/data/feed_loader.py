"""
Parse a channel's two feed documents into validated records.

Per-entry problems never abort a load: the entry is skipped and the reason is
recorded. Only a document that is not well-formed at the top level fails the
whole load with ``FeedUnparsable``.
"""
from __future__ import annotations

import json
import logging
from collections import Counter
from typing import Any, Iterator, List, Optional, Set, Tuple, Type, Union

from pydantic import BaseModel, ValidationError

from fcsearch.domain.errors import FeedUnparsable
from fcsearch.domain.models import (
    LoadResult,
    OptionRecord,
    PackageRecord,
    SkippedEntry,
    SkipReason,
)

logger = logging.getLogger(__name__)

OPTIONS_DOCUMENT = "options.json"
PACKAGES_DOCUMENT = "packages.json"

RawDocument = Union[str, bytes]


class _Pairs(list):
    """A JSON object kept as its ordered (key, value) pairs, duplicates included."""


def _materialize(value: Any) -> Any:
    """Turn parsed ``_Pairs`` back into plain dicts (last key wins, like ``json``)."""
    if isinstance(value, _Pairs):
        return {k: _materialize(v) for k, v in value}
    if isinstance(value, list):
        return [_materialize(v) for v in value]
    return value


def _parse_document(document: str, raw: RawDocument) -> list:
    try:
        parsed = json.loads(raw, object_pairs_hook=_Pairs)
    except ValueError as e:
        # JSONDecodeError and UnicodeDecodeError are both ValueErrors.
        raise FeedUnparsable(document, f"not valid JSON: {e}") from e
    except TypeError as e:
        raise FeedUnparsable(document, f"unsupported document type: {e}") from e

    if not isinstance(parsed, list):
        raise FeedUnparsable(
            document, f"expected an object or a list at the top level, got {type(parsed).__name__}"
        )
    return parsed


def _iter_entries(parsed: list, identity_key: str) -> Iterator[Tuple[Optional[str], Any]]:
    """
    Yield ``(identity, entry)`` pairs for either supported document shape.

    * mapping form: ``{"<identity>": {...}, ...}``
    * list form: ``[{"<identity_key>": "<identity>", ...}, ...]``
    """
    if isinstance(parsed, _Pairs):
        for key, value in parsed:
            yield key, value
        return

    for item in parsed:
        if isinstance(item, _Pairs):
            identity = None
            for key, value in item:
                if key == identity_key:
                    identity = value
            yield identity, item
        else:
            yield None, item


def _load_document(
    document: str,
    raw: RawDocument,
    model: Type[BaseModel],
    identity_field: str,
    identity_key: str,
    skipped: List[SkippedEntry],
) -> List[BaseModel]:
    parsed = _parse_document(document, raw)
    records: List[BaseModel] = []
    seen: Set[str] = set()

    for identity, entry in _iter_entries(parsed, identity_key):
        if not isinstance(entry, _Pairs):
            skipped.append(SkippedEntry(
                document, identity if isinstance(identity, str) else None,
                SkipReason.MALFORMED_ENTRY, f"expected an object, got {type(entry).__name__}",
            ))
            continue

        if not isinstance(identity, str) or not identity.strip():
            skipped.append(SkippedEntry(
                document, None, SkipReason.MISSING_IDENTITY, f"no usable '{identity_key}'"
            ))
            continue

        if identity in seen:
            skipped.append(SkippedEntry(document, identity, SkipReason.DUPLICATE_IDENTITY))
            continue
        seen.add(identity)

        fields = _materialize(entry)
        fields[identity_field] = identity
        try:
            records.append(model.model_validate(fields))
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(p) for p in first.get("loc", ()))
            skipped.append(SkippedEntry(
                document, identity, SkipReason.MALFORMED_ENTRY, f"{location}: {first.get('msg')}"
            ))

    return records


def load_feed(
    options_doc: RawDocument,
    packages_doc: RawDocument,
    channel: Optional[str] = None,
) -> LoadResult:
    """
    Build the record set for one channel from its raw feed documents.

    Raises:
        FeedUnparsable: if either document is not well-formed at the top level.
    """
    skipped: List[SkippedEntry] = []
    options = _load_document(OPTIONS_DOCUMENT, options_doc, OptionRecord, "path", "name", skipped)
    packages = _load_document(
        PACKAGES_DOCUMENT, packages_doc, PackageRecord, "attribute_path", "attribute_name", skipped
    )

    records = sorted([*packages, *options], key=lambda r: (r.kind, r.identity))
    prefix = f"[{channel}] " if channel else ""
    logger.info(f"{prefix}Loaded {len(packages)} packages and {len(options)} options")
    if skipped:
        counts = Counter(s.reason.value for s in skipped)
        summary = ", ".join(f"{reason}={count}" for reason, count in sorted(counts.items()))
        logger.warning(f"{prefix}Skipped {len(skipped)} feed entries ({summary})")

    return LoadResult(records=tuple(records), skipped=tuple(skipped))
