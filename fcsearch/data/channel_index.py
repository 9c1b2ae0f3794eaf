"""
Immutable, queryable search structure for one channel.

An index is built once from a record set and never mutated afterwards; a
refresh always produces a new ``ChannelIndex``. Lookups go through n-gram
postings so that a query never re-scans the whole record set.

Records are numbered in tie-break order (identity length, then identity), so
within one match class ascending position is already rank order. Exact and
prefix matches come from precomputed lookups; everything else is a substring
match, taken from the posting list in position order.
"""
from __future__ import annotations

import heapq
import logging
from bisect import bisect_left
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from fcsearch.domain.models import (
    ChannelRevision,
    OptionRecord,
    PackageRecord,
    RecordKind,
)
from fcsearch.domain.text_utils import MAX_GRAM, iter_ngrams, normalize_text, segment_suffixes

logger = logging.getLogger(__name__)

AnyRecord = Union[PackageRecord, OptionRecord]

DEFAULT_PAGE_SIZE = 50

_MAX_CODEPOINT = 0x10FFFF


def _prefix_upper_bound(prefix: str) -> Optional[str]:
    """Smallest string greater than every string starting with ``prefix``."""
    last = ord(prefix[-1])
    if last == _MAX_CODEPOINT:
        return None
    return prefix[:-1] + chr(last + 1)


def _match_keys(record: AnyRecord) -> Tuple[Set[str], Set[str]]:
    """
    Normalized keys under which a record is an exact match, and the keys
    whose prefixes make it a prefix match.

    Exact: the identity or the package name. Prefix: the package name or any
    dotted-segment-aligned suffix of the identity (``nginx.enable`` for
    ``services.nginx.enable``).
    """
    identity = normalize_text(record.identity)
    exact = {identity}
    prefixes = set(segment_suffixes(identity))
    if isinstance(record, PackageRecord):
        name = normalize_text(record.name)
        if name:
            exact.add(name)
            prefixes.add(name)
    prefixes.discard("")
    return exact, prefixes


class ChannelIndex:
    """
    A snapshot of one channel: the records plus their search structures.

    Use ``ChannelIndex.build`` to construct one.
    """

    def __init__(
        self,
        records: Tuple[AnyRecord, ...],
        ranked: Tuple[AnyRecord, ...],
        texts: Tuple[str, ...],
        postings: Dict[str, Tuple[int, ...]],
        exact: Dict[str, Tuple[int, ...]],
        prefix_keys: Tuple[str, ...],
        prefix_positions: Tuple[int, ...],
        *,
        channel: str,
        sequence: int,
        built_at: datetime,
        revision: Optional[ChannelRevision],
        skipped_count: int,
    ):
        self._records = records
        self._ranked = ranked
        self._kinds = tuple(r.kind for r in ranked)
        self._texts = texts
        self._postings = postings
        self._exact = exact
        self._prefix_keys = prefix_keys
        self._prefix_positions = prefix_positions
        self._by_identity = {(r.kind, r.identity): r for r in records}
        self.channel = channel
        self.sequence = sequence
        self.built_at = built_at
        self.revision = revision
        self.skipped_count = skipped_count

    @classmethod
    def build(
        cls,
        records: Iterable[AnyRecord],
        *,
        channel: str = "",
        sequence: int = 0,
        revision: Optional[ChannelRevision] = None,
        skipped_count: int = 0,
        built_at: Optional[datetime] = None,
    ) -> "ChannelIndex":
        """
        Build an index from a record set.

        The result depends only on the records: the same set always yields
        an index that answers every query identically.

        Raises:
            ValueError: if two records share a kind and identity.
        """
        ordered = tuple(sorted(records, key=lambda r: (r.identity, r.kind)))

        seen = set()
        for record in ordered:
            key = (record.kind, record.identity)
            if key in seen:
                raise ValueError(f"duplicate {record.kind} identity: {record.identity}")
            seen.add(key)

        ranked = tuple(sorted(ordered, key=lambda r: (len(r.identity), r.identity, r.kind)))
        texts = tuple(r.search_text for r in ranked)

        grouped: Dict[str, List[int]] = defaultdict(list)
        for position, text in enumerate(texts):
            for gram in set(iter_ngrams(text)):
                grouped[gram].append(position)
        postings = {gram: tuple(positions) for gram, positions in grouped.items()}

        exact: Dict[str, List[int]] = defaultdict(list)
        prefix_pairs: List[Tuple[str, int]] = []
        for position, record in enumerate(ranked):
            exact_keys, prefix_keys = _match_keys(record)
            for key in exact_keys:
                exact[key].append(position)
            prefix_pairs.extend((key, position) for key in prefix_keys)
        prefix_pairs.sort()

        index = cls(
            ordered,
            ranked,
            texts,
            postings,
            {key: tuple(positions) for key, positions in exact.items()},
            tuple(key for key, _ in prefix_pairs),
            tuple(position for _, position in prefix_pairs),
            channel=channel,
            sequence=sequence,
            built_at=built_at or datetime.now(timezone.utc),
            revision=revision,
            skipped_count=skipped_count,
        )
        logger.debug(
            f"Built index for channel '{channel}' seq={sequence}: "
            f"{len(ordered)} records, {len(postings)} grams"
        )
        return index

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> Tuple[AnyRecord, ...]:
        """All records, ordered by identity."""
        return self._records

    def count(self, kind: Optional[RecordKind] = None) -> int:
        if kind is None:
            return len(self._records)
        return self._kinds.count(kind.value)

    def get(self, kind: RecordKind, identity: str) -> Optional[AnyRecord]:
        return self._by_identity.get((kind.value, identity))

    # ------------------------------------------------------------------
    # Querying
    # ------------------------------------------------------------------

    def _candidates(self, needle: str) -> Sequence[int]:
        if len(needle) <= MAX_GRAM:
            # Every substring of this length is a posting key, so the list is exact.
            return self._postings.get(needle, ())

        grams = {needle[i:i + MAX_GRAM] for i in range(len(needle) - MAX_GRAM + 1)}
        lists = sorted((self._postings.get(g, ()) for g in grams), key=len)
        if not lists[0]:
            return ()

        candidates = set(lists[0])
        for positions in lists[1:]:
            candidates.intersection_update(positions)
            if not candidates:
                return ()
        return sorted(p for p in candidates if needle in self._texts[p])

    def _prefixed(self, needle: str) -> Set[int]:
        start = bisect_left(self._prefix_keys, needle)
        upper = _prefix_upper_bound(needle)
        end = bisect_left(self._prefix_keys, upper) if upper is not None else len(self._prefix_keys)
        return set(self._prefix_positions[start:end])

    def _rank(
        self,
        needle: str,
        candidates: Sequence[int],
        kind: Optional[str],
        needed: int,
    ) -> List[int]:
        """The first ``needed`` positions of ``candidates`` in rank order."""
        chosen = [
            p for p in self._exact.get(needle, ())
            if kind is None or self._kinds[p] == kind
        ]
        if len(chosen) >= needed:
            return chosen[:needed]

        taken = set(chosen)
        prefixed = self._prefixed(needle)
        prefixed.difference_update(taken)
        if kind is not None:
            prefixed = {p for p in prefixed if self._kinds[p] == kind}
        chosen.extend(heapq.nsmallest(needed - len(chosen), prefixed))
        if len(chosen) >= needed:
            return chosen

        # Every exact and prefix match is placed; fill up with substring matches.
        taken.update(prefixed)
        for position in candidates:
            if position not in taken:
                chosen.append(position)
                if len(chosen) >= needed:
                    break
        return chosen

    def search(
        self,
        query: str,
        kind: Optional[RecordKind] = None,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[AnyRecord], int]:
        """
        Return ``(ranked records, total match count)`` for a query.

        Records rank by match class (exact, prefix, substring), then by
        identity length, then by identity. The slice ``[offset:offset+limit]``
        is taken after ranking the full candidate set.
        """
        needle = normalize_text(query)
        if not needle or limit <= 0:
            return [], 0

        candidates = self._candidates(needle)
        wanted = kind.value if kind is not None else None
        if wanted is not None:
            candidates = [p for p in candidates if self._kinds[p] == wanted]

        total = len(candidates)
        if offset >= total:
            return [], total

        needed = offset + limit
        positions = self._rank(needle, candidates, wanted, needed)
        return [self._ranked[p] for p in positions[offset:needed]], total
