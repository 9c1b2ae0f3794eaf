"""
The live channel -> index mapping.

Readers take the current ``ChannelEntry`` with a single dictionary lookup and
never lock. Writers build a complete replacement entry and swap it in under a
writer lock, so a reader sees either the old snapshot or the new one in full.
A snapshot a reader still holds stays alive until the reader drops it.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fcsearch.data.channel_index import ChannelIndex
from fcsearch.data.models import ChannelBookkeeping
from fcsearch.domain.models import ChannelRevision, ChannelStatus, RefreshOutcome
from fcsearch.storage.state_store import StateStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChannelEntry:
    name: str
    index: Optional[ChannelIndex] = None
    last_good_sequence: int = 0
    last_refresh_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_outcome: RefreshOutcome = RefreshOutcome.NEVER
    last_error: Optional[str] = None
    # Digests of the feed the last good build came from; survive restarts.
    options_digest: Optional[str] = None
    packages_digest: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.index is not None

    @property
    def revision(self) -> Optional[ChannelRevision]:
        return self.index.revision if self.index is not None else None

    def to_status(self) -> ChannelStatus:
        return ChannelStatus(
            name=self.name,
            ready=self.ready,
            sequence=self.index.sequence if self.index is not None else None,
            record_count=len(self.index) if self.index is not None else 0,
            last_refresh_at=self.last_refresh_at,
            last_success_at=self.last_success_at,
            last_outcome=self.last_outcome,
            last_error=self.last_error,
        )


class ChannelRegistry:
    """
    Holds the currently-live index of every known channel.

    Created empty at startup, filled through ``register`` and ``publish``,
    and torn down with ``close``.
    """

    def __init__(self, store: Optional[StateStore] = None):
        self._store = store
        self._entries: Dict[str, ChannelEntry] = {}
        self._sequences: Dict[str, int] = {}
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Readers (lock-free)
    # ------------------------------------------------------------------

    def is_known(self, channel: str) -> bool:
        return channel in self._entries

    def entry(self, channel: str) -> Optional[ChannelEntry]:
        return self._entries.get(channel)

    def get(self, channel: str) -> Optional[ChannelIndex]:
        """The live snapshot of a channel, or None if unknown or never built."""
        entry = self._entries.get(channel)
        return entry.index if entry is not None else None

    def names(self) -> List[str]:
        return sorted(self._entries)

    def list_channels(self) -> List[ChannelStatus]:
        entries = list(self._entries.values())
        return [e.to_status() for e in sorted(entries, key=lambda e: e.name)]

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def register(self, channel: str) -> ChannelEntry:
        """
        Make a channel known. Bookkeeping from a previous run is restored,
        but the channel is not ready until an index is published.
        """
        with self._write_lock:
            existing = self._entries.get(channel)
            if existing is not None:
                return existing

            entry = ChannelEntry(name=channel)
            if self._store is not None:
                saved = self._store.load_channel(channel)
                if saved is not None:
                    entry = ChannelEntry(
                        name=channel,
                        last_good_sequence=saved.last_good_sequence,
                        last_refresh_at=saved.last_refresh_at,
                        last_success_at=saved.last_success_at,
                        last_outcome=saved.last_outcome,
                        last_error=saved.last_error,
                        options_digest=saved.options_revision,
                        packages_digest=saved.packages_revision,
                    )
                    logger.info(
                        f"[{channel}] restored bookkeeping: last good build "
                        f"#{saved.last_good_sequence}, last outcome {saved.last_outcome.value}"
                    )

            self._sequences[channel] = entry.last_good_sequence
            self._entries[channel] = entry
            return entry

    def next_sequence(self, channel: str) -> int:
        """Reserve the build sequence number for the next build of a channel."""
        with self._write_lock:
            if channel not in self._entries:
                raise KeyError(f"unknown channel '{channel}'")
            sequence = self._sequences[channel] + 1
            self._sequences[channel] = sequence
            return sequence

    def publish(self, channel: str, index: ChannelIndex, error: Optional[str] = None) -> bool:
        """
        Atomically make ``index`` the live snapshot of ``channel``.

        ``error`` marks a build made from a stale source (a cached feed after
        a failed download): the index goes live, but the refresh is recorded
        as failed and ``last_success_at`` is left alone.

        Returns False (and changes nothing) if a snapshot with an equal or
        higher build sequence number is already live.
        """
        with self._write_lock:
            entry = self._entries.get(channel)
            if entry is None:
                raise KeyError(f"unknown channel '{channel}'")

            if entry.index is not None and entry.index.sequence >= index.sequence:
                logger.warning(
                    f"[{channel}] not publishing build #{index.sequence}: "
                    f"build #{entry.index.sequence} is already live"
                )
                return False

            now = _utcnow()
            revision = index.revision
            new_entry = replace(
                entry,
                index=index,
                last_good_sequence=index.sequence,
                last_refresh_at=now,
                last_success_at=now if error is None else entry.last_success_at,
                last_outcome=RefreshOutcome.SUCCESS if error is None else RefreshOutcome.FAILED,
                last_error=error,
                options_digest=revision.options.digest if revision else entry.options_digest,
                packages_digest=revision.packages.digest if revision else entry.packages_digest,
            )
            self._sequences[channel] = max(self._sequences.get(channel, 0), index.sequence)
            self._entries[channel] = new_entry
            self._persist(new_entry)

        logger.info(f"[{channel}] published build #{index.sequence} ({len(index)} records)")
        return True

    def record_unchanged(self, channel: str) -> None:
        """A refresh found nothing new; the live snapshot stays."""
        now = _utcnow()
        self._update(
            channel,
            last_refresh_at=now,
            last_success_at=now,
            last_outcome=RefreshOutcome.UNCHANGED,
            last_error=None,
        )

    def record_failure(self, channel: str, outcome: RefreshOutcome, reason: str) -> None:
        """A refresh failed; the live snapshot (if any) stays."""
        self._update(
            channel,
            last_refresh_at=_utcnow(),
            last_outcome=outcome,
            last_error=reason,
        )

    def _update(self, channel: str, **changes) -> None:
        with self._write_lock:
            entry = self._entries.get(channel)
            if entry is None:
                raise KeyError(f"unknown channel '{channel}'")
            new_entry = replace(entry, **changes)
            self._entries[channel] = new_entry
            self._persist(new_entry)

    def _persist(self, entry: ChannelEntry) -> None:
        if self._store is None:
            return
        record = ChannelBookkeeping(
            name=entry.name,
            last_good_sequence=entry.last_good_sequence,
            last_refresh_at=entry.last_refresh_at,
            last_success_at=entry.last_success_at,
            last_outcome=entry.last_outcome,
            last_error=entry.last_error,
            options_revision=entry.options_digest,
            packages_revision=entry.packages_digest,
        )
        try:
            self._store.save_channel(record)
        except Exception as e:
            # Bookkeeping is best effort at runtime; serving continues.
            logger.error(f"[{entry.name}] failed to persist bookkeeping: {e}", exc_info=True)

    def close(self) -> None:
        with self._write_lock:
            self._entries.clear()
            self._sequences.clear()
