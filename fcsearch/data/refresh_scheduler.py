"""
Background rebuilding of channel indexes.

Every channel is refreshed on a fixed interval and on explicit request. At
most one refresh per channel is in flight; a request arriving meanwhile is
remembered once and runs right after the current refresh finishes.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from fcsearch.data.channel_index import ChannelIndex
from fcsearch.data.feed_loader import load_feed
from fcsearch.data.registry import ChannelRegistry
from fcsearch.domain.errors import FeedError, RefreshTimeout
from fcsearch.domain.models import RefreshOutcome
from fcsearch.services.feed_source import FeedDocuments, FeedSource

logger = logging.getLogger(__name__)


class RefreshState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass
class _ChannelWork:
    source: FeedSource
    state: RefreshState = RefreshState.IDLE
    pending: bool = False
    task: Optional[asyncio.Task] = None


def _build_index(channel: str, sequence: int, documents: FeedDocuments) -> ChannelIndex:
    """Parse and index a feed. CPU-bound; runs in a worker thread."""
    result = load_feed(documents.options, documents.packages, channel=channel)
    return ChannelIndex.build(
        result.records,
        channel=channel,
        sequence=sequence,
        revision=documents.revision,
        skipped_count=result.skipped_count,
    )


class RefreshScheduler:
    def __init__(
        self,
        registry: ChannelRegistry,
        interval_seconds: float,
        timeout_seconds: float,
    ):
        self.registry = registry
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self._channels: Dict[str, _ChannelWork] = {}
        self._loops: List[asyncio.Task] = []

    def add_channel(self, channel: str, source: FeedSource) -> None:
        """Register a channel and the source its feed is fetched from."""
        self.registry.register(channel)
        self._channels[channel] = _ChannelWork(source=source)
        logger.info(f"[{channel}] feed source: {source.describe()}")

    def state(self, channel: str) -> RefreshState:
        return self._channels[channel].state

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger(self, channel: str) -> bool:
        """
        Request a refresh of ``channel``.

        Returns True if a refresh was started, False if one is already
        running (the request is then queued to run once afterwards).
        Must be called from the event loop.
        """
        work = self._channels[channel]
        if work.state is RefreshState.REFRESHING:
            if not work.pending:
                logger.info(f"[{channel}] refresh already running, queued one more")
            work.pending = True
            return False

        work.state = RefreshState.REFRESHING
        work.task = asyncio.create_task(self._drain(channel, work), name=f"refresh-{channel}")
        return True

    async def refresh(self, channel: str) -> RefreshOutcome:
        """Trigger a refresh and wait for it (and any queued rerun) to finish."""
        self.trigger(channel)
        task = self._channels[channel].task
        # Shielded so that a caller giving up does not abandon the refresh itself.
        return await asyncio.shield(task)

    async def wait_idle(self) -> None:
        """Wait until no channel has a refresh in flight."""
        tasks = [w.task for w in self._channels.values() if w.task is not None and not w.task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _drain(self, channel: str, work: _ChannelWork) -> RefreshOutcome:
        try:
            while True:
                work.pending = False
                outcome = await self._refresh_once(channel, work.source)
                if not work.pending:
                    return outcome
                logger.info(f"[{channel}] running queued refresh")
        finally:
            work.state = RefreshState.IDLE

    # ------------------------------------------------------------------
    # One refresh
    # ------------------------------------------------------------------

    async def _refresh_once(self, channel: str, source: FeedSource) -> RefreshOutcome:
        logger.info(f"[{channel}] starting update")
        try:
            return await asyncio.wait_for(
                self._load_and_publish(channel, source), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            error = RefreshTimeout(channel, self.timeout_seconds)
            logger.error(f"[{channel}] {error}; keeping the previous snapshot")
            self.registry.record_failure(channel, RefreshOutcome.TIMEOUT, str(error))
            return RefreshOutcome.TIMEOUT
        except FeedError as e:
            logger.error(f"[{channel}] error updating channel: {e}")
            self.registry.record_failure(channel, RefreshOutcome.FAILED, str(e))
            return RefreshOutcome.FAILED
        except Exception as e:
            logger.error(f"[{channel}] unexpected error updating channel: {e}", exc_info=True)
            self.registry.record_failure(channel, RefreshOutcome.FAILED, f"{type(e).__name__}: {e}")
            return RefreshOutcome.FAILED

    async def _load_and_publish(self, channel: str, source: FeedSource) -> RefreshOutcome:
        entry = self.registry.entry(channel)
        previous = entry.revision if entry is not None else None

        documents = await source.fetch(previous)
        if documents is None:
            logger.info(f"[{channel}] already up-to-date")
            self.registry.record_unchanged(channel)
            return RefreshOutcome.UNCHANGED

        # A download failed and the cached copy stands in: serve it, but report the failure.
        fallback_error = None
        if documents.fallback_error is not None:
            fallback_error = f"upstream unavailable, serving cached feed: {documents.fallback_error}"
            logger.warning(f"[{channel}] {fallback_error}")

        if documents.revision.same_content(previous):
            if fallback_error is not None:
                self.registry.record_failure(channel, RefreshOutcome.FAILED, fallback_error)
                return RefreshOutcome.FAILED
            logger.info(f"[{channel}] already up-to-date")
            self.registry.record_unchanged(channel)
            return RefreshOutcome.UNCHANGED

        sequence = self.registry.next_sequence(channel)
        index = await asyncio.to_thread(_build_index, channel, sequence, documents)

        if not self.registry.publish(channel, index, error=fallback_error):
            return RefreshOutcome.UNCHANGED
        if index.skipped_count:
            logger.info(f"[{channel}] build #{sequence} skipped {index.skipped_count} feed entries")
        if fallback_error is not None:
            return RefreshOutcome.FAILED
        return RefreshOutcome.SUCCESS

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _periodic_loop(self, channel: str) -> None:
        hours, rest = divmod(int(self.interval_seconds), 3600)
        while True:
            logger.info(f"[{channel}] next tick in {hours}h {rest // 60}m")
            await asyncio.sleep(self.interval_seconds)
            try:
                self.trigger(channel)
            except Exception as e:
                logger.error(f"[{channel}] error in refresh loop: {e}", exc_info=True)

    def start(self, periodic: bool = True) -> None:
        """
        Refresh every channel once now and, if ``periodic``, keep refreshing
        each of them every ``interval_seconds``.
        """
        for channel in sorted(self._channels):
            self.trigger(channel)
            if periodic:
                self._loops.append(
                    asyncio.create_task(self._periodic_loop(channel), name=f"refresh-loop-{channel}")
                )

    async def stop(self) -> None:
        tasks = list(self._loops)
        tasks.extend(w.task for w in self._channels.values() if w.task is not None and not w.task.done())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loops.clear()
