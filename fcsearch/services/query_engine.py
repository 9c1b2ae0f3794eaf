from __future__ import annotations

import logging
from typing import Optional, Union

from fcsearch.data.channel_index import DEFAULT_PAGE_SIZE
from fcsearch.data.registry import ChannelRegistry
from fcsearch.domain.errors import ChannelNotReady, InvalidQuery, UnknownChannel
from fcsearch.domain.models import RecordKind, SearchPage

logger = logging.getLogger(__name__)


class QueryEngine:
    """
    Answers search requests against the live snapshot of a channel.

    Holds no mutable state of its own; each call reads exactly one snapshot
    from the registry and uses only that snapshot.
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        page_size: int = DEFAULT_PAGE_SIZE,
        default_limit: int = 15,
    ):
        self.registry = registry
        self.page_size = page_size
        self.default_limit = min(default_limit, page_size)

    def default_channel(self) -> Optional[str]:
        """The lexically first channel that can be searched, if any."""
        for name in self.registry.names():
            if self.registry.get(name) is not None:
                return name
        return None

    def search(
        self,
        channel: str,
        query_text: str,
        kind: Optional[Union[RecordKind, str]] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> SearchPage:
        """
        Search one channel.

        Raises:
            UnknownChannel: the channel is not configured.
            ChannelNotReady: the channel has never been built successfully.
            InvalidQuery: bad kind, page or limit.
        """
        if kind is not None and not isinstance(kind, RecordKind):
            try:
                kind = RecordKind(kind)
            except ValueError:
                raise InvalidQuery(f"unknown result kind '{kind}'")
        if page < 1:
            raise InvalidQuery("page must be 1 or greater")
        if limit is None:
            limit = self.default_limit
        if limit < 1:
            raise InvalidQuery("limit must be 1 or greater")
        limit = min(limit, self.page_size)

        entry = self.registry.entry(channel)
        if entry is None:
            raise UnknownChannel(channel)

        # Take the snapshot once; a concurrent publish cannot affect this call.
        index = entry.index
        query_text = query_text or ""

        if not query_text.strip():
            return SearchPage(
                channel=channel,
                query=query_text,
                kind=kind,
                page=page,
                limit=limit,
                total=0,
                sequence=index.sequence if index is not None else None,
                ready=index is not None,
            )

        if index is None:
            raise ChannelNotReady(channel)

        items, total = index.search(query_text, kind=kind, offset=(page - 1) * limit, limit=limit)
        logger.debug(
            f"[{channel}] q={query_text!r} kind={kind.value if kind else None} "
            f"page={page} -> {len(items)}/{total}"
        )
        return SearchPage(
            channel=channel,
            query=query_text,
            kind=kind,
            page=page,
            limit=limit,
            total=total,
            sequence=index.sequence,
            ready=True,
            items=items,
        )
