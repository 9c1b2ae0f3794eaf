"""
Exception hierarchy for the search service.

Per-entry feed problems are not exceptions; they are collected as
``SkippedEntry`` values by the feed loader.
"""
from __future__ import annotations


class SearchServiceError(Exception):
    """Base class for all errors raised by the search service."""


# ---------------------------------------------------------------------------
# Feed / refresh errors (recorded against the channel, never raised to queries)
# ---------------------------------------------------------------------------

class FeedError(SearchServiceError):
    """A channel feed could not be obtained or understood."""


class FeedUnparsable(FeedError):
    """A feed document is not well-formed at the top level."""

    def __init__(self, document: str, detail: str):
        self.document = document
        self.detail = detail
        super().__init__(f"{document}: {detail}")


class FeedFetchError(FeedError):
    """The feed documents could not be fetched from their source."""


class RefreshTimeout(SearchServiceError):
    """A refresh exceeded its time limit and was abandoned."""

    def __init__(self, channel: str, timeout: float):
        self.channel = channel
        self.timeout = timeout
        super().__init__(f"refresh of channel '{channel}' exceeded {timeout:g}s")


# ---------------------------------------------------------------------------
# Query-time errors (returned to the immediate caller)
# ---------------------------------------------------------------------------

class QueryError(SearchServiceError):
    """Base class for errors returned from a search call."""

    code = "QueryError"


class UnknownChannel(QueryError):
    code = "UnknownChannel"

    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"unknown channel '{channel}'")


class ChannelNotReady(QueryError):
    code = "ChannelNotReady"

    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"channel '{channel}' has not been built yet")


class InvalidQuery(QueryError):
    code = "InvalidQuery"


# ---------------------------------------------------------------------------
# Bookkeeping store
# ---------------------------------------------------------------------------

class StateStoreError(SearchServiceError):
    """The bookkeeping store is unusable. Fatal at startup."""
