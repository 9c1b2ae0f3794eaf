"""Query engine: channel checks, paging and result pages."""

import pytest

from fcsearch.domain.errors import ChannelNotReady, InvalidQuery, UnknownChannel
from fcsearch.domain.models import RecordKind
from fcsearch.services.query_engine import QueryEngine


@pytest.fixture
def engine(registry, sample_index):
    registry.register("unstable")
    registry.publish("unstable", sample_index)
    registry.register("stable")
    return QueryEngine(registry, page_size=50, default_limit=15)


def test_unknown_channel(engine):
    with pytest.raises(UnknownChannel) as exc_info:
        engine.search("nope", "nginx")

    assert exc_info.value.code == "UnknownChannel"


def test_unknown_channel_wins_over_empty_query(engine):
    with pytest.raises(UnknownChannel):
        engine.search("nope", "")


def test_channel_not_ready(engine):
    with pytest.raises(ChannelNotReady):
        engine.search("stable", "nginx")


def test_empty_query_on_unready_channel(engine):
    page = engine.search("stable", "   ")

    assert page.total == 0
    assert page.items == []
    assert page.ready is False
    assert page.sequence is None


def test_empty_query_returns_empty_page(engine):
    page = engine.search("unstable", "")

    assert page.total == 0
    assert page.items == []
    assert page.ready is True
    assert page.sequence == 1


def test_search_returns_ranked_page(engine):
    page = engine.search("unstable", "nginx", kind=RecordKind.PACKAGE)

    assert [r.identity for r in page.items] == ["nginx", "nginx-mainline", "my-nginx-tool"]
    assert page.total == 3
    assert page.channel == "unstable"
    assert page.query == "nginx"
    assert page.limit == 15
    assert page.has_more is False


def test_kind_may_be_given_as_text(engine):
    page = engine.search("unstable", "nginx", kind="option")

    assert page.kind is RecordKind.OPTION
    assert [r.identity for r in page.items] == ["services.nginx.enable", "services.nginx.package"]


def test_paging(engine):
    first = engine.search("unstable", "nginx", limit=2)
    second = engine.search("unstable", "nginx", page=2, limit=2)
    third = engine.search("unstable", "nginx", page=3, limit=2)

    assert [r.identity for r in first.items] == ["nginx", "nginx-mainline"]
    assert [r.identity for r in second.items] == ["services.nginx.enable", "services.nginx.package"]
    assert [r.identity for r in third.items] == ["my-nginx-tool"]
    assert first.has_more and second.has_more
    assert not third.has_more


def test_limit_is_capped_at_page_size(registry, sample_index):
    registry.register("unstable")
    registry.publish("unstable", sample_index)
    engine = QueryEngine(registry, page_size=2, default_limit=15)

    page = engine.search("unstable", "nginx", limit=100)

    assert page.limit == 2
    assert len(page.items) == 2
    assert page.total == 5


@pytest.mark.parametrize(
    "kwargs",
    [
        {"kind": "bogus"},
        {"page": 0},
        {"limit": 0},
        {"limit": -3},
    ],
)
def test_invalid_query(engine, kwargs):
    with pytest.raises(InvalidQuery):
        engine.search("unstable", "nginx", **kwargs)


def test_default_channel_is_first_ready_one(engine):
    # "stable" sorts first but has never been built.
    assert engine.default_channel() == "unstable"


def test_no_default_channel_when_nothing_is_ready(registry):
    registry.register("unstable")

    assert QueryEngine(registry).default_channel() is None
