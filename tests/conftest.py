"""Shared pytest fixtures for all tests.

The sample feed mirrors the producer's format: both documents are objects
mapping an identity to its entry.
"""

import gc
import json

import httpx
import pytest

from fcsearch.data.channel_index import ChannelIndex
from fcsearch.data.feed_loader import OPTIONS_DOCUMENT, PACKAGES_DOCUMENT, load_feed
from fcsearch.data.registry import ChannelRegistry
from fcsearch.services.feed_source import HttpFeedSource
from fcsearch.storage.sqlite_state_store import SqliteStateStore


SAMPLE_OPTIONS = {
    "services.nginx.enable": {
        "type": "boolean",
        "default": False,
        "description": "Whether to enable Nginx Web Server.",
        "declarations": ["nixos/modules/services/web-servers/nginx/default.nix"],
    },
    "services.nginx.package": {
        "type": "package",
        "default": {"_type": "literalExpression", "text": "pkgs.nginxStable"},
        "description": "Nginx package to use.",
        "declarations": [
            "https://github.com/NixOS/nixpkgs/blob/master/nixos/modules/services/web-servers/nginx/",
        ],
    },
    "networking.hostName": {
        "type": "string",
        "default": "nixos",
        "description": "The name of the machine.",
    },
}

SAMPLE_PACKAGES = {
    "nginx": {
        "name": "nginx-1.24.0",
        "version": "1.24.0",
        "description": "A reverse proxy and lightweight webserver",
        "homepage": "https://nginx.org",
        "license": {"fullName": "BSD 2-clause \"Simplified\" License", "spdxId": "BSD-2-Clause"},
        "outputs": ["out", "doc"],
    },
    "nginx-mainline": {
        "name": "nginx-1.25.3",
        "version": "1.25.3",
        "description": "A reverse proxy and lightweight webserver (mainline branch)",
    },
    "my-nginx-tool": {
        "name": "my-nginx-tool-0.1",
        "version": "0.1",
        "description": "Helper scripts",
    },
    "hello": {
        "name": "hello-2.12.1",
        "version": "2.12.1",
        "description": "A program that produces a familiar, friendly greeting",
        "license": "GPL-3.0-or-later",
    },
}


def dump(document) -> bytes:
    return json.dumps(document).encode("utf-8")


def write_feed(directory, options=None, packages=None):
    """Write options.json and packages.json into ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    (directory / OPTIONS_DOCUMENT).write_bytes(dump(SAMPLE_OPTIONS if options is None else options))
    (directory / PACKAGES_DOCUMENT).write_bytes(dump(SAMPLE_PACKAGES if packages is None else packages))
    return directory


@pytest.fixture(autouse=True)
def cleanup_after_test():
    """Release lingering SQLite connections between tests."""
    yield
    gc.collect()


@pytest.fixture
def sample_documents():
    """Raw (options, packages) documents of the sample feed."""
    return dump(SAMPLE_OPTIONS), dump(SAMPLE_PACKAGES)


@pytest.fixture
def sample_records(sample_documents):
    return load_feed(*sample_documents).records


@pytest.fixture
def sample_index(sample_records):
    return ChannelIndex.build(sample_records, channel="unstable", sequence=1)


@pytest.fixture
def feed_dir(tmp_path):
    """A directory holding the sample feed."""
    return write_feed(tmp_path / "unstable")


@pytest.fixture
def state_store():
    """In-memory bookkeeping store."""
    store = SqliteStateStore()
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def registry(state_store):
    registry = ChannelRegistry(state_store)
    yield registry
    registry.close()


OPTIONS_URL = "https://feeds.example.org/unstable/options.json"
PACKAGES_URL = "https://feeds.example.org/unstable/packages.json"


class FakeUpstream:
    """Serves two documents with ETags and honours If-None-Match."""

    def __init__(self, options: bytes, packages: bytes):
        self.documents = {OPTIONS_URL: options, PACKAGES_URL: packages}
        self.etags = {OPTIONS_URL: '"o1"', PACKAGES_URL: '"p1"'}
        self.status = None
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(request)
        if self.status is not None:
            return httpx.Response(self.status)
        if request.headers.get("if-none-match") == self.etags[url]:
            return httpx.Response(304)
        return httpx.Response(200, content=self.documents[url], headers={"ETag": self.etags[url]})


@pytest.fixture
def upstream(sample_documents):
    return FakeUpstream(*sample_documents)


@pytest.fixture
def http_source(upstream, tmp_path):
    """HTTP feed source talking to ``upstream``, caching under ``tmp_path``."""
    return HttpFeedSource(
        OPTIONS_URL,
        PACKAGES_URL,
        cache_dir=tmp_path / "cache",
        transport=httpx.MockTransport(upstream),
        attempts=2,
        retry_delay=0,
    )
