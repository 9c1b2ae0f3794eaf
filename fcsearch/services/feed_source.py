"""
Fetch a channel's feed documents (options.json, packages.json).

Feeds come either from a local directory or from two HTTP URLs. HTTP
downloads are cached in the state directory; when the upstream is
unreachable the cached copy is used instead.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import aiofiles
import httpx

from fcsearch.data.feed_loader import OPTIONS_DOCUMENT, PACKAGES_DOCUMENT
from fcsearch.data.models import ChannelConfig
from fcsearch.domain.errors import FeedFetchError
from fcsearch.domain.models import ChannelRevision, FeedRevision

logger = logging.getLogger(__name__)

DOWNLOAD_ATTEMPTS = 3
DOWNLOAD_TIMEOUT = 60.0


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class FeedDocuments:
    """
    Both raw documents of a channel.

    ``fallback_error`` is set when a download failed and the cached copy was
    used in its place.
    """

    options: bytes
    packages: bytes
    revision: ChannelRevision
    fallback_error: Optional[str] = None

    @property
    def from_cache(self) -> bool:
        return self.fallback_error is not None


class FeedSource(ABC):
    """Where the raw feed of one channel comes from."""

    @abstractmethod
    async def fetch(self, previous: Optional[ChannelRevision] = None) -> Optional[FeedDocuments]:
        """
        Fetch both documents.

        Returns None when the source can tell that nothing changed since
        ``previous``. Raises FeedFetchError when the documents are unavailable.
        """
        pass

    @abstractmethod
    def describe(self) -> str:
        pass


async def _read_file(path: Path) -> bytes:
    async with aiofiles.open(path, "rb") as f:
        return await f.read()


class DirectoryFeedSource(FeedSource):
    """Reads options.json and packages.json from a directory."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    def describe(self) -> str:
        return str(self.path)

    async def fetch(self, previous: Optional[ChannelRevision] = None) -> Optional[FeedDocuments]:
        documents: Dict[str, bytes] = {}
        for name in (OPTIONS_DOCUMENT, PACKAGES_DOCUMENT):
            file_path = self.path / name
            try:
                documents[name] = await _read_file(file_path)
            except OSError as e:
                raise FeedFetchError(f"cannot read {file_path}: {e}") from e

        options = documents[OPTIONS_DOCUMENT]
        packages = documents[PACKAGES_DOCUMENT]
        return FeedDocuments(
            options=options,
            packages=packages,
            revision=ChannelRevision(
                options=FeedRevision(digest=_digest(options)),
                packages=FeedRevision(digest=_digest(packages)),
            ),
        )


class HttpFeedSource(FeedSource):
    """
    Downloads both documents over HTTP(S).

    Conditional requests (ETag / Last-Modified) avoid re-downloading an
    unchanged feed. Every successful download replaces the cached copy in
    ``cache_dir`` via a temporary file, so a partial download never
    overwrites a good copy.
    """

    def __init__(
        self,
        options_url: str,
        packages_url: str,
        cache_dir: Path,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        attempts: int = DOWNLOAD_ATTEMPTS,
        retry_delay: float = 1.0,
        timeout: float = DOWNLOAD_TIMEOUT,
    ):
        self.options_url = options_url
        self.packages_url = packages_url
        self.cache_dir = Path(cache_dir)
        self.transport = transport
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self.timeout = timeout

    def describe(self) -> str:
        return f"{self.options_url}, {self.packages_url}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.timeout,
            transport=self.transport,
            headers={"Accept": "application/json", "User-Agent": "fc-search"},
        )

    async def fetch(self, previous: Optional[ChannelRevision] = None) -> Optional[FeedDocuments]:
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        async with self._client() as client:
            options, options_rev, options_error = await self._download(
                client, self.options_url, OPTIONS_DOCUMENT, previous.options if previous else None
            )
            packages, packages_rev, packages_error = await self._download(
                client, self.packages_url, PACKAGES_DOCUMENT, previous.packages if previous else None
            )

        if options is None and packages is None:
            return None

        # One side answered 304: its content is the cached copy.
        if options is None:
            options = await _read_file(self.cache_dir / OPTIONS_DOCUMENT)
        if packages is None:
            packages = await _read_file(self.cache_dir / PACKAGES_DOCUMENT)

        return FeedDocuments(
            options=options,
            packages=packages,
            revision=ChannelRevision(options=options_rev, packages=packages_rev),
            fallback_error="; ".join(e for e in (options_error, packages_error) if e) or None,
        )

    async def _download(
        self,
        client: httpx.AsyncClient,
        url: str,
        document: str,
        previous: Optional[FeedRevision],
    ) -> Tuple[Optional[bytes], FeedRevision, Optional[str]]:
        """
        Download one document.

        Returns ``(content, revision, fallback_error)``. ``content`` is None
        when the server answered 304 Not Modified; ``fallback_error`` is set
        when the download failed and the cached copy was returned instead.
        """
        cache_path = self.cache_dir / document
        tmp_path = self.cache_dir / f"{document}.tmp"

        headers: Dict[str, str] = {}
        if previous is not None and cache_path.exists():
            if previous.etag:
                headers["If-None-Match"] = previous.etag
            if previous.last_modified:
                headers["If-Modified-Since"] = previous.last_modified

        last_error: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            try:
                logger.debug(f"Downloading {url} (attempt {attempt}/{self.attempts})")
                response = await client.get(url, headers=headers)
                if response.status_code == 304 and previous is not None:
                    logger.debug(f"{url} not modified")
                    return None, previous, None
                response.raise_for_status()
                content = response.content

                async with aiofiles.open(tmp_path, "wb") as f:
                    await f.write(content)
                tmp_path.replace(cache_path)

                revision = FeedRevision(
                    digest=_digest(content),
                    etag=response.headers.get("etag"),
                    last_modified=response.headers.get("last-modified"),
                )
                logger.debug(f"Downloaded {len(content)} bytes from {url}")
                return content, revision, None
            except (httpx.HTTPError, OSError) as e:
                last_error = e
                tmp_path.unlink(missing_ok=True)
                if attempt < self.attempts:
                    logger.warning(
                        f"Download of {url} failed (attempt {attempt}/{self.attempts}): {e}. Retrying..."
                    )
                    await asyncio.sleep(self.retry_delay * attempt)

        if cache_path.exists():
            logger.warning(f"Download of {url} failed: {last_error}. Falling back to cached copy")
            content = await _read_file(cache_path)
            digest = _digest(content)
            # Keep the validators of an unchanged cached copy for the next conditional request.
            if previous is not None and previous.digest == digest:
                revision = previous
            else:
                revision = FeedRevision(digest=digest)
            return content, revision, f"{url}: {last_error}"

        raise FeedFetchError(f"failed to download {url}: {last_error}")


def build_feed_source(channel: ChannelConfig, cache_root: Path) -> FeedSource:
    """Create the feed source described by a channel's configuration."""
    if channel.path is not None:
        return DirectoryFeedSource(channel.path)
    return HttpFeedSource(
        options_url=channel.options_url,
        packages_url=channel.packages_url,
        cache_dir=cache_root / channel.name,
    )
