from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import logging
import tempfile

from fastapi import Depends, HTTPException, Request, status

from fcsearch.data.config import feed_cache_dir, state_db_path
from fcsearch.data.models import ServiceConfig
from fcsearch.data.refresh_scheduler import RefreshScheduler
from fcsearch.data.registry import ChannelRegistry
from fcsearch.services.feed_source import build_feed_source
from fcsearch.services.query_engine import QueryEngine
from fcsearch.storage.sqlite_state_store import SqliteStateStore
from fcsearch.storage.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class SearchServices:
    """
    Process-scoped components of the search service.

    Created once at startup and handed to request handlers through
    ``app.state``; nothing here is a module-level singleton.
    """

    config: ServiceConfig
    store: StateStore
    registry: ChannelRegistry
    scheduler: RefreshScheduler
    engine: QueryEngine

    def start(self, periodic: bool = True) -> None:
        self.scheduler.start(periodic=periodic)

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        self.registry.close()
        self.store.close()


def create_services(config: ServiceConfig, state_dir: Optional[Path] = None) -> SearchServices:
    """
    Wire store, registry, scheduler and query engine together.

    Without a state directory, bookkeeping lives in memory and HTTP feeds are
    not cached. Raises StateStoreError if the bookkeeping store is corrupted.
    """
    store = SqliteStateStore(state_db_path(state_dir) if state_dir is not None else None)
    store.initialize()

    registry = ChannelRegistry(store)
    scheduler = RefreshScheduler(
        registry,
        interval_seconds=config.refresh_interval_seconds,
        timeout_seconds=config.refresh_timeout_seconds,
    )
    if state_dir is not None:
        cache_root = feed_cache_dir(state_dir)
    else:
        cache_root = Path(tempfile.gettempdir()) / "fc-search" / "feeds"
    for channel in config.channels:
        scheduler.add_channel(channel.name, build_feed_source(channel, cache_root))

    engine = QueryEngine(registry, page_size=config.page_size, default_limit=config.default_limit)
    logger.info(f"Configured {len(config.channels)} channel(s)")
    return SearchServices(
        config=config,
        store=store,
        registry=registry,
        scheduler=scheduler,
        engine=engine,
    )


def get_services(request: Request) -> SearchServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Search service is not initialized",
        )
    return services


def get_query_engine(services: SearchServices = Depends(get_services)) -> QueryEngine:
    return services.engine


def get_registry(services: SearchServices = Depends(get_services)) -> ChannelRegistry:
    return services.registry


def get_scheduler(services: SearchServices = Depends(get_services)) -> RefreshScheduler:
    return services.scheduler
