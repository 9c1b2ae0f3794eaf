from __future__ import annotations

from pathlib import Path
from typing import Optional, Union
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from fastapi.templating import Jinja2Templates

from fcsearch.core.dependencies import get_query_engine, get_registry, get_scheduler
from fcsearch.data.refresh_scheduler import RefreshScheduler
from fcsearch.data.registry import ChannelRegistry
from fcsearch.domain.errors import ChannelNotReady, InvalidQuery, QueryError, UnknownChannel
from fcsearch.domain.models import RecordKind, SearchPage
from fcsearch.domain.text_utils import render_markdown, strip_nulls
from fcsearch.services.query_engine import QueryEngine

logger = logging.getLogger(__name__)
router = APIRouter()

TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
templates.env.filters["markdown"] = render_markdown

_ERROR_STATUS = {
    UnknownChannel: status.HTTP_404_NOT_FOUND,
    ChannelNotReady: status.HTTP_503_SERVICE_UNAVAILABLE,
    InvalidQuery: 422,
}


def _http_error(error: QueryError) -> HTTPException:
    return HTTPException(
        status_code=_ERROR_STATUS.get(type(error), status.HTTP_400_BAD_REQUEST),
        detail={"error": error.code, "message": str(error)},
    )


def _resolve_channel(engine: QueryEngine, channel: Optional[str]) -> str:
    """
    Pick the channel to search. Without an explicit choice the first ready
    channel is used, falling back to the first configured one.
    """
    if channel:
        return channel
    default = engine.default_channel()
    if default is not None:
        return default
    names = engine.registry.names()
    return names[0] if names else ""


def _respond(request: Request, page: SearchPage) -> Response:
    # HTML fragment for incremental (htmx-driven) result updates.
    if request.headers.get("HX-Request"):
        return templates.TemplateResponse(request, "results.html", {"page": page})
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=strip_nulls(page.model_dump(mode="json")),
    )


def _search(
    request: Request,
    engine: QueryEngine,
    q: str,
    channel: Optional[str],
    kind: Optional[Union[RecordKind, str]],
    page: int,
    limit: Optional[int],
) -> Response:
    name = _resolve_channel(engine, channel)
    try:
        result = engine.search(name, q, kind=kind, page=page, limit=limit)
    except QueryError as e:
        raise _http_error(e)
    return _respond(request, result)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

# Sync handlers: FastAPI runs them in its threadpool, off the event loop.

@router.get("/search")
def search(
    request: Request,
    q: str = "",
    channel: Optional[str] = None,
    kind: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    engine: QueryEngine = Depends(get_query_engine),
) -> Response:
    """
    Ranked search over packages and options of one channel.

    An empty ``kind`` (the "everything" choice of the search form) searches
    both record kinds.
    """
    return _search(request, engine, q, channel, kind or None, page, limit)


@router.get("/search/options")
def search_options(
    request: Request,
    q: str = "",
    channel: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    engine: QueryEngine = Depends(get_query_engine),
) -> Response:
    return _search(request, engine, q, channel, RecordKind.OPTION, page, limit)


@router.get("/search/packages")
def search_packages(
    request: Request,
    q: str = "",
    channel: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    engine: QueryEngine = Depends(get_query_engine),
) -> Response:
    return _search(request, engine, q, channel, RecordKind.PACKAGE, page, limit)


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

@router.get("/channels")
async def list_channels(registry: ChannelRegistry = Depends(get_registry)) -> dict:
    """
    Known channels with their readiness and last refresh outcome.
    """
    return {
        "channels": [strip_nulls(s.model_dump(mode="json")) for s in registry.list_channels()],
    }


@router.post("/channels/{channel}/refresh", status_code=status.HTTP_202_ACCEPTED)
async def refresh_channel(
    channel: str,
    registry: ChannelRegistry = Depends(get_registry),
    scheduler: RefreshScheduler = Depends(get_scheduler),
) -> dict:
    """
    Ask for an immediate refresh. A request arriving while the channel is
    already refreshing is queued once (``accepted`` is then false).
    """
    if not registry.is_known(channel):
        raise _http_error(UnknownChannel(channel))

    accepted = scheduler.trigger(channel)
    logger.info(f"[{channel}] refresh requested (accepted={accepted})")
    return {
        "channel": channel,
        "accepted": accepted,
        "state": scheduler.state(channel).value,
    }
