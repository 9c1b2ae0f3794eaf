import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from fcsearch.api.search import router as search_router, templates
from fcsearch.core.dependencies import create_services
from fcsearch.data.config import get_state_dir, load_service_config

# Configure logging
logging.basicConfig(
    level=os.environ.get("FCSEARCH_LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Refresh every channel once at startup and skip the periodic loop.
REFRESH_ONCE_ENV_VAR = "FCSEARCH_REFRESH_ONCE"


app = FastAPI(
    title="fc-search",
    version="0.1.0",
    description="Live search over the packages and options of several channels.",
)


@app.on_event("startup")
async def startup_event() -> None:
    """
    Load the configuration, open the bookkeeping store, register every
    channel and start building their indexes in the background.

    A corrupted bookkeeping store raises StateStoreError and aborts startup.
    """
    state_dir = get_state_dir()
    logger.info(f"Persistent state dir is {state_dir}")

    config = load_service_config(state_dir)
    services = create_services(config, state_dir)
    app.state.services = services

    periodic = os.environ.get(REFRESH_ONCE_ENV_VAR, "").lower() not in ("1", "true", "yes")
    services.start(periodic=periodic)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.shutdown()
        app.state.services = None


@app.get("/", response_class=HTMLResponse)
async def index(request: Request) -> HTMLResponse:
    """
    Search page with the channel selector.
    """
    services = getattr(app.state, "services", None)
    channels = services.registry.list_channels() if services is not None else []
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "title": "fc-search",
            "channels": channels,
        },
    )


@app.get("/health")
async def health() -> dict:
    """
    Lightweight health check endpoint.
    """
    return {"status": "ok"}


app.include_router(search_router, tags=["search"])


if __name__ == "__main__":
    """
    Allow running `python fcsearch/main.py` to start the Uvicorn development server.
    """
    import uvicorn

    uvicorn.run(
        "fcsearch.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("FCSEARCH_PORT", "8000")),
    )
