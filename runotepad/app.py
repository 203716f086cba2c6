import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .api.fastapi_router import router as api_router
from .api.websocket import router as ws_router
from .config import GatewayConfig
from .registry import SessionRegistry

logger = logging.getLogger(__name__)


def create_app(config: GatewayConfig, *, registry: Optional[SessionRegistry] = None) -> FastAPI:
    """Assemble the gateway: terminal websocket, API routes and static frontend."""
    if registry is None:
        registry = SessionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        live = [s for s in (registry.lookup(sid) for sid in registry.ids()) if s is not None]
        if live:
            logger.info("Shutting down %d live session(s)", len(live))
            await asyncio.gather(*(s.close("shutdown") for s in live), return_exceptions=True)

    app = FastAPI(title="Runotepad", lifespan=lifespan)
    app.state.config = config
    app.state.registry = registry
    app.include_router(ws_router)
    # The static catch-all lives in api_router and must be registered last.
    app.include_router(api_router)
    return app
