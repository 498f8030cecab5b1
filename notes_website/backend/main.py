import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles

from . import api, auth
from .config import AppConfig, configure_logging
from .domain import AppError, PayloadTooLarge
from .passhroom import PasshroomClient
from .services import Notebook
from .utils import time_now

logger = logging.getLogger(__name__)


def create_app(config: Optional[AppConfig] = None,
               passhroom_transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """Build the notes website: JSON API, Passhroom sign-in and the static frontend."""
    config = config or AppConfig()
    configure_logging(config.log_level)

    notebook = Notebook(config.database_path, config.session_ttl_seconds)
    passhroom = PasshroomClient(
        config.passhroom_base_url,
        config.passhroom_client_id,
        config.passhroom_client_secret,
        timeout=config.upstream_timeout,
        transport=passhroom_transport,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Notes API starting up (database %s)", config.database_path)
        if not config.passhroom_base_url:
            logger.warning("PASSHROOM_BASE_URL is not set; sign-in will fail")
        yield
        await passhroom.aclose()
        logger.info("Notes API shutting down")

    app = FastAPI(
        title="Notes API",
        description="Markdown notes and project todos with Passhroom sign-in",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.notebook = notebook
    app.state.passhroom = passhroom

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def guard_requests(request: Request, call_next):
        # Declared lengths are refused up front; read_json holds streamed bodies to the same limit.
        length = request.headers.get("content-length", "")
        if length.isdigit() and int(length) > config.max_body_bytes:
            error = PayloadTooLarge()
            response = JSONResponse(error.payload(), status_code=error.status)
        else:
            response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        return JSONResponse(exc.payload(), status_code=exc.status)

    @app.get("/healthz")
    @app.get("/health")
    async def health_check():
        """Liveness only; never touches the database."""
        return {"status": "healthy", "timestamp": time_now()}

    app.include_router(auth.router)
    app.include_router(api.router)

    index_path = os.path.join(config.website_dir, "index.html")

    @app.get("/")
    async def read_root(request: Request):
        """Serve the frontend, or finish a sign-in when Passhroom redirected to the site root."""
        if request.query_params.get("code") and request.query_params.get("state"):
            return await auth.passhroom_callback(request)
        if os.path.exists(index_path):
            return FileResponse(index_path)
        return {"message": "Notes API is running", "version": "1.0.0"}

    if os.path.isdir(config.website_dir):
        app.mount("/static", StaticFiles(directory=config.website_dir), name="static")

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
