import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config
from retention import RetentionSweeper
from routers.conversion import router as conversion_router
from services import MediaEncoder, RemoteFetcher
from store import JobStore
from tasks import JobRunner

# --------------------------------------------------------------------------
# --- Configuration & Setup ---
# --------------------------------------------------------------------------

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO), format=config.LOG_FORMAT)


def create_app(
    storage_root: str = None,
    encoder=None,
    fetcher=None,
    enable_remote: bool = None,
    enable_sweeper: bool = None,
    max_concurrent_jobs: int = None,
) -> FastAPI:
    """
    Build the application. The job store, runner and retention sweeper are
    created at startup and shared through app.state.
    """
    storage_root = storage_root or config.STORAGE_ROOT
    jobs_dir = os.path.join(storage_root, "jobs")
    enable_remote = config.ENABLE_REMOTE if enable_remote is None else enable_remote
    enable_sweeper = config.is_production() if enable_sweeper is None else enable_sweeper

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        os.makedirs(storage_root, exist_ok=True)
        store = JobStore(jobs_dir)
        runner = JobRunner(
            store,
            encoder or MediaEncoder(),
            fetcher or RemoteFetcher(),
            storage_root=storage_root,
            max_concurrent_jobs=max_concurrent_jobs or config.MAX_CONCURRENT_JOBS,
        )
        sweeper = RetentionSweeper(store, storage_root=storage_root)

        app.state.storage_root = storage_root
        app.state.enable_remote = enable_remote
        app.state.store = store
        app.state.runner = runner
        app.state.sweeper = sweeper

        if enable_sweeper:
            sweeper.start()
        logging.info(f"Media conversion service started (storage: {storage_root}, environment: {config.ENVIRONMENT})")
        try:
            yield
        finally:
            await sweeper.stop()
            logging.info("Media conversion service stopped")

    app = FastAPI(
        title="Media Conversion Service",
        description="Converts uploaded or remote media to MP4/MP3 as background jobs.",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(conversion_router)
    return app


app = create_app()
