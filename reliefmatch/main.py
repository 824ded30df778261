# reliefmatch/main.py
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reliefmatch.core.config import Settings, get_settings
from reliefmatch.deps import get_repo
from reliefmatch.routers import matching as matching_router
from reliefmatch.services.geocode import build_geocoder
from reliefmatch.services.geocode_worker import GeocodeWorker
from reliefmatch.services.matching import build_matching_service
from reliefmatch.services.routing import build_distance_service

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, repo=None,
               http_transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = repo if repo is not None else get_repo(settings)
        if settings.use_mongo and repo is None:
            from reliefmatch.core.db import get_client, get_db
            from reliefmatch.repos.mongo import ensure_indexes
            await ensure_indexes(get_db())

        client = httpx.AsyncClient(timeout=settings.http_timeout_s, transport=http_transport)
        geocoder = build_geocoder(store, client, settings)
        distance = build_distance_service(client, settings, repo=store)
        worker = GeocodeWorker(
            store, geocoder,
            batch_size=settings.worker_batch_size,
            delay=settings.worker_batch_delay_s,
            retry_after=timedelta(hours=settings.worker_retry_after_hours),
        )

        app.state.repo = store
        app.state.geocoder = geocoder
        app.state.distance = distance
        app.state.matching = build_matching_service(store, geocoder, distance, settings)
        app.state.worker = worker

        if settings.worker_enabled:
            worker.start()
        try:
            yield
        finally:
            worker.stop()
            await worker.join()
            await client.aclose()
            if settings.use_mongo and repo is None:
                get_client().close()

    app = FastAPI(lifespan=lifespan, title="ReliefMatch API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(matching_router.router)      # /api/matching

    @app.get("/health")
    def health():
        return {"ok": True}

    return app


app = create_app()
