from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .routers import behavior
from .services.behavior import get_engine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("nestegg.backend")


def create_app() -> FastAPI:
    app = FastAPI(title=settings.title, version=settings.version)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(behavior.router)

    @app.on_event("startup")
    def _on_startup() -> None:
        logger.info("Bootstrapping NestEgg backend (db=%s)", settings.db_file)
        get_engine()

    return app


app = create_app()
