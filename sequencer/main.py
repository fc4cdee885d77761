"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sequencer.config import get_settings
from sequencer.api import enrollments, events, nurture, scoring, workflows

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if settings.create_tables_on_startup:
        from sequencer.database import create_all

        await create_all()

    yield


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Event-driven lead sequencing engine",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(events.router, prefix="/api/v1")
app.include_router(workflows.router, prefix="/api/v1")
app.include_router(enrollments.router, prefix="/api/v1")
app.include_router(scoring.router, prefix="/api/v1")
app.include_router(nurture.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.app_name}
