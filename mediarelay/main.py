"""Media Relay Service - Main FastAPI Application."""

from contextlib import asynccontextmanager
from pathlib import Path

import yt_dlp
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mediarelay.config import settings
from mediarelay.routes import media
from mediarelay.services import logger
from mediarelay.services.context import ServiceContext


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown."""
    logger.info(f"Media relay starting on port {settings.PORT}", "general")
    logger.info(f"yt-dlp version: {yt_dlp.version.__version__}", "general")

    Path(settings.TEMP_DIR).mkdir(parents=True, exist_ok=True)
    app.state.context = ServiceContext.build(settings)
    logger.success("Media relay started", "general", {"temp_dir": settings.TEMP_DIR})

    yield

    logger.info("Media relay shutting down", "general")
    await app.state.context.aclose()


app = FastAPI(
    title="Media Relay",
    description="Resolves YouTube, Spotify and TikTok links into cached, re-servable media handles",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)

# Internal service, minimal CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(media.router)


@app.get("/", include_in_schema=False)
async def root():
    return {"service": "mediarelay", "status": "running"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mediarelay.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.ENVIRONMENT == "development",
    )
