"""Cherrikka FastAPI application entry point."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cherrikka.router import get_conversion_service, get_upload_limit
from cherrikka.router import router as convert_router
from cherrikka.service import ConversionService

VERSION = "0.1.0"

# Read once at import so CORS is configured before the app starts.
load_dotenv(Path(__file__).resolve().parent.parent / ".env")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Wire the conversion service and upload limit."""
    service = ConversionService()
    app.dependency_overrides[get_conversion_service] = lambda: service

    max_mb = int(os.environ.get("CHERRIKKA_MAX_UPLOAD_MB", "200"))
    app.dependency_overrides[get_upload_limit] = lambda: max_mb * 1024 * 1024

    yield

    app.dependency_overrides.clear()


def _cors_origins() -> list[str]:
    raw = os.environ.get("CHERRIKKA_CORS_ORIGINS", "*")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app = FastAPI(
    title="Cherrikka",
    description="Convert chat backups between Cherry Studio and RikkaHub",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Cherrikka-Manifest"],
)

app.include_router(convert_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "version": VERSION}
