"""Shared pytest fixtures for cherrikka tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from cherrikka.main import app
from cherrikka.router import get_conversion_service, get_upload_limit
from cherrikka.service import ConversionService


@pytest.fixture
def events():
    """Progress events recorded by the service fixture."""
    return []


@pytest.fixture
def service(events):
    """ConversionService that records its progress events."""
    return ConversionService(progress=events.append)


@pytest.fixture
async def client(service):
    """Async test client with the conversion service wired into the app."""
    app.dependency_overrides[get_conversion_service] = lambda: service
    app.dependency_overrides[get_upload_limit] = lambda: 1024 * 1024
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()
