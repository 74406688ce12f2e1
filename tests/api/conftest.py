"""Fixtures for HTTP surface tests."""

from __future__ import annotations

import httpx
import pytest

from calwatch.api.app import create_app
from calwatch.api.routers.oauth import _clear_state_store


@pytest.fixture(autouse=True)
def clear_states():
    """Ensure the OAuth state store is empty before and after each test."""
    _clear_state_store()
    yield
    _clear_state_store()


@pytest.fixture
def app(engine):
    return create_app(engine, run_scheduler=False)


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
