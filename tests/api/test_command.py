"""Tests for the slash command endpoint."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from calwatch.api.deps import USER_ID_HEADER
from calwatch.api.routers.command import HELP_TEXT
from calwatch.errors import StoreError

pytestmark = pytest.mark.unit

HEADERS = {USER_ID_HEADER: "u1"}


def _command(text: str, user_id: str = "u1") -> dict:
    return {"command": text, "user_id": user_id, "channel_id": "town-square", "team_id": "t1"}


class TestCommand:
    async def test_connect_returns_link(self, client, config):
        resp = await client.post(
            "/command", json=_command("/google-calendar connect"), headers=HEADERS
        )

        assert resp.status_code == 200
        body = resp.json()
        assert config.connect_url in body["text"]
        assert body["response_type"] == "ephemeral"
        assert body["username"] == "calendar-bot"

    async def test_disconnect(self, client, engine, records, make_credential):
        await engine.connect("u1", make_credential("u1"))

        resp = await client.post(
            "/command", json=_command("/google-calendar disconnect"), headers=HEADERS
        )

        assert resp.status_code == 200
        assert "Disconnected" in resp.json()["text"]
        assert await records.connected_users() == []

    async def test_unknown_action_shows_help(self, client):
        resp = await client.post(
            "/command", json=_command("/google-calendar frobnicate"), headers=HEADERS
        )

        assert resp.json()["text"] == HELP_TEXT

    async def test_other_trigger(self, client):
        resp = await client.post("/command", json=_command("/weather"), headers=HEADERS)

        assert resp.json()["text"].startswith("Unknown command.")

    async def test_store_failure_maps_to_502(self, client, engine):
        engine.disconnect = AsyncMock(side_effect=StoreError("Failed to write key"))

        resp = await client.post(
            "/command", json=_command("/google-calendar disconnect"), headers=HEADERS
        )

        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "UPSTREAM_ERROR"

    async def test_unexpected_failure_maps_to_500(self, client, engine):
        engine.disconnect = AsyncMock(side_effect=RuntimeError("boom"))

        resp = await client.post(
            "/command", json=_command("/google-calendar disconnect"), headers=HEADERS
        )

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "INTERNAL_ERROR"


class TestCommandCaller:
    async def test_missing_user_header_is_rejected(self, client):
        resp = await client.post("/command", json=_command("/google-calendar connect"))

        assert resp.status_code == 401

    async def test_cannot_disconnect_another_user(
        self, client, engine, records, make_credential
    ):
        await engine.connect("victim", make_credential("victim"))

        resp = await client.post(
            "/command",
            json=_command("/google-calendar disconnect", user_id="victim"),
            headers={USER_ID_HEADER: "attacker"},
        )

        assert resp.status_code == 403
        assert await records.connected_users() == ["victim"]
