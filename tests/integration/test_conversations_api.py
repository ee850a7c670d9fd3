"""Integration tests for the conversation endpoints."""

from __future__ import annotations

import json
import uuid

import pytest
from httpx import AsyncClient

from tests.factories import FakeAdapter


def _events(body: str) -> list[dict | str]:
    events: list[dict | str] = []
    for line in body.splitlines():
        if not line.startswith("data: "):
            continue
        payload = line[6:]
        events.append(payload if payload == "[DONE]" else json.loads(payload))
    return events


async def _create(client: AsyncClient, **body) -> dict:
    response = await client.post("/v1/conversations", json=body)
    assert response.status_code == 201
    return response.json()


@pytest.mark.integration
class TestConversationCrud:
    async def test_create_and_get(self, client: AsyncClient) -> None:
        created = await _create(client, title="Redis questions")

        response = await client.get(f"/v1/conversations/{created['id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["title"] == "Redis questions"
        assert data["message_count"] == 0
        assert data["is_context_full"] is False
        assert data["resource_id"] is None

    async def test_unknown_conversation_is_404(self, client: AsyncClient) -> None:
        response = await client.get(f"/v1/conversations/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["error"]["type"] == "not_found"


@pytest.mark.integration
class TestSendMessage:
    async def test_streams_chunks_then_completion(
        self, client: AsyncClient, fake_adapter: FakeAdapter
    ) -> None:
        created = await _create(client)

        response = await client.post(
            f"/v1/conversations/{created['id']}/messages", json={"content": "Hi"}
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _events(response.text)
        assert events[0] == {"type": "chunk", "content": "Hello"}
        assert events[1] == {"type": "chunk", "content": " there!"}
        assert events[2]["type"] == "message_complete"
        assert events[2]["message"]["content"] == "Hello there!"
        assert events[-1] == "[DONE]"

    async def test_turns_are_persisted_in_order(self, client: AsyncClient) -> None:
        created = await _create(client)
        await client.post(f"/v1/conversations/{created['id']}/messages", json={"content": "Hi"})

        response = await client.get(f"/v1/conversations/{created['id']}/messages")

        messages = response.json()
        assert [(m["role"], m["content"]) for m in messages] == [
            ("user", "Hi"),
            ("assistant", "Hello there!"),
        ]
        conversation = (await client.get(f"/v1/conversations/{created['id']}")).json()
        assert conversation["message_count"] == 2

    async def test_second_conversation_is_served_from_cache(
        self, client: AsyncClient, fake_adapter: FakeAdapter
    ) -> None:
        first = await _create(client)
        second = await _create(client)

        await client.post(f"/v1/conversations/{first['id']}/messages", json={"content": "Hi"})
        response = await client.post(
            f"/v1/conversations/{second['id']}/messages", json={"content": "Hi"}
        )

        events = _events(response.text)
        assert events[-2]["message"]["content"] == "Hello there!"
        assert len(fake_adapter.stream_calls) == 1

    async def test_blank_message_is_rejected(self, client: AsyncClient) -> None:
        created = await _create(client)
        response = await client.post(
            f"/v1/conversations/{created['id']}/messages", json={"content": "   "}
        )
        assert response.status_code == 400

    async def test_unknown_conversation_is_404(self, client: AsyncClient) -> None:
        response = await client.post(
            f"/v1/conversations/{uuid.uuid4()}/messages", json={"content": "Hi"}
        )
        assert response.status_code == 404


@pytest.mark.integration
class TestCancel:
    async def test_cancel_without_inflight_turn(self, client: AsyncClient) -> None:
        created = await _create(client)

        response = await client.post(f"/v1/conversations/{created['id']}/cancel")

        assert response.status_code == 200
        assert response.json() == {"cancelled": False}
