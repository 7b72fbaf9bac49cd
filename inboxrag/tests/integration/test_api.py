from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from inboxrag.apps.api.main import create_app
from inboxrag.core.config import get_settings
from inboxrag.tests.utils.seed import TENANT_A, TENANT_B, UNKNOWN_PHONE, dialog360_payload


FAQ = b"Opening hours\n\nWe are open from 9am to 6pm, Monday to Saturday."


def _client() -> AsyncClient:
    transport = ASGITransport(app=create_app())
    return AsyncClient(transport=transport, base_url="http://test")


def _inline(monkeypatch) -> None:
    monkeypatch.setenv("EXECUTION_MODE", "inline")
    get_settings.cache_clear()


async def _upload(client: AsyncClient, tenant_id: str, content: bytes, content_type: str = "text/plain"):
    return await client.post(
        "/v1/documents",
        data={"tenant_id": tenant_id},
        files={"file": ("faq.txt", content, content_type)},
    )


@pytest.mark.asyncio
async def test_webhook_enqueues_and_acknowledges(container, queue) -> None:
    async with _client() as client:
        response = await client.post("/webhooks/whatsapp/360dialog", json=dialog360_payload())

    assert response.status_code == 200
    assert response.json() == {"status": "accepted", "accepted": 1}
    assert (await queue.depth()).pending == 1


@pytest.mark.asyncio
async def test_redelivered_webhook_is_acknowledged_once(container, queue) -> None:
    async with _client() as client:
        await client.post("/webhooks/whatsapp/360dialog", json=dialog360_payload())
        response = await client.post("/webhooks/whatsapp/360dialog", json=dialog360_payload())

    assert response.status_code == 200
    assert response.json() == {"status": "accepted", "accepted": 0}
    assert (await queue.depth()).pending == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("path", "body"),
    [
        ("/webhooks/whatsapp/360dialog", b"not json"),
        ("/webhooks/whatsapp/360dialog", b'{"messages": [{"id": "x"}]}'),
        ("/webhooks/whatsapp/unknown", b'{"messages": []}'),
        ("/webhooks/whatsapp/cloud_api", b'{"object": "whatsapp_business_account", "entry": []}'),
    ],
)
async def test_unusable_webhooks_still_answer_200(container, queue, path: str, body: bytes) -> None:
    async with _client() as client:
        response = await client.post(path, content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 200
    assert response.json() == {"status": "ignored", "accepted": 0}
    assert (await queue.depth()).pending == 0


@pytest.mark.asyncio
async def test_broken_message_does_not_drop_its_batch(container, queue) -> None:
    payload = dialog360_payload("wamid.good")
    payload["messages"].append({**payload["messages"][0], "id": None})

    async with _client() as client:
        response = await client.post("/webhooks/whatsapp/360dialog", json=payload)

    assert response.json() == {"status": "accepted", "accepted": 1}
    assert (await queue.depth()).pending == 1


@pytest.mark.asyncio
async def test_inline_mode_processes_during_request(container, memory_state, monkeypatch) -> None:
    _inline(monkeypatch)

    async with _client() as client:
        response = await client.post("/webhooks/whatsapp/360dialog", json=dialog360_payload())

    assert response.json()["accepted"] == 1
    assert "wamid.1" in memory_state.outbound


@pytest.mark.asyncio
async def test_upload_is_accepted_and_deduplicated(container) -> None:
    async with _client() as client:
        first = await _upload(client, TENANT_A, FAQ)
        second = await _upload(client, TENANT_A, FAQ)

    assert first.status_code == 202
    body = first.json()
    assert body["meta"]["api_version"] == "v1"
    assert body["data"]["status"] == "uploaded"
    assert body["data"]["deduplicated"] is False
    document_id = body["data"]["document_id"]
    assert body["data"]["status_url"] == f"/v1/documents/{document_id}?tenant_id={TENANT_A}"
    assert second.json()["data"]["document_id"] == document_id
    assert second.json()["data"]["deduplicated"] is True


@pytest.mark.asyncio
async def test_inline_upload_returns_indexed_document(container, monkeypatch) -> None:
    _inline(monkeypatch)

    async with _client() as client:
        response = await _upload(client, TENANT_A, FAQ)
        document_id = response.json()["data"]["document_id"]
        status = await client.get(f"/v1/documents/{document_id}", params={"tenant_id": TENANT_A})

    assert response.json()["data"]["status"] == "indexed"
    assert status.json()["data"]["chunk_count"] >= 1
    assert status.json()["data"]["indexed_at"] is not None


@pytest.mark.asyncio
async def test_document_of_other_tenant_is_not_found(container) -> None:
    async with _client() as client:
        uploaded = await _upload(client, TENANT_A, FAQ)
        document_id = uploaded.json()["data"]["document_id"]
        response = await client.get(f"/v1/documents/{document_id}", params={"tenant_id": TENANT_B})
        deleted = await client.delete(f"/v1/documents/{document_id}", params={"tenant_id": TENANT_B})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"
    assert deleted.status_code == 404


@pytest.mark.asyncio
async def test_delete_document(container, memory_state) -> None:
    async with _client() as client:
        uploaded = await _upload(client, TENANT_A, FAQ)
        document_id = uploaded.json()["data"]["document_id"]
        response = await client.delete(f"/v1/documents/{document_id}", params={"tenant_id": TENANT_A})

    assert response.status_code == 200
    assert response.json()["data"]["id"] == document_id
    assert memory_state.tenants[TENANT_A].documents_count == 0


@pytest.mark.asyncio
async def test_oversized_upload_is_quota_error(container) -> None:
    async with _client() as client:
        response = await _upload(client, TENANT_A, b"a" * (5 * 1024 * 1024 + 1))

    assert response.status_code == 402
    error = response.json()["error"]
    assert error["code"] == "QUOTA_EXCEEDED"
    assert error["details"]["kind"] == "doc_size"
    assert error["details"]["limit"] == 5


@pytest.mark.asyncio
async def test_unsupported_upload_is_validation_error(container) -> None:
    async with _client() as client:
        response = await _upload(client, TENANT_A, b"\x89PNG", content_type="image/png")

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_upload_for_unknown_tenant_is_not_found(container) -> None:
    async with _client() as client:
        response = await _upload(client, "ghost", FAQ)

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_missing_form_field_is_request_validation_error(container) -> None:
    async with _client() as client:
        response = await client.post("/v1/documents", files={"file": ("faq.txt", FAQ, "text/plain")})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_usage_reports_counters_and_drops(container, memory_state, monkeypatch) -> None:
    _inline(monkeypatch)
    memory_state.counters[(TENANT_A, container.ledger.today())] = {"messages": 500}

    async with _client() as client:
        await client.post("/webhooks/whatsapp/360dialog", json=dialog360_payload())
        response = await client.get(f"/v1/tenants/{TENANT_A}/usage")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["tenant_id"] == TENANT_A
    assert data["plan_code"] == "starter"
    assert data["counters"]["messages"] == 500
    assert data["limits"]["maxDailyMessages"] == 500
    assert [drop["reason"] for drop in data["drops"]] == ["quota_exceeded:messages"]
    assert data["drops"][0]["provider_message_id"] == "wamid.1"


@pytest.mark.asyncio
async def test_unknown_channel_is_not_reported_to_any_tenant(container, memory_state, monkeypatch) -> None:
    _inline(monkeypatch)

    async with _client() as client:
        await client.post("/webhooks/whatsapp/360dialog", json=dialog360_payload(channel_phone=UNKNOWN_PHONE))
        response = await client.get(f"/v1/tenants/{TENANT_A}/usage")

    assert response.json()["data"]["drops"] == []
    assert memory_state.counters == {}


@pytest.mark.asyncio
async def test_usage_for_unknown_tenant_is_not_found(container) -> None:
    async with _client() as client:
        response = await client.get("/v1/tenants/ghost/usage")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_health_reports_backends(container) -> None:
    async with _client() as client:
        response = await client.get("/health", headers={"X-Request-Id": "req-123"})

    assert response.status_code == 200
    assert response.headers["X-Request-Id"] == "req-123"
    body = response.json()
    assert body["status"] == "ok"
    assert body["queue_backend"] == "memory"
    assert body["execution_mode"] == "queue"
    assert body["worker_alive"] is None


@pytest.mark.asyncio
async def test_dead_letters_can_be_listed_and_requeued(container, queue) -> None:
    await queue.enqueue("message:wamid.9", "message", {"event": {}})
    for _ in range(3):
        job = await queue.dequeue(lease_s=30)
        await queue.retry(job, "boom")

    async with _client() as client:
        listed = await client.get("/ops/dead-letters")
        requeued = await client.post("/ops/dead-letters/message:wamid.9/requeue")
        missing = await client.post("/ops/dead-letters/message:nope/requeue")
        stats = await client.get("/ops/queue")

    assert [item["key"] for item in listed.json()["items"]] == ["message:wamid.9"]
    assert listed.json()["items"][0]["last_error"] == "boom"
    assert requeued.json() == {"key": "message:wamid.9", "status": "requeued"}
    assert missing.status_code == 404
    assert missing.json() == {"detail": "dead letter not found"}
    assert stats.json()["pending"] == 1
    assert stats.json()["dead"] == 0


@pytest.mark.asyncio
async def test_tenant_route_errors_carry_request_id(container) -> None:
    async with _client() as client:
        response = await client.get(
            "/v1/documents/missing",
            params={"tenant_id": TENANT_A},
            headers={"X-Request-Id": "req-404"},
        )

    assert response.status_code == 404
    body = response.json()
    assert body["error"]["code"] == "NOT_FOUND"
    assert body["meta"] == {"request_id": "req-404", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-404"
