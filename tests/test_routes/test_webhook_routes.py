import hashlib
import hmac
import json

import httpx
import pytest

from stocksync.core.config import get_settings
from stocksync.core.enums import LedgerStatus
from stocksync.dependencies import get_pipeline
from stocksync.main import app

SALE_PAYLOAD = {
    "event": "order.created",
    "companyId": "cmp-a",
    "data": {"id": 42, "itens": [{"produto": {"id": 101, "codigo": "SKU-1"}, "quantidade": 1}]},
}


@pytest.fixture
async def client(pipeline):
    await pipeline.start()
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
    await pipeline.stop()


@pytest.mark.asyncio
async def test_sale_webhook_is_acknowledged_and_processed(client, pipeline, mock_platform, ledger, tenant):
    response = await client.post("/webhooks/erp", json=SALE_PAYLOAD)
    await pipeline.dispatcher.stop()

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert mock_platform.writes_to("S1")[0]["quantity"] == 12
    entry = (await ledger.history(tenant))[0]
    assert entry.event_id == "42-product-SKU-1"
    assert entry.origin == "Loja A"
    assert entry.status == LedgerStatus.SUCCEEDED.value


@pytest.mark.asyncio
async def test_redelivered_webhook_is_processed_once(client, pipeline, mock_platform, tenant):
    await client.post("/webhooks/erp", json=SALE_PAYLOAD)
    await pipeline.dispatcher.stop()
    await client.post("/webhooks/erp", json=SALE_PAYLOAD)
    await pipeline.dispatcher.stop()

    assert len(mock_platform.update_calls) == 1


@pytest.mark.asyncio
async def test_invalid_json_is_rejected(client):
    response = await client.post("/webhooks/erp", content=b"{not json",
                                 headers={"Content-Type": "application/json"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unrecognized_payload_is_still_acknowledged(client, mock_platform, tenant):
    response = await client.post("/webhooks/erp", json={"event": "invoice.created", "data": {}})

    assert response.status_code == 200
    assert mock_platform.update_calls == []


@pytest.mark.asyncio
async def test_signature_is_checked_when_secret_configured(client, settings):
    signed_settings = settings.model_copy(update={"WEBHOOK_SECRET": "s3cret"})
    app.dependency_overrides[get_settings] = lambda: signed_settings
    body = json.dumps({"event": "invoice.created"}).encode()
    signature = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

    unsigned = await client.post("/webhooks/erp", content=body)
    forged = await client.post("/webhooks/erp", content=body, headers={"X-Bling-Signature-256": "sha256=00"})
    signed = await client.post("/webhooks/erp", content=body,
                               headers={"X-Bling-Signature-256": f"sha256={signature}"})

    assert unsigned.status_code == 401
    assert forged.status_code == 401
    assert signed.status_code == 200


@pytest.mark.asyncio
async def test_test_endpoint_requires_identifiers(client):
    response = await client.post("/webhooks/erp/test", json={"tenantId": "tenant-1"})

    assert response.status_code == 400
    assert response.json()["detail"]["missing"] == ["productId", "eventId"]


@pytest.mark.asyncio
async def test_test_endpoint_enqueues_event(client, pipeline, mock_platform, tenant):
    response = await client.post("/webhooks/erp/test",
                                 json={"tenantId": tenant, "productId": "SKU-1", "eventId": "manual-check-1"})
    await pipeline.dispatcher.stop()

    assert response.status_code == 200
    assert response.json()["job_id"] == "event-SKU-1-manual-check-1"
    assert response.json()["method"] == "in_process"
    assert len(mock_platform.update_calls) == 1
