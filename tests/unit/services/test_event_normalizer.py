import pytest

from stocksync.core.enums import EventKind
from stocksync.core.exceptions import ERPAPIError
from stocksync.schemas.stock import Order, OrderItem
from stocksync.services.event_normalizer import EventNormalizer, build_event_id


@pytest.fixture
def normalizer(mock_platform, config_service, credentials):
    return EventNormalizer(mock_platform, config_service, credentials)


def sale_payload(items=None, company_id="cmp-a"):
    data = {"id": 42}
    if items is not None:
        data["itens"] = items
    return {"event": "order.created", "companyId": company_id, "data": data}


@pytest.mark.asyncio
async def test_sale_line_items_become_one_event_each(normalizer, tenant):
    payload = sale_payload([
        {"produto": {"id": 101, "codigo": "SKU-1"}, "quantidade": 2},
        {"produto": {"id": 102, "codigo": "SKU-2"}, "quantidade": 1},
    ])

    events = await normalizer.normalize(payload)

    assert [e.product_ref for e in events] == ["SKU-1", "SKU-2"]
    first = events[0]
    assert first.tenant_id == tenant
    assert first.account_ref == "accA"  # resolved through the company id
    assert first.kind == EventKind.SALE
    assert first.quantity == 2
    assert first.event_id == build_event_id("42", "SKU-1") == "42-product-SKU-1"


@pytest.mark.asyncio
async def test_sale_without_items_fetches_order_from_erp(normalizer, mock_platform, tenant):
    mock_platform.orders[("accA", "42")] = Order(id="42", items=[OrderItem(product_ref="SKU-1", quantity=3)])

    events = await normalizer.normalize(sale_payload())

    assert len(events) == 1
    assert events[0].product_ref == "SKU-1"
    assert events[0].quantity == 3
    assert events[0].account_ref == "accA"


@pytest.mark.asyncio
async def test_order_lookup_tries_every_account_when_origin_unknown(normalizer, mock_platform, tenant):
    mock_platform.errors["accA"] = ERPAPIError("boom", status_code=500)
    mock_platform.orders[("accB", "42")] = Order(id="42", items=[OrderItem(product_ref="SKU-1")])

    payload = {"event": "order.created", "data": {"id": 42}}
    events = await normalizer.normalize(payload, tenant_hint=tenant)

    assert len(events) == 1
    assert events[0].account_ref == "accB"


@pytest.mark.asyncio
async def test_order_without_resolvable_items_yields_nothing(normalizer, tenant):
    assert await normalizer.normalize(sale_payload()) == []


@pytest.mark.asyncio
async def test_stock_webhook_becomes_stock_adjustment(normalizer, tenant):
    payload = {
        "event": "stock.updated",
        "eventId": "ev-9",
        "companyId": "cmp-c",
        "data": {"produto": {"codigo": "SKU-1"}, "deposito": {"id": "S1"}, "quantidade": 12},
    }

    events = await normalizer.normalize(payload)

    assert len(events) == 1
    event = events[0]
    assert event.kind == EventKind.STOCK_ADJUSTMENT
    assert event.deposit_id == "S1"
    assert event.account_ref == "accC"
    assert event.event_id == "ev-9-product-SKU-1"


@pytest.mark.asyncio
async def test_redelivered_stock_webhook_keeps_its_event_id(normalizer, tenant):
    payload = {
        "tipo": "estoque",
        "eventoId": "ev-10",
        "companyId": "cmp-c",
        "produtoId": "SKU-1",
        "depositoId": "S1",
    }

    first = await normalizer.normalize(payload)
    again = await normalizer.normalize(dict(payload))

    assert first[0].event_id == "ev-10-product-SKU-1"
    assert again[0].event_id == first[0].event_id


@pytest.mark.asyncio
async def test_cancelled_and_unrecognized_payloads_yield_nothing(normalizer, tenant):
    assert await normalizer.normalize({"event": "order.deleted", "companyId": "cmp-a", "data": {"id": 1}}) == []
    assert await normalizer.normalize({"event": "invoice.created", "data": {}}) == []


@pytest.mark.asyncio
async def test_unknown_company_without_tenant_hint_is_dropped(normalizer, tenant):
    payload = sale_payload([{"produto": {"codigo": "SKU-1"}}], company_id="cmp-unknown")

    assert await normalizer.normalize(payload) == []


@pytest.mark.asyncio
async def test_tenant_hint_is_used_when_company_unknown(normalizer, tenant):
    payload = sale_payload([{"produto": {"codigo": "SKU-1"}}], company_id="cmp-unknown")

    events = await normalizer.normalize(payload, tenant_hint=tenant, account_hint="accB")

    assert events[0].tenant_id == tenant
    assert events[0].account_ref == "accB"
