from unittest.mock import AsyncMock, MagicMock

import pytest

from stocksync.core.exceptions import ERPAPIError
from stocksync.core.ttl_cache import TTLCache
from stocksync.services.erp.adapter import ERPStockAdapter
from stocksync.services.erp.reserved_stock import ReservedEntry, ReservedStockInference


@pytest.fixture
def client():
    client = MagicMock()
    client.get = AsyncMock()
    client.post = AsyncMock()
    return client


@pytest.fixture
def reserved():
    return ReservedStockInference(TTLCache(3600))


@pytest.fixture
def adapter(client, reserved):
    return ERPStockAdapter(client, reserved)


def balance_row(physical, virtual, reserved=0, deposit_id="P1"):
    return {"data": [{
        "produto": {"id": 101, "codigo": "SKU-1"},
        "saldoFisicoTotal": physical,
        "saldoVirtualTotal": virtual,
        "depositos": [{"id": deposit_id, "saldoFisico": physical, "saldoVirtual": virtual,
                       "saldoReservado": reserved}],
    }]}


@pytest.mark.asyncio
async def test_get_product_by_sku_reads_format_flag(adapter, client):
    client.get.return_value = {"data": [{"id": 101, "codigo": "SKU-1", "nome": "Kit", "formato": "E",
                                         "estoque": {"saldoVirtualTotal": 3}}]}

    product = await adapter.get_product("tenant-1", "accA", "SKU-1")

    client.get.assert_awaited_once_with("/produtos", "tenant-1", "accA", params={"codigo": "SKU-1"})
    assert product.id == "101"
    assert product.is_composite is True
    assert product.virtual_total == 3


@pytest.mark.asyncio
async def test_listing_row_without_format_is_completed_from_detail(adapter, client):
    client.get.side_effect = [
        {"data": [{"id": 101, "codigo": "SKU-1"}]},
        {"data": {"id": 101, "codigo": "SKU-1", "formato": "S"}},
    ]

    product = await adapter.get_product("tenant-1", "accA", "SKU-1")

    assert client.get.await_args_list[1].args[0] == "/produtos/101"
    assert product.format == "S"
    assert product.is_composite is False


@pytest.mark.asyncio
async def test_numeric_reference_falls_back_to_sku_search(adapter, client):
    client.get.side_effect = [
        ERPAPIError("not found", status_code=404),
        {"data": [{"id": 555, "codigo": "12345", "formato": "S"}]},
    ]

    product = await adapter.get_product("tenant-1", "accA", "12345")

    assert product.id == "555"
    assert product.sku == "12345"


@pytest.mark.asyncio
async def test_unknown_sku_returns_none(adapter, client):
    client.get.return_value = {"data": []}

    assert await adapter.get_product("tenant-1", "accA", "NOPE") is None


@pytest.mark.asyncio
async def test_deposit_balance_uses_reported_reservation(adapter, client):
    client.get.return_value = balance_row(physical=10, virtual=6, reserved=4)

    balance = await adapter.get_deposit_balance("tenant-1", "accA", "101", "P1")

    assert (balance.physical, balance.virtual, balance.reserved_effective) == (10, 6, 4)
    assert balance.available == 6
    assert balance.reserved_method == "reported"


@pytest.mark.asyncio
async def test_deposit_balance_keeps_cached_reservation_when_upstream_reports_none(adapter, client, reserved):
    key = reserved.key("tenant-1", "accA", "101", "P1")
    reserved.cache.set(key, ReservedEntry(reserved=4, physical=10, virtual=10, method="reported"))
    client.get.return_value = balance_row(physical=10, virtual=10, reserved=0)

    balance = await adapter.get_deposit_balance("tenant-1", "accA", "101", "P1")

    assert balance.reserved_effective == 4
    assert balance.reserved_method == "cached"
    assert balance.available == 6


@pytest.mark.asyncio
async def test_write_stock_movement_sends_balance_operation(adapter, client):
    client.post.return_value = {"data": {"id": 987}}

    ack = await adapter.write_stock_movement("tenant-1", "accC", "S1", "301", 12)

    endpoint, tenant_id, account_ref = client.post.await_args.args
    body = client.post.await_args.kwargs["data"]
    assert (endpoint, tenant_id, account_ref) == ("/estoques", "tenant-1", "accC")
    assert body["produto"] == {"id": 301}
    assert body["deposito"] == {"id": "S1"}
    assert body["operacao"] == "B"
    assert body["quantidade"] == 12
    assert ack.movement_id == "987"


@pytest.mark.asyncio
async def test_negative_quantity_is_written_as_zero(adapter, client):
    client.post.return_value = {}

    ack = await adapter.write_stock_movement("tenant-1", "accC", "S1", "301", -3)

    assert client.post.await_args.kwargs["data"]["quantidade"] == 0
    assert ack.quantity == 0


@pytest.mark.asyncio
async def test_order_detail_extracts_items(adapter, client):
    client.get.return_value = {"data": {
        "id": 42, "numero": "1001", "situacao": {"id": 6}, "deposito": {"id": "P1"},
        "itens": [{"produto": {"id": 101, "codigo": "SKU-1"}, "quantidade": 2}],
    }}

    order = await adapter.get_order_detail("tenant-1", "accA", "42")

    assert order.number == "1001"
    assert order.deposit_id == "P1"
    assert [(i.product_ref, i.quantity, i.deposit_id) for i in order.items] == [("SKU-1", 2, "P1")]


@pytest.mark.asyncio
async def test_missing_order_returns_none(adapter, client):
    client.get.side_effect = ERPAPIError("not found", status_code=404)

    assert await adapter.get_order_detail("tenant-1", "accA", "42") is None
