from stocksync.integrations.events import (
    SaleCancelled,
    SaleCreated,
    StockAdjusted,
    StockEvent,
    Unrecognized,
    decode_raw_event,
    extract_order_items,
)


def test_sale_with_items_decodes_to_sale_created():
    payload = {
        "event": "order.created",
        "companyId": "cmp-a",
        "data": {
            "id": 42,
            "deposito": {"id": 7},
            "itens": [
                {"produto": {"id": 101, "codigo": "SKU-1"}, "quantidade": 2},
                {"produto": {"id": 102}, "quantidade": 1.0},
            ],
        },
    }

    raw = decode_raw_event(payload)

    assert isinstance(raw, SaleCreated)
    assert raw.order_id == "42"
    assert raw.company_id == "cmp-a"
    assert [(i.product_ref, i.quantity, i.deposit_id) for i in raw.items] == [("SKU-1", 2, "7"), ("102", 1, "7")]


def test_cancelled_order_wins_over_sale():
    raw = decode_raw_event({"event": "order.deleted", "data": {"id": 42}})

    assert isinstance(raw, SaleCancelled)
    assert raw.order_id == "42"


def test_legacy_order_shape_without_event_type():
    payload = {"retorno": {"pedidos": [{"pedido": {"numero": "9", "itens": [{"item": {"codigo": "SKU-9", "quantidade": "3"}}]}}]}}

    raw = decode_raw_event(payload)

    assert isinstance(raw, SaleCreated)
    assert raw.order_id == "9"
    assert raw.items[0].product_ref == "SKU-9"
    assert raw.items[0].quantity == 3


def test_stock_event_decodes_to_stock_adjusted():
    payload = {
        "event": "stock.updated",
        "eventId": "ev-1",
        "tenantId": "tenant-1",
        "data": {"produto": {"id": 301, "codigo": "SKU-1"}, "deposito": {"id": "S1"}, "quantidade": 12},
    }

    raw = decode_raw_event(payload)

    assert isinstance(raw, StockAdjusted)
    assert raw.product_ref == "SKU-1"
    assert raw.deposit_id == "S1"
    assert raw.quantity == 12
    assert raw.source_id == "ev-1"
    assert raw.tenant_id == "tenant-1"


def test_bare_product_id_is_treated_as_stock_change():
    raw = decode_raw_event({"produtoId": 55, "depositoId": 3})

    assert isinstance(raw, StockAdjusted)
    assert raw.product_ref == "55"
    assert raw.deposit_id == "3"


def test_portuguese_identifier_keys_are_read():
    raw = decode_raw_event({"idEvento": "ev-77", "idProduto": 55, "idDeposito": 3, "tipo": "estoque"})

    assert isinstance(raw, StockAdjusted)
    assert raw.source_id == "ev-77"
    assert raw.product_ref == "55"
    assert raw.deposit_id == "3"

    assert decode_raw_event({"eventoId": "ev-78", "produtoId": 55}).source_id == "ev-78"


def test_unknown_payloads_are_unrecognized():
    assert isinstance(decode_raw_event({"event": "contact.created", "data": {}}), Unrecognized)
    assert isinstance(decode_raw_event(["not", "an", "object"]), Unrecognized)


def test_items_without_product_reference_are_dropped():
    items = extract_order_items({"itens": [{"quantidade": 1}, {"codigo": "SKU-2"}]})

    assert [item.product_ref for item in items] == ["SKU-2"]
    assert items[0].quantity == 1


def test_job_id_is_derived_from_event_id():
    event = StockEvent(tenant_id="t", product_ref="SKU-1", event_id="42-product-SKU-1")

    assert event.job_id == "event-SKU-1-42-product-SKU-1"
