"""
Event shapes flowing through the stock pipeline.

Raw webhook bodies are first decoded into exactly one typed variant
(SaleCreated, SaleCancelled, StockAdjusted or Unrecognized) by trying a fixed,
ordered list of decoders. Only the normalizer looks at the variants; it turns
them into StockEvent objects, one per affected product, which is what the
dispatch layer queues and the processor consumes.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, Field

from stocksync.core.enums import EventKind
from stocksync.core.utils import clean_ref, to_int, utcnow
from stocksync.schemas.stock import OrderItem


class StockEvent(BaseModel):
    tenant_id: Optional[str] = None
    product_ref: Optional[str] = None
    event_id: Optional[str] = None
    kind: EventKind = EventKind.SALE
    deposit_id: Optional[str] = None
    account_ref: Optional[str] = None
    quantity: Optional[int] = None
    source_id: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)

    @property
    def job_id(self) -> str:
        return f"event-{self.product_ref}-{self.event_id}"


class SaleCreated(BaseModel):
    variant: Literal["sale_created"] = "sale_created"
    order_id: Optional[str] = None
    account_ref: Optional[str] = None
    company_id: Optional[str] = None
    tenant_id: Optional[str] = None
    deposit_id: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)


class SaleCancelled(BaseModel):
    variant: Literal["sale_cancelled"] = "sale_cancelled"
    order_id: Optional[str] = None
    account_ref: Optional[str] = None
    company_id: Optional[str] = None
    tenant_id: Optional[str] = None


class StockAdjusted(BaseModel):
    variant: Literal["stock_adjusted"] = "stock_adjusted"
    source_id: Optional[str] = None
    product_ref: Optional[str] = None
    deposit_id: Optional[str] = None
    quantity: Optional[int] = None
    account_ref: Optional[str] = None
    company_id: Optional[str] = None
    tenant_id: Optional[str] = None


class Unrecognized(BaseModel):
    variant: Literal["unrecognized"] = "unrecognized"
    reason: str
    event_type: Optional[str] = None


RawEvent = Union[SaleCreated, SaleCancelled, StockAdjusted, Unrecognized]

_ORDER_TYPES = ("order", "pedido", "venda", "sale")
_STOCK_TYPES = ("stock", "virtual_stock", "estoque")
_CANCEL_MARKERS = ("deleted", "cancel", "excluido", "removido")
_EVENT_ID_KEYS = ("eventId", "eventoId", "idEvento")


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _nested_id(container: Dict[str, Any], key: str) -> Optional[str]:
    value = container.get(key)
    if isinstance(value, dict):
        return clean_ref(value.get("id"))
    return clean_ref(value)


def _first_ref(container: Dict[str, Any], keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        ref = clean_ref(container.get(key))
        if ref:
            return ref
    return None


def _event_type(payload: Dict[str, Any]) -> str:
    return str(payload.get("event") or payload.get("tipo") or payload.get("evento") or "").strip().lower()


def _type_family(event_type: str) -> str:
    return event_type.split(".", 1)[0] if event_type else ""


def _payload_hints(payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
    return {
        "account_ref": clean_ref(payload.get("accountRef") or payload.get("blingAccountId")
                                 or payload.get("contaBlingId")),
        "company_id": clean_ref(payload.get("companyId")),
        "tenant_id": clean_ref(payload.get("tenantId")),
    }


def _find_order(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    data = _as_dict(payload.get("data"))
    for candidate in (data.get("pedido"), payload.get("pedido"), payload.get("order")):
        if isinstance(candidate, dict):
            return candidate
    retorno = _as_dict(payload.get("retorno"))
    pedidos = retorno.get("pedidos")
    if isinstance(pedidos, list) and pedidos:
        first = _as_dict(pedidos[0])
        return _as_dict(first.get("pedido")) or first
    if data and ("itens" in data or "numero" in data):
        return data
    return None


def extract_order_items(order: Dict[str, Any]) -> List[OrderItem]:
    """Pull line items out of an order body; items without any product reference are dropped."""
    items = order.get("itens") or order.get("items") or []
    order_deposit = _nested_id(order, "deposito") or clean_ref(order.get("depositoId"))
    extracted: List[OrderItem] = []
    for raw_item in items if isinstance(items, list) else []:
        item = _as_dict(raw_item)
        if "item" in item and isinstance(item["item"], dict):
            item = item["item"]
        product = _as_dict(item.get("produto"))
        product_id = clean_ref(product.get("id") or item.get("idProduto") or item.get("produtoId"))
        sku = clean_ref(product.get("codigo") or item.get("codigo") or item.get("sku"))
        product_ref = sku or product_id
        if not product_ref:
            continue
        quantity = item.get("quantidade", item.get("qtd", item.get("quantity", 1)))
        extracted.append(OrderItem(
            product_ref=product_ref,
            product_id=product_id,
            sku=sku,
            quantity=to_int(quantity, 1),
            deposit_id=_nested_id(item, "deposito") or clean_ref(item.get("depositoId")) or order_deposit,
        ))
    return extracted


def _decode_sale_cancelled(payload: Dict[str, Any]) -> Optional[SaleCancelled]:
    event_type = _event_type(payload)
    if _type_family(event_type) not in _ORDER_TYPES:
        return None
    if not any(marker in event_type for marker in _CANCEL_MARKERS):
        return None
    order = _find_order(payload) or _as_dict(payload.get("data"))
    return SaleCancelled(order_id=clean_ref(order.get("id")), **_payload_hints(payload))


def _decode_sale_created(payload: Dict[str, Any]) -> Optional[SaleCreated]:
    event_type = _event_type(payload)
    order = _find_order(payload)
    if _type_family(event_type) in _ORDER_TYPES:
        order = order or _as_dict(payload.get("data"))
    elif order is None:
        return None
    hints = _payload_hints(payload)
    store = _as_dict(order.get("loja"))
    hints["account_ref"] = hints["account_ref"] or clean_ref(order.get("accountId") or order.get("contaBlingId"))
    return SaleCreated(
        order_id=clean_ref(order.get("id") or order.get("numero") or store.get("numeroPedido")),
        deposit_id=_nested_id(order, "deposito"),
        items=extract_order_items(order),
        **hints,
    )


def _decode_stock_adjusted(payload: Dict[str, Any]) -> Optional[StockAdjusted]:
    event_type = _event_type(payload)
    data = _as_dict(payload.get("data")) or _as_dict(payload.get("estoque"))
    source = data or payload
    product = _as_dict(source.get("produto"))
    product_ref = (clean_ref(product.get("codigo") or product.get("id"))
                   or _first_ref(source, ("produtoId", "idProduto", "productId"))
                   or _first_ref(payload, ("produtoId", "idProduto", "productId")))
    if _type_family(event_type) not in _STOCK_TYPES and not product_ref:
        return None
    deposit_id = (_nested_id(source, "deposito") or clean_ref(source.get("depositoId"))
                  or _first_ref(payload, ("depositoId", "idDeposito", "depositId")))
    quantity = source.get("quantidade", source.get("quantity", payload.get("quantidade")))
    return StockAdjusted(
        source_id=(_first_ref(payload, _EVENT_ID_KEYS) or _first_ref(source, _EVENT_ID_KEYS)
                   or clean_ref(source.get("id"))),
        product_ref=product_ref,
        deposit_id=deposit_id,
        quantity=to_int(quantity) if quantity is not None else None,
        **_payload_hints(payload),
    )


DECODERS: Sequence[Callable[[Dict[str, Any]], Optional[RawEvent]]] = (
    _decode_sale_cancelled,
    _decode_sale_created,
    _decode_stock_adjusted,
)


def decode_raw_event(payload: Any) -> RawEvent:
    """Return the first variant whose decoder accepts the payload."""
    if not isinstance(payload, dict):
        return Unrecognized(reason=f"payload is {type(payload).__name__}, expected an object")
    for decoder in DECODERS:
        decoded = decoder(payload)
        if decoded is not None:
            return decoded
    return Unrecognized(reason="no known order or stock shape", event_type=_event_type(payload) or None)
