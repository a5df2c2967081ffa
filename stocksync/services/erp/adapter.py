"""
ERP implementation of StockPlatform.

Endpoints used:
    GET  /produtos?codigo=<sku>                       product by SKU
    GET  /produtos/<id>                               product by id
    GET  /estoques/saldos/<deposit>?idsProdutos[]=id  deposit balance
    POST /estoques                                    stock movement
    GET  /pedidos/vendas/<id>                         sales order detail
"""

import logging
from typing import Any, Dict, Optional

from stocksync.core.enums import BALANCE_OPERATION
from stocksync.core.exceptions import ERPAPIError
from stocksync.core.utils import clean_ref, to_int
from stocksync.integrations.base import StockPlatform
from stocksync.integrations.events import extract_order_items
from stocksync.schemas.stock import DepositBalance, Order, Product, StockMovementAck
from stocksync.services.erp.client import ERPClient
from stocksync.services.erp.reserved_stock import ReservedStockInference

logger = logging.getLogger(__name__)


def _api_id(value: str) -> Any:
    """The ERP expects numeric ids as numbers in request bodies."""
    return int(value) if str(value).isdigit() else value


class ERPStockAdapter(StockPlatform):

    def __init__(self, client: ERPClient, reserved: ReservedStockInference):
        self.client = client
        self.reserved = reserved

    # -- products ---------------------------------------------------------

    async def get_product(self, tenant_id: str, account_ref: str, ref: str) -> Optional[Product]:
        ref = str(ref).strip()
        if ref.isdigit():
            product = await self._get_product_by_id(tenant_id, account_ref, ref)
            if product is not None:
                return product
        return await self._get_product_by_sku(tenant_id, account_ref, ref)

    async def _get_product_by_id(self, tenant_id: str, account_ref: str, product_id: str) -> Optional[Product]:
        try:
            response = await self.client.get(f"/produtos/{product_id}", tenant_id, account_ref)
        except ERPAPIError as e:
            if e.status_code == 404:
                return None
            raise
        data = response.get("data")
        return self._parse_product(data, account_ref) if data else None

    async def _get_product_by_sku(self, tenant_id: str, account_ref: str, sku: str) -> Optional[Product]:
        response = await self.client.get("/produtos", tenant_id, account_ref, params={"codigo": sku})
        matches = response.get("data") or []
        if not matches:
            logger.debug(f"SKU {sku} not found on account {account_ref}")
            return None
        match = next((row for row in matches if str(row.get("codigo", "")).strip() == sku), matches[0])
        if not match.get("formato") and match.get("id"):
            # Listing rows can omit the format flag needed by the composite guard
            detailed = await self._get_product_by_id(tenant_id, account_ref, str(match["id"]))
            if detailed is not None:
                return detailed
        return self._parse_product(match, account_ref)

    @staticmethod
    def _parse_product(data: Dict[str, Any], account_ref: str) -> Product:
        stock = data.get("estoque") if isinstance(data.get("estoque"), dict) else {}
        return Product(
            id=str(data["id"]),
            account_ref=str(account_ref),
            sku=clean_ref(data.get("codigo")),
            name=data.get("nome"),
            format=data.get("formato"),
            physical_total=to_int(stock["saldoFisicoTotal"]) if "saldoFisicoTotal" in stock else None,
            virtual_total=to_int(stock["saldoVirtualTotal"]) if "saldoVirtualTotal" in stock else None,
        )

    # -- balances ---------------------------------------------------------

    async def get_deposit_balance(self, tenant_id: str, account_ref: str,
                                  product_id: str, deposit_id: str) -> DepositBalance:
        response = await self.client.get(
            f"/estoques/saldos/{deposit_id}", tenant_id, account_ref,
            params={"idsProdutos[]": [str(product_id)]},
        )
        rows = response.get("data") or []
        row = next((r for r in rows if str((r.get("produto") or {}).get("id")) == str(product_id)),
                   rows[0] if rows else {})

        physical = to_int(row.get("saldoFisicoTotal"))
        virtual = to_int(row.get("saldoVirtualTotal"))
        reported = to_int(row.get("saldoReservado"))
        for deposit in row.get("depositos") or []:
            if str(deposit.get("id")) == str(deposit_id):
                physical = to_int(deposit.get("saldoFisico"), physical)
                virtual = to_int(deposit.get("saldoVirtual"), virtual)
                reported = to_int(deposit.get("saldoReservado"), reported)
                break

        key = self.reserved.key(tenant_id, account_ref, product_id, deposit_id)
        reserved, method = self.reserved.resolve(key, physical=physical, virtual=virtual, reported=reported)
        return DepositBalance(
            deposit_id=str(deposit_id),
            physical=max(0, physical),
            virtual=max(0, virtual),
            reserved_reported=reported,
            reserved_effective=reserved,
            reserved_method=method,
        )

    # -- writes -----------------------------------------------------------

    async def write_stock_movement(self, tenant_id: str, account_ref: str, deposit_id: str,
                                   product_id: str, quantity: int,
                                   operation: str = BALANCE_OPERATION) -> StockMovementAck:
        quantity = max(0, int(quantity))
        body = {
            "produto": {"id": _api_id(product_id)},
            "deposito": {"id": _api_id(deposit_id)},
            "operacao": operation,
            "quantidade": quantity,
            "observacoes": "stocksync: balance from principal deposits",
        }
        response = await self.client.post("/estoques", tenant_id, account_ref, data=body)
        movement = response.get("data") or {}
        logger.info(f"Wrote {operation} {quantity} for product {product_id} to deposit {deposit_id} "
                    f"(account {account_ref})")
        return StockMovementAck(
            account_ref=str(account_ref),
            deposit_id=str(deposit_id),
            product_id=str(product_id),
            quantity=quantity,
            operation=operation,
            movement_id=clean_ref(movement.get("id")) if isinstance(movement, dict) else None,
        )

    # -- orders -----------------------------------------------------------

    async def get_order_detail(self, tenant_id: str, account_ref: str, order_id: str) -> Optional[Order]:
        try:
            response = await self.client.get(f"/pedidos/vendas/{order_id}", tenant_id, account_ref)
        except ERPAPIError as e:
            if e.status_code == 404:
                return None
            raise
        data = response.get("data")
        if not data:
            return None
        deposit = data.get("deposito") if isinstance(data.get("deposito"), dict) else {}
        status = data.get("situacao") if isinstance(data.get("situacao"), dict) else {}
        return Order(
            id=str(data.get("id") or order_id),
            account_ref=str(account_ref),
            number=clean_ref(data.get("numero")),
            status=clean_ref(status.get("id")),
            deposit_id=clean_ref(deposit.get("id")),
            items=extract_order_items(data),
        )
