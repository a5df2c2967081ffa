import hashlib
import hmac
import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request

from stocksync.core.config import Settings, get_settings
from stocksync.core.enums import EventKind
from stocksync.core.utils import clean_ref, to_int
from stocksync.dependencies import get_pipeline
from stocksync.integrations.events import StockEvent
from stocksync.integrations.setup import SyncPipeline

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

SIGNATURE_HEADER = "X-Bling-Signature-256"


async def verify_webhook_signature(request: Request, settings: Settings = Depends(get_settings)):
    """Verify the HMAC-SHA256 signature when a webhook secret is configured"""
    if not settings.WEBHOOK_SECRET:
        return
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        raise HTTPException(status_code=401, detail="No signature provided")

    body = await request.body()
    expected_signature = hmac.new(
        settings.WEBHOOK_SECRET.encode(),
        body,
        hashlib.sha256
    ).hexdigest()

    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    if not hmac.compare_digest(signature, expected_signature):
        raise HTTPException(status_code=401, detail="Invalid signature")


async def accept_in_background(pipeline: SyncPipeline, payload: Any, tenant_id: Optional[str],
                               account_ref: Optional[str]) -> None:
    """Normalize and enqueue after the response has gone out."""
    try:
        await pipeline.intake.accept(payload, tenant_hint=tenant_id, account_hint=account_ref)
    except Exception:
        logger.exception(f"Webhook intake failed (tenant {tenant_id})")
        if tenant_id:
            await pipeline.config_service.record_lost_event(tenant_id)


@router.post("/webhooks/erp")
async def erp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    account_ref: Optional[str] = Query(None, alias="accountRef"),
    pipeline: SyncPipeline = Depends(get_pipeline),
    _: None = Depends(verify_webhook_signature),
):
    """
    Receive an ERP webhook.

    Always answers 200 once the body parses, whatever happens downstream;
    repeated non-2xx answers make the ERP disable the webhook.
    """
    body = await request.body()
    try:
        payload = json.loads(body or b"null")
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")

    if not isinstance(payload, dict):
        logger.warning(f"Webhook body is {type(payload).__name__}, not an object; ignoring")
        return {"received": True}

    tenant_id = tenant_id or clean_ref(payload.get("tenantId"))
    account_ref = account_ref or clean_ref(payload.get("accountRef"))
    logger.info(f"Webhook received: {payload.get('event') or payload.get('tipo') or 'untyped'} "
                f"(tenant {tenant_id or '?'})")
    background_tasks.add_task(accept_in_background, pipeline, payload, tenant_id, account_ref)
    return {"received": True}


@router.post("/webhooks/erp/test")
async def erp_webhook_test(request: Request, pipeline: SyncPipeline = Depends(get_pipeline)):
    """Enqueue a single hand-built stock event, for checking the pipeline end to end"""
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    missing = [field for field in ("tenantId", "productId", "eventId") if not clean_ref(payload.get(field))]
    if missing:
        raise HTTPException(status_code=400, detail={"message": "Missing required fields", "missing": missing})

    event = StockEvent(
        tenant_id=clean_ref(payload["tenantId"]),
        product_ref=clean_ref(payload["productId"]),
        event_id=clean_ref(payload["eventId"]),
        kind=EventKind.STOCK_ADJUSTMENT,
        deposit_id=clean_ref(payload.get("depositId")),
        account_ref=clean_ref(payload.get("accountRef")),
        quantity=to_int(payload["quantity"]) if payload.get("quantity") is not None else None,
        source_id="test",
    )
    ack = await pipeline.intake.submit(event)
    if ack is None:
        raise HTTPException(status_code=503, detail="Event could not be enqueued")
    return {"received": True, "job_id": ack.job_id, "method": ack.method, "duplicate": ack.duplicate}
