import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from stocksync.core.enums import SyncTrigger
from stocksync.core.exceptions import (
    CompositeProductUnsupported,
    ConfigurationInactive,
    ConfigurationIncomplete,
    RateLimited,
    ReauthorizationRequired,
    StockSyncError,
    TransientFailure,
)
from stocksync.dependencies import get_pipeline
from stocksync.integrations.setup import SyncPipeline
from stocksync.scheduler import get_scheduler_status
from stocksync.schemas.stock import AggregationResult
from stocksync.schemas.sync import (
    LedgerEntryRead,
    ManualSyncRequest,
    ReconciliationSummary,
    SyncResult,
    TenantSyncStatus,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])
stock_router = APIRouter(prefix="/api/stock", tags=["stock"])


def to_http_error(error: StockSyncError) -> HTTPException:
    """Translate a pipeline error into the matching HTTP answer"""
    detail = {"reason": error.reason, "message": str(error)}
    if isinstance(error, ReauthorizationRequired):
        detail["reauth_url"] = error.reauth_url
        detail["account_ref"] = error.account_ref
        return HTTPException(status_code=409, detail=detail)
    if isinstance(error, (ConfigurationInactive, ConfigurationIncomplete)):
        return HTTPException(status_code=409, detail=detail)
    if isinstance(error, CompositeProductUnsupported):
        return HTTPException(status_code=422, detail=detail)
    if isinstance(error, RateLimited):
        headers = {"Retry-After": str(int(error.retry_after or 1))}
        return HTTPException(status_code=503, detail=detail, headers=headers)
    if isinstance(error, TransientFailure):
        return HTTPException(status_code=503, detail=detail)
    return HTTPException(status_code=400, detail=detail)


@router.post("/manual", response_model=SyncResult)
async def manual_sync(request: ManualSyncRequest, pipeline: SyncPipeline = Depends(get_pipeline)):
    """Synchronize one product now and return the outcome"""
    logger.info(f"Manual sync requested for tenant {request.tenant_id} product {request.product_ref}")
    try:
        return await pipeline.synchronizer.synchronize(
            request.product_ref, request.tenant_id, origin="manual", trigger=SyncTrigger.MANUAL,
        )
    except StockSyncError as e:
        raise to_http_error(e)


@router.get("/status/{tenant_id}", response_model=TenantSyncStatus)
async def sync_status(tenant_id: str, pipeline: SyncPipeline = Depends(get_pipeline)):
    """Counters, schedule and dispatch health for one tenant"""
    config = await pipeline.config_service.get_config(tenant_id)
    if config is None:
        raise HTTPException(status_code=404, detail=f"No sync configuration for tenant {tenant_id}")

    dispatcher = pipeline.dispatcher
    return TenantSyncStatus(
        tenant_id=config.tenant_id,
        enabled=config.enabled,
        complete=config.is_complete(),
        webhook_runs=config.webhook_runs or 0,
        manual_runs=config.manual_runs or 0,
        scheduled_runs=config.scheduled_runs or 0,
        failed_runs=config.failed_runs or 0,
        inactive_events=config.inactive_events or 0,
        lost_events=config.lost_events or 0,
        last_sync_at=config.last_sync_at,
        reconcile_enabled=config.reconcile_enabled,
        reconcile_interval_minutes=config.reconcile_interval_minutes,
        last_reconcile_at=config.last_reconcile_at,
        next_reconcile_at=config.next_reconcile_at,
        dispatch_method=dispatcher.method if dispatcher is not None else None,
        queue=await dispatcher.stats() if dispatcher is not None else {},
    )


@router.get("/events/{tenant_id}", response_model=List[LedgerEntryRead])
async def ledger_history(
    tenant_id: str,
    since: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    pipeline: SyncPipeline = Depends(get_pipeline),
):
    """Most recent ledger entries for a tenant, newest first"""
    entries = await pipeline.ledger.history(tenant_id, since=since, limit=limit)
    return [LedgerEntryRead.from_orm_model(entry) for entry in entries]


@router.post("/reconcile", response_model=ReconciliationSummary)
async def reconcile_now(pipeline: SyncPipeline = Depends(get_pipeline)):
    """Run one reconciliation sweep immediately"""
    summary = await pipeline.reconciliation.run_sweep()
    if summary is None:
        raise HTTPException(status_code=409, detail="A reconciliation sweep is already running")
    return summary


@router.get("/scheduler")
async def scheduler_status():
    return get_scheduler_status()


@stock_router.get("/{tenant_id}/{product_ref}", response_model=AggregationResult)
async def unified_stock(tenant_id: str, product_ref: str, pipeline: SyncPipeline = Depends(get_pipeline)):
    """Live stock of a product across every active account of the tenant"""
    return await pipeline.aggregator.aggregate(tenant_id, product_ref)
