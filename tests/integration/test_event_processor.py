import asyncio

import pytest

from stocksync.core.enums import EventKind, LedgerStatus
from stocksync.core.exceptions import ERPAPIError, RateLimited, ReauthorizationRequired, TransientFailure
from stocksync.integrations.events import StockEvent
from stocksync.models import SyncAccount, TenantSyncConfig
from stocksync.services.event_processor import resolve_origin
from tests.fixtures.tenants import seed_tenant


def sale_event(**overrides):
    values = dict(tenant_id="tenant-1", product_ref="SKU-1", event_id="42-product-SKU-1",
                  kind=EventKind.SALE, account_ref="accA", quantity=1, source_id="42")
    values.update(overrides)
    return StockEvent(**values)


@pytest.fixture
def processor(pipeline):
    return pipeline.processor


@pytest.mark.asyncio
async def test_sale_event_is_synchronized_and_recorded(processor, mock_platform, ledger, config_service, tenant):
    result = await processor.process(sale_event())

    assert result.processed is True
    assert result.reason is None
    assert result.origin == "Loja A"
    assert result.result.total == 12
    assert len(mock_platform.writes_to("S1")) == 1

    entry = (await ledger.history(tenant))[0]
    assert entry.status == LedgerStatus.SUCCEEDED.value
    assert entry.trigger == "webhook"
    assert entry.fingerprint == "SKU-1|42-product-SKU-1|qty=1"
    assert (await config_service.get_config(tenant)).webhook_runs == 1


@pytest.mark.asyncio
async def test_duplicate_event_is_processed_once(processor, mock_platform, config_service, tenant):
    first = await processor.process(sale_event())
    second = await processor.process(sale_event())

    assert first.processed is True
    assert second.processed is False
    assert second.reason == "duplicate"
    assert len(mock_platform.update_calls) == 1
    assert (await config_service.get_config(tenant)).webhook_runs == 1


@pytest.mark.asyncio
async def test_echo_of_own_write_is_suppressed(processor, pipeline, mock_platform, ledger, tenant):
    await pipeline.synchronizer.synchronize("SKU-1", tenant)
    echo = sale_event(kind=EventKind.STOCK_ADJUSTMENT, event_id="ev-7-product-SKU-1", deposit_id="S1",
                      account_ref="accC", quantity=12)

    result = await processor.process(echo)

    assert result.ignored is True
    assert result.reason == "self_generated"
    assert len(mock_platform.update_calls) == 1
    skipped = [e for e in await ledger.history(tenant) if e.status == LedgerStatus.SKIPPED.value]
    assert len(skipped) == 1
    assert skipped[0].reason == "self_generated"


@pytest.mark.asyncio
async def test_sales_are_never_suppressed(processor, pipeline, mock_platform, tenant):
    await pipeline.synchronizer.synchronize("SKU-1", tenant)

    result = await processor.process(sale_event(deposit_id="S1"))

    assert result.processed is True
    assert len(mock_platform.update_calls) == 2


@pytest.mark.asyncio
async def test_second_unrelated_stock_change_is_processed(processor, pipeline, mock_platform, tenant):
    await pipeline.synchronizer.synchronize("SKU-1", tenant)
    echo = sale_event(kind=EventKind.STOCK_ADJUSTMENT, event_id="ev-7", deposit_id="S1", quantity=12)
    manual_change = sale_event(kind=EventKind.STOCK_ADJUSTMENT, event_id="ev-8", deposit_id="S1", quantity=3)

    assert (await processor.process(echo)).reason == "self_generated"
    assert (await processor.process(manual_change)).processed is True


@pytest.mark.asyncio
async def test_change_named_by_product_id_after_echo_is_processed(processor, pipeline, mock_platform, tenant):
    await pipeline.synchronizer.synchronize("SKU-1", tenant)
    echo = sale_event(kind=EventKind.STOCK_ADJUSTMENT, event_id="ev-7", deposit_id="S1",
                      account_ref="accC", quantity=12)
    by_product_id = sale_event(kind=EventKind.STOCK_ADJUSTMENT, product_ref="301", event_id="ev-8",
                               deposit_id="S1", account_ref="accC", quantity=3)

    assert (await processor.process(echo)).reason == "self_generated"
    result = await processor.process(by_product_id)

    assert result.processed is True
    assert result.result.sku == "SKU-1"
    assert len(mock_platform.update_calls) == 2


@pytest.mark.asyncio
async def test_event_without_identifiers_is_invalid(processor, tenant):
    result = await processor.process(sale_event(product_ref=None))

    assert result.ignored is True
    assert result.reason == "invalid"


@pytest.mark.asyncio
async def test_event_for_unconfigured_tenant_is_inactive(processor, ledger):
    result = await processor.process(sale_event(tenant_id="nobody"))

    assert result.reason == "inactive"
    assert await ledger.history("nobody") == []


@pytest.mark.asyncio
async def test_event_for_disabled_tenant_is_counted_as_inactive(processor, config_service, ledger, session_factory):
    await seed_tenant(session_factory, tenant_id="tenant-off", enabled=False)

    result = await processor.process(sale_event(tenant_id="tenant-off"))

    assert result.reason == "inactive"
    assert await ledger.history("tenant-off") == []
    config = await config_service.get_config("tenant-off")
    assert config.inactive_events == 1
    assert config.webhook_runs == 0


@pytest.mark.asyncio
async def test_composite_product_is_recorded_as_permanent_failure(processor, mock_platform, ledger, config_service, tenant):
    mock_platform.add_product("accA", "101", "SKU-1", format="E")

    result = await processor.process(sale_event())

    assert result.processed is True
    assert result.reason == "composite_product"
    entry = (await ledger.history(tenant))[0]
    assert entry.status == LedgerStatus.FAILED.value
    assert mock_platform.update_calls == []
    config = await config_service.get_config(tenant)
    assert config.webhook_runs == 1
    assert config.failed_runs == 1
    assert config.last_sync_at is None


@pytest.mark.asyncio
async def test_reauthorization_is_not_retried(processor, mock_platform, ledger, tenant):
    mock_platform.errors["accB"] = ReauthorizationRequired("revoked", account_ref="accB")

    result = await processor.process(sale_event())

    assert result.reason == "reauthorization_required"
    assert (await ledger.history(tenant))[0].status == LedgerStatus.FAILED.value


@pytest.mark.asyncio
async def test_transient_failure_is_raised_and_retry_succeeds(processor, mock_platform, ledger, tenant):
    mock_platform.errors["accA"] = ERPAPIError("timeout", status_code=504)

    with pytest.raises(TransientFailure):
        await processor.process(sale_event())

    entry = (await ledger.history(tenant))[0]
    assert entry.status == LedgerStatus.RETRYABLE.value

    del mock_platform.errors["accA"]
    result = await processor.process(sale_event())

    assert result.processed is True
    entry = (await ledger.history(tenant))[0]
    assert entry.status == LedgerStatus.SUCCEEDED.value
    assert entry.attempts == 2


@pytest.mark.asyncio
async def test_rate_limit_propagates_for_broker_retry(processor, pipeline, mocker, tenant):
    mocker.patch.object(pipeline.synchronizer, "synchronize",
                        side_effect=RateLimited("throttled", retry_after=4))

    with pytest.raises(RateLimited):
        await processor.process(sale_event())


@pytest.mark.asyncio
async def test_unexpected_error_becomes_transient(processor, pipeline, mocker, ledger, tenant):
    mocker.patch.object(pipeline.synchronizer, "synchronize", side_effect=KeyError("boom"))

    with pytest.raises(TransientFailure):
        await processor.process(sale_event())

    assert (await ledger.history(tenant))[0].status == LedgerStatus.RETRYABLE.value


@pytest.mark.asyncio
async def test_interrupted_run_is_released_for_redelivery(processor, pipeline, mocker, mock_platform, ledger,
                                                         config_service, tenant):
    synchronize = pipeline.synchronizer.synchronize
    calls = []

    async def interrupted_once(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise asyncio.CancelledError()
        return await synchronize(*args, **kwargs)

    mocker.patch.object(pipeline.synchronizer, "synchronize", side_effect=interrupted_once)

    with pytest.raises(asyncio.CancelledError):
        await processor.process(sale_event())

    entry = (await ledger.history(tenant))[0]
    assert entry.status == LedgerStatus.RETRYABLE.value
    assert entry.reason == "interrupted"
    assert mock_platform.update_calls == []

    result = await processor.process(sale_event())

    assert result.processed is True
    assert len(mock_platform.writes_to("S1")) == 1
    entry = (await ledger.history(tenant))[0]
    assert entry.status == LedgerStatus.SUCCEEDED.value
    assert entry.attempts == 2
    assert (await config_service.get_config(tenant)).webhook_runs == 1


@pytest.mark.asyncio
async def test_partial_propagation_is_reported(processor, mock_platform, ledger, tenant):
    mock_platform.failing_deposits.add("S1")

    result = await processor.process(sale_event())

    assert result.processed is True
    assert result.reason == "partial"
    entry = (await ledger.history(tenant))[0]
    assert entry.success is True
    assert entry.reason == "partial"


@pytest.mark.asyncio
async def test_dead_letter_marks_entry_and_counts_lost_event(pipeline, mock_platform, ledger, config_service, tenant):
    mock_platform.errors["accA"] = ERPAPIError("timeout", status_code=504)
    event = sale_event()
    with pytest.raises(TransientFailure):
        await pipeline.handle_event(event)

    await pipeline.handle_dead_letter(event, "timeout")

    entry = (await ledger.history(tenant))[0]
    assert entry.status == LedgerStatus.FAILED.value
    assert entry.reason == "dead_letter"
    assert (await config_service.get_config(tenant)).lost_events == 1


def test_origin_labels():
    config = TenantSyncConfig(tenant_id="t")
    config.accounts = [SyncAccount(account_ref="accA", display_name="Loja A"), SyncAccount(account_ref="accB")]

    assert resolve_origin(config, None) == "webhook"
    assert resolve_origin(config, "accA") == "Loja A"
    assert resolve_origin(config, "accB") == "accB"
    assert resolve_origin(config, "accZ") == "unknown"
