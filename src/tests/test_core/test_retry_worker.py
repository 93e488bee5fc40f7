import time
import pytest
from edge_gateway.core.retry_worker import RetryWorker, RetryConfig


@pytest.mark.asyncio
async def test_delivered_retry_is_removed(store, connector, make_event):
    event = make_event(device_id="dev123")
    await store.store_for_retry(event)
    worker = RetryWorker(store, connector)

    assert await worker.run_once() == 1
    assert connector.sent == [event]
    assert await store.get(event.retry_key) is None

    # nothing is re-sent on the next cycle
    assert await worker.run_once() == 0
    assert len(connector.sent) == 1


@pytest.mark.asyncio
async def test_failed_retry_stays_with_backoff(store, connector, make_event):
    connector.succeed = False
    event = make_event()
    await store.store_for_retry(event)
    worker = RetryWorker(store, connector, RetryConfig(base_delay=60, max_delay=600))

    now = time.time()
    assert await worker.run_once(now=now) == 0

    records = [r async for r in store.list_retries()]
    assert len(records) == 1
    assert records[0].attempts == 1
    # 60s ±25% jitter
    assert now + 45 <= records[0].next_attempt_at <= now + 75

    # not due yet, so not attempted again
    await worker.run_once(now=now + 1)
    assert len(connector.sent) == 1

    connector.succeed = True
    assert await worker.run_once(now=now + 600) == 1
    assert await store.count_retries() == 0


@pytest.mark.asyncio
async def test_batch_size_limits_a_pass(store, connector, make_event):
    for i in range(5):
        await store.store_for_retry(make_event(device_id=f"dev{i}", timestamp=float(i)))
    worker = RetryWorker(store, connector, RetryConfig(batch_size=2))

    assert await worker.run_once() == 2
    assert await store.count_retries() == 3
