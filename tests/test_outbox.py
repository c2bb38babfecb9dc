import pytest
from unittest.mock import AsyncMock

from api.services.outbox import OutboxService

@pytest.fixture
def outbox(fake_db):
    return OutboxService(fake_db, max_attempts=3, backoff_seconds=10, batch_size=10)

def test_backoff_doubles(outbox):
    assert [outbox.backoff_for(n) for n in (1, 2, 3, 4)] == [10, 20, 40, 80]

@pytest.mark.asyncio
async def test_dispatch_runs_handler_and_completes(outbox, fake_db):
    handler = AsyncMock()
    outbox.register('ping', handler)
    outbox.enqueue('ping', {'n': 1})

    summary = await outbox.dispatch_pending()

    assert summary == {'due': 1, 'completed': 1, 'retried': 0, 'deadLettered': 0, 'skipped': 0, 'reclaimed': 0}
    handler.assert_awaited_once_with({'n': 1})
    task = fake_db.all('task_outbox')[0]
    assert task['status'] == 'completed'
    assert task['attempts'] == 1

@pytest.mark.asyncio
async def test_failure_is_retried_later(outbox, fake_db):
    outbox.register('ping', AsyncMock(side_effect=RuntimeError("vendor down")))
    outbox.enqueue('ping', {})

    summary = await outbox.dispatch_pending()

    assert summary['retried'] == 1
    task = fake_db.all('task_outbox')[0]
    assert task['status'] == 'pending'
    assert task['last_error'] == "vendor down"
    assert task['next_attempt_at'] > task['created_at']

    # not due again until the backoff elapses
    assert (await outbox.dispatch_pending())['due'] == 0

@pytest.mark.asyncio
async def test_task_dead_letters_after_max_attempts(outbox, fake_db):
    outbox.register('ping', AsyncMock(side_effect=RuntimeError("vendor down")))
    outbox.enqueue('ping', {})

    for _ in range(3):
        fake_db.tables['task_outbox'][0]['next_attempt_at'] = '2000-01-01T00:00:00+00:00'
        summary = await outbox.dispatch_pending()

    assert summary['deadLettered'] == 1
    task = fake_db.all('task_outbox')[0]
    assert task['status'] == 'dead_letter'
    assert task['attempts'] == 3

@pytest.mark.asyncio
async def test_unknown_task_type_is_dead_lettered(outbox, fake_db):
    outbox.enqueue('mystery', {})

    summary = await outbox.dispatch_pending()

    assert summary['deadLettered'] == 1
    assert 'No handler' in fake_db.all('task_outbox')[0]['last_error']

@pytest.mark.asyncio
async def test_claimed_task_is_not_run_twice(outbox, fake_db):
    handler = AsyncMock()
    outbox.register('ping', handler)
    task = outbox.enqueue('ping', {})

    assert outbox._claim(task) is not None
    assert outbox._claim(task) is None

def test_delayed_task_is_not_due(test_client, services):
    services['outbox'].enqueue('sms_notification', {}, delay_seconds=3600)

    body = test_client.post('/api/tasks/dispatch').get_json()

    assert body['success'] is True
    assert body['due'] == 0

@pytest.mark.asyncio
async def test_lost_outcome_is_reclaimed_after_lease_expires(outbox, fake_db):
    calls = []

    async def flaky(payload):
        calls.append(payload)
        if len(calls) == 1:
            # the database goes away before the failure can be recorded
            fake_db.fail_on('task_outbox', 'update')
            raise RuntimeError("vendor down")

    outbox.register('ping', flaky)
    outbox.enqueue('ping', {})

    summary = await outbox.dispatch_pending()

    assert summary['retried'] == 1
    task = fake_db.all('task_outbox')[0]
    assert task['status'] == 'processing'
    assert task['lease_expires_at'] > task['claimed_at']

    # still leased to the first worker
    assert (await outbox.dispatch_pending())['due'] == 0

    fake_db.tables['task_outbox'][0]['lease_expires_at'] = '2000-01-01T00:00:00+00:00'
    summary = await outbox.dispatch_pending()

    assert summary['reclaimed'] == 1
    assert summary['completed'] == 1
    assert len(calls) == 2
    task = fake_db.all('task_outbox')[0]
    assert task['status'] == 'completed'
    assert task['attempts'] == 2

@pytest.mark.asyncio
async def test_expired_lease_on_last_attempt_is_dead_lettered(outbox, fake_db):
    handler = AsyncMock()
    outbox.register('ping', handler)
    fake_db.seed('task_outbox', {
        'task_type': 'ping',
        'payload': {},
        'status': 'processing',
        'attempts': 3,
        'next_attempt_at': '2000-01-01T00:00:00+00:00',
        'lease_expires_at': '2000-01-01T00:10:00+00:00',
    })

    summary = await outbox.dispatch_pending()

    assert summary['deadLettered'] == 1
    handler.assert_not_awaited()
    task = fake_db.all('task_outbox')[0]
    assert task['status'] == 'dead_letter'
    assert 'Lease expired' in task['last_error']
