"""Tests for scheduled and background sync cycles"""

import pytest

from signalement_sync.errors import SyncError
from signalement_sync.models.enums import EntityType
from signalement_sync.tasks.sync_tasks import (
    parse_cron_expression, queue_sync_cycle, run_scheduled_sync, run_sync_cycle, setup_sync_jobs
)

def test_parse_cron_expression():
    assert parse_cron_expression('0 */2 * * 1-5') == {
        'minute': '0', 'hour': '*/2', 'day': '*', 'month': '*', 'day_of_week': '1-5'
    }

@pytest.mark.parametrize('expression', ['', None, 'every hour', '* * * *'])
def test_parse_cron_expression_falls_back(expression):
    assert parse_cron_expression(expression) == {'minute': '*/30'}

def test_setup_sync_jobs_registers_cron_job(app, mocker):
    scheduler = mocker.patch('signalement_sync.tasks.sync_tasks.scheduler')
    app.config['SYNC_SCHEDULE'] = '*/15 * * * *'

    setup_sync_jobs(app)

    kwargs = scheduler.add_job.call_args.kwargs
    assert kwargs['id'] == 'scheduled_sync'
    assert kwargs['trigger'] == 'cron'
    assert kwargs['minute'] == '*/15'
    assert kwargs['max_instances'] == 1
    assert kwargs['coalesce'] is True
    assert kwargs['kwargs'] == {'app': app}

def test_run_sync_cycle(app, remote, users):
    result = run_sync_cycle(app, 'push', EntityType.USER)

    assert result.success
    assert dict(result.success_counts) == {'users': 3}
    assert remote.count('users') == 3

def test_run_sync_cycle_propagates_configuration_errors(app, db):
    app.extensions['service_container'].register('gateway', None)

    with pytest.raises(SyncError):
        run_sync_cycle(app, 'all')

def test_queue_sync_cycle_returns_future(app, remote, users):
    future = queue_sync_cycle('push', app=app)

    result = future.result(timeout=30)
    assert result.success
    assert remote.count('users') == 3

def test_run_scheduled_sync_respects_switch(app, remote, users):
    assert run_scheduled_sync(app) is None
    assert remote.count('users') == 0

    app.config['SYNC_SCHEDULER_ENABLED'] = True
    result = run_scheduled_sync(app)

    assert result.success
    assert remote.count('users') == 3
