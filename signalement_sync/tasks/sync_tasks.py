"""Scheduled and background sync cycles."""

import logging
from flask import current_app
from signalement_sync.extensions import db, scheduler
from signalement_sync.services.container import container
from signalement_sync.tasks.executor import async_task

log = logging.getLogger(__name__)

DEFAULT_SCHEDULE = '*/30 * * * *'

def run_sync_cycle(app, mode='all', entity_type=None, actor_id=None):
    """Run one sync cycle inside a fresh application context.

    Returns:
        SyncResult: Outcome of the cycle
    """
    with app.app_context():
        log.info(f"Starting background sync cycle (mode={mode})")
        try:
            sync_service = container().create_sync_service(actor_id=actor_id)
            result = sync_service.run(mode, entity_type)
        except Exception as e:
            log.error(f"Error in background sync cycle: {str(e)}", exc_info=True)
            raise
        finally:
            db.session.remove()

        if result.success:
            log.info(f"Background sync completed: {result.total_success} succeeded, {result.total_errors} failed")
        else:
            log.error(f"Background sync aborted: {result.error_message}")
        return result

@async_task
def _submit_cycle(app, mode, entity_type, actor_id):
    return run_sync_cycle(app, mode, entity_type, actor_id)

def queue_sync_cycle(mode='all', entity_type=None, actor_id=None, app=None):
    """Queue a sync cycle on the background executor.

    Returns:
        Future: Resolves to the SyncResult of the cycle
    """
    app = app or current_app._get_current_object()
    return _submit_cycle(app, mode, entity_type, actor_id)

def run_scheduled_sync(app=None):
    """Execute the scheduled full synchronization."""
    app = app or scheduler.app
    if not app.config.get('SYNC_SCHEDULER_ENABLED', True):
        log.info("Scheduled sync is disabled")
        return None

    log.info("Running scheduled synchronization")
    result = run_sync_cycle(app, 'all')

    # Log detailed stats
    for category, count in sorted(result.error_counts.items()):
        log.warning(f"Sync errors in {category}: {count}")
    return result

def setup_sync_jobs(app):
    """Register synchronization jobs with the scheduler."""
    sync_schedule = app.config.get('SYNC_SCHEDULE') or DEFAULT_SCHEDULE

    scheduler.add_job(
        id='scheduled_sync',
        func=run_scheduled_sync,
        kwargs={'app': app},
        trigger='cron',
        **parse_cron_expression(sync_schedule),
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )

    app.logger.info(f"Scheduled sync job registered with cron: {sync_schedule}")

def parse_cron_expression(expression):
    """Parse cron expression into kwargs for APScheduler."""
    parts = (expression or '').split()
    if len(parts) != 5:
        # Invalid cron expression, use default (every 30 minutes)
        log.warning(f"Invalid cron expression '{expression}', falling back to every 30 minutes")
        return {'minute': '*/30'}

    minute, hour, day, month, day_of_week = parts
    return {
        'minute': minute,
        'hour': hour,
        'day': day,
        'month': month,
        'day_of_week': day_of_week
    }
