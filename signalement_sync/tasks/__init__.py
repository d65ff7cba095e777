"""Background task processing."""

import logging
from signalement_sync.tasks import executor

log = logging.getLogger("tasks")

def init_tasks(app):
    """Initialize the task system with the Flask app."""
    executor.configure(app.config.get('SYNC_WORKERS', 2))

    # Register scheduled tasks
    if app.config.get('SYNC_SCHEDULER_ENABLED') and not app.config.get('TESTING'):
        from signalement_sync.extensions import scheduler
        from signalement_sync.tasks.sync_tasks import setup_sync_jobs

        setup_sync_jobs(app)
        if not scheduler.running:
            scheduler.start()
            log.info("Scheduler started")
