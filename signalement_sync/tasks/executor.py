"""Task executor for background processing."""

import concurrent.futures
import logging
import os
from functools import wraps

logger = logging.getLogger(__name__)

# Create a thread pool executor for background sync cycles
executor = concurrent.futures.ThreadPoolExecutor(
    max_workers=int(os.environ.get('SYNC_WORKERS', 2)),
    thread_name_prefix='sync-worker'
)

def configure(max_workers):
    """Replace the executor with one of the given size."""
    global executor
    previous = executor
    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=max_workers, thread_name_prefix='sync-worker'
    )
    previous.shutdown(wait=False)
    logger.info(f"Task executor configured with {max_workers} workers")

def async_task(f):
    """Decorator to run a function asynchronously."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        return executor.submit(f, *args, **kwargs)
    return wrapper
