"""Circuit breaker for remote store calls"""

import time
import logging
import functools
import threading
from signalement_sync.errors import RemoteUnavailableError

log = logging.getLogger(__name__)

class CircuitBreakerError(RemoteUnavailableError):
    """Raised when circuit breaker is open"""

    default_message = "Circuit breaker is open"

class CircuitBreaker:
    """Circuit breaker for remote calls"""

    # State constants
    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"      # Circuit is broken
    HALF_OPEN = "HALF_OPEN"  # Testing if service is back

    def __init__(self, name, failure_threshold=5, recovery_timeout=30,
                 recovery_threshold=2, excluded_exceptions=None, clock=None):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.recovery_threshold = recovery_threshold
        self.excluded_exceptions = tuple(excluded_exceptions or ())
        self._clock = clock or time.time
        self._lock = threading.Lock()

        # State
        self.state = self.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0

    def __call__(self, func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)
        return wrapper

    def call(self, func, *args, **kwargs):
        self._before_call(func)
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            # Don't count excluded exceptions toward failure threshold
            if not isinstance(e, self.excluded_exceptions):
                self._on_failure()
            raise
        self._on_success()
        return result

    def _before_call(self, func):
        with self._lock:
            if self.state != self.OPEN:
                return
            if self._clock() - self.last_failure_time > self.recovery_timeout:
                log.info(f"Circuit {self.name}: Switching from OPEN to HALF_OPEN")
                self.state = self.HALF_OPEN
                self.success_count = 0
                return
        log.warning(f"Circuit {self.name}: Open, rejecting call to {getattr(func, '__name__', repr(func))}")
        raise CircuitBreakerError(f"Circuit {self.name} is OPEN")

    def _on_success(self):
        with self._lock:
            if self.state == self.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.recovery_threshold:
                    log.info(f"Circuit {self.name}: Recovery threshold reached, closing circuit")
                    self.state = self.CLOSED
                    self.failure_count = 0

            # Reset failure count on successful closed state call
            elif self.state == self.CLOSED:
                self.failure_count = 0

    def _on_failure(self):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()

            if self.state == self.CLOSED and self.failure_count >= self.failure_threshold:
                log.warning(f"Circuit {self.name}: Failure threshold reached, opening circuit")
                self.state = self.OPEN

            elif self.state == self.HALF_OPEN:
                log.warning(f"Circuit {self.name}: Failed in HALF_OPEN state, back to OPEN")
                self.state = self.OPEN

    def reset(self):
        with self._lock:
            self.state = self.CLOSED
            self.failure_count = 0
            self.success_count = 0
