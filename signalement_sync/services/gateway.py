"""Remote document store gateways.

A gateway exposes the three document operations the sync engine needs.
Document keys are strings; fields are plain JSON-compatible dicts.
"""

import copy
import logging
import threading
import uuid
from signalement_sync.errors import RemoteStoreError, RemoteStoreRejected
from signalement_sync.utils.circuit_breaker import CircuitBreaker

log = logging.getLogger(__name__)

class RemoteStoreGateway:
    """Contract for remote document stores."""

    name = "remote"

    def upsert(self, collection, document_key, fields):
        """Create or replace a document.

        Args:
            collection: Collection name
            document_key: Key of the document, or None to let the store allocate one
            fields: Document fields

        Returns:
            str: Key of the written document
        """
        raise NotImplementedError("upsert must be implemented by the gateway")

    def fetch_all(self, collection):
        """Return every document of a collection as (document_key, fields) pairs."""
        raise NotImplementedError("fetch_all must be implemented by the gateway")

    def delete(self, collection, document_key):
        """Delete a document; deleting a missing document is not an error."""
        raise NotImplementedError("delete must be implemented by the gateway")

class InMemoryDocumentGateway(RemoteStoreGateway):
    """Dict-backed document store for development and tests.

    Failures can be injected per operation with :meth:`fail_next`.
    """

    name = "memory"

    def __init__(self):
        self._collections = {}
        self._failures = []
        self._lock = threading.Lock()
        self.calls = []

    def fail_next(self, error=None, times=1, operation=None, document_key=None):
        """Make the next matching call(s) raise ``error``.

        Args:
            error: Exception instance to raise (default: a transient RemoteStoreError)
            times: How many matching calls fail
            operation: Restrict to 'upsert', 'fetch_all' or 'delete'
            document_key: Restrict to one document key
        """
        with self._lock:
            for _ in range(times):
                self._failures.append({
                    'error': error or RemoteStoreError("Injected remote failure"),
                    'operation': operation,
                    'document_key': document_key,
                })

    def _check_failure(self, operation, document_key=None):
        for failure in self._failures:
            if failure['operation'] not in (None, operation):
                continue
            if failure['document_key'] is not None and failure['document_key'] != document_key:
                continue
            self._failures.remove(failure)
            raise failure['error']

    def upsert(self, collection, document_key, fields):
        if not isinstance(fields, dict):
            raise RemoteStoreRejected(f"Document fields must be a mapping, got {type(fields).__name__}")

        with self._lock:
            self.calls.append(('upsert', collection, document_key))
            self._check_failure('upsert', document_key)
            key = document_key or uuid.uuid4().hex
            self._collections.setdefault(collection, {})[key] = copy.deepcopy(fields)
        log.debug(f"Upserted {collection}/{key}")
        return key

    def fetch_all(self, collection):
        with self._lock:
            self.calls.append(('fetch_all', collection, None))
            self._check_failure('fetch_all')
            documents = self._collections.get(collection, {})
            return [(key, copy.deepcopy(fields)) for key, fields in sorted(documents.items())]

    def delete(self, collection, document_key):
        with self._lock:
            self.calls.append(('delete', collection, document_key))
            self._check_failure('delete', document_key)
            self._collections.get(collection, {}).pop(document_key, None)
        log.debug(f"Deleted {collection}/{document_key}")

    # Helpers used to seed and inspect the store

    def put(self, collection, document_key, fields):
        with self._lock:
            self._collections.setdefault(collection, {})[document_key] = copy.deepcopy(fields)

    def get(self, collection, document_key):
        with self._lock:
            fields = self._collections.get(collection, {}).get(document_key)
            return copy.deepcopy(fields) if fields is not None else None

    def count(self, collection):
        with self._lock:
            return len(self._collections.get(collection, {}))

    def clear(self):
        with self._lock:
            self._collections.clear()
            self._failures.clear()
            self.calls.clear()

class CircuitBreakerGateway(RemoteStoreGateway):
    """Wraps a gateway so repeated transient failures open a circuit.

    While the circuit is open every call raises
    :class:`~signalement_sync.utils.circuit_breaker.CircuitBreakerError`, a
    :class:`~signalement_sync.errors.RemoteUnavailableError`.
    """

    def __init__(self, gateway, failure_threshold=5, recovery_timeout=30, clock=None):
        self.gateway = gateway
        self.name = gateway.name
        self.breaker = CircuitBreaker(
            f"remote_store_{gateway.name}",
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            recovery_threshold=1,
            excluded_exceptions=[RemoteStoreRejected],
            clock=clock,
        )

    def upsert(self, collection, document_key, fields):
        return self.breaker.call(self.gateway.upsert, collection, document_key, fields)

    def fetch_all(self, collection):
        return self.breaker.call(self.gateway.fetch_all, collection)

    def delete(self, collection, document_key):
        return self.breaker.call(self.gateway.delete, collection, document_key)
