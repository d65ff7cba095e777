"""Service container for dependency injection."""

import logging
from typing import Dict, Any
from flask import current_app
from signalement_sync.errors import SyncError

logger = logging.getLogger(__name__)

class ServiceContainer:
    """Container for application services.

    One container lives on each Flask app. Services are built lazily by the
    matching ``_init_<name>`` method and cached.
    """

    def __init__(self, app=None):
        """Initialize the service container."""
        self._services: Dict[str, Any] = {}
        self.config = {}
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.config = app.config
        app.extensions['service_container'] = self
        logger.info("Service container initialized")

    def register(self, name: str, service: Any) -> None:
        """Register a service in the container.

        Args:
            name: Name of the service
            service: The service instance
        """
        self._services[name] = service

    def get(self, name: str) -> Any:
        """Get a service from the container by name.

        Args:
            name: Name of the service

        Returns:
            The service instance, or None if there is no such service
        """
        # Try to find in already initialized services
        if name in self._services:
            return self._services[name]

        # Try to initialize lazily
        init_method = getattr(self, f"_init_{name}", None)
        if init_method is None:
            return None
        service = init_method()
        self._services[name] = service
        return service

    def _init_queue_repository(self):
        """Initialize the sync queue repository."""
        from signalement_sync.models.sync_queue_repository import SqlAlchemySyncQueueRepository
        from signalement_sync.extensions import db
        return SqlAlchemySyncQueueRepository(
            db,
            max_retries=self.config.get('SYNC_MAX_RETRIES', 3),
            retry_delay_minutes=self.config.get('SYNC_RETRY_DELAY_MINUTES', 5),
        )

    def _init_history_repository(self):
        """Initialize the sync history repository."""
        from signalement_sync.models.sync_history_repository import SqlAlchemySyncHistoryRepository
        from signalement_sync.extensions import db
        return SqlAlchemySyncHistoryRepository(db)

    def _init_remote_store(self):
        """Initialize the raw remote store gateway selected by REMOTE_GATEWAY."""
        kind = self.config.get('REMOTE_GATEWAY', 'firestore')

        if kind == 'memory':
            from signalement_sync.services.gateway import InMemoryDocumentGateway
            return InMemoryDocumentGateway()

        if kind == 'firestore':
            from signalement_sync.services.firestore_gateway import FirestoreRestGateway, DEFAULT_BASE_URL
            project_id = self.config.get('FIRESTORE_PROJECT_ID')
            if not project_id:
                raise SyncError("FIRESTORE_PROJECT_ID must be set to use the firestore gateway",
                                category="configuration", retryable=False)
            return FirestoreRestGateway(
                project_id,
                database=self.config.get('FIRESTORE_DATABASE', '(default)'),
                access_token=self.config.get('FIRESTORE_ACCESS_TOKEN'),
                base_url=self.config.get('FIRESTORE_BASE_URL') or DEFAULT_BASE_URL,
                timeout=self.config.get('FIRESTORE_TIMEOUT', 10),
            )

        raise SyncError(f"Unknown REMOTE_GATEWAY '{kind}'", category="configuration", retryable=False)

    def _init_gateway(self):
        """Initialize the circuit-breaker-wrapped gateway the engine talks to."""
        from signalement_sync.services.gateway import CircuitBreakerGateway
        return CircuitBreakerGateway(
            self.get('remote_store'),
            failure_threshold=self.config.get('SYNC_CIRCUIT_FAILURE_THRESHOLD', 5),
            recovery_timeout=self.config.get('SYNC_CIRCUIT_RECOVERY_TIMEOUT', 30),
        )

    def create_sync_service(self, actor_id=None):
        """Build a sync service for one cycle, acting as ``actor_id``."""
        from signalement_sync.services.sync_service import SyncService
        from signalement_sync.extensions import db
        return SyncService(
            db,
            self.get('gateway'),
            queue_repository=self.get('queue_repository'),
            history_repository=self.get('history_repository'),
            actor_id=actor_id,
            batch_size=self.config.get('SYNC_BATCH_SIZE', 50),
            stuck_timeout_minutes=self.config.get('SYNC_STUCK_TIMEOUT_MINUTES', 15),
        )

def container():
    """Get the service container of the current app.

    Returns:
        ServiceContainer: The service container instance
    """
    service_container = current_app.extensions.get('service_container')
    if service_container is None:
        service_container = ServiceContainer(current_app)
    return service_container
