"""Enumerations shared by the sync queue, the sync history and the orchestrator."""

from enum import Enum


class EntityType(Enum):
    USER = "USER"
    SIGNALEMENT = "SIGNALEMENT"
    ENTREPRISE = "ENTREPRISE"
    SIGNALEMENT_STATUS = "SIGNALEMENT_STATUS"
    SIGNALEMENT_ACTION = "SIGNALEMENT_ACTION"
    HISTORIQUE_STATUS = "HISTORIQUE_STATUS"
    SESSION = "SESSION"

class SyncAction(Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

class SyncDirection(Enum):
    LOCAL_TO_REMOTE = "LOCAL_TO_REMOTE"
    REMOTE_TO_LOCAL = "REMOTE_TO_LOCAL"
    BOTH = "BOTH"

class SyncStatus(Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_active(self):
        """Whether the item still holds the (entity_type, entity_id) slot."""
        return self in ACTIVE_STATUSES

ACTIVE_STATUSES = (SyncStatus.PENDING, SyncStatus.PROCESSING)
