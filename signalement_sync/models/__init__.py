"""Database models for the application."""

# Import models in the correct order to avoid circular dependencies
from signalement_sync.models.enums import EntityType, SyncAction, SyncDirection, SyncStatus
from signalement_sync.models.user import User
from signalement_sync.models.signalement_status import SignalementStatus
from signalement_sync.models.entreprise import Entreprise
from signalement_sync.models.signalement import Signalement
from signalement_sync.models.sync_queue import SyncQueueItem
from signalement_sync.models.sync_history import SyncHistory
