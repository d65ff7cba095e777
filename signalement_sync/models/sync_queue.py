"""Model for durable sync work items."""

from datetime import datetime, timedelta
from sqlalchemy import text
from signalement_sync.extensions import db
from signalement_sync.models.enums import (
    EntityType, SyncAction, SyncDirection, SyncStatus
)

DEFAULT_MAX_RETRIES = 3
DEFAULT_PRIORITY = 5
DEFAULT_RETRY_DELAY = timedelta(minutes=5)

# Partial index predicate: the (entity_type, entity_id) slot is held while active
_ACTIVE_PREDICATE = text("status IN ('PENDING', 'PROCESSING')")

class SyncQueueItem(db.Model):
    """One unit of pending synchronization work."""

    __tablename__ = 'sync_queue'
    __table_args__ = (
        db.Index('idx_sync_queue_status', 'status', 'priority', 'scheduled_at'),
        db.Index('idx_sync_queue_entity', 'entity_type', 'entity_id'),
        db.Index(
            'uq_sync_queue_active_entity', 'entity_type', 'entity_id',
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.Enum(EntityType, native_enum=False, length=50), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    remote_id = db.Column(db.String(128), nullable=True)
    action = db.Column(db.Enum(SyncAction, native_enum=False, length=20), nullable=False)
    direction = db.Column(db.Enum(SyncDirection, native_enum=False, length=20), nullable=False)
    status = db.Column(db.Enum(SyncStatus, native_enum=False, length=20),
                       nullable=False, default=SyncStatus.PENDING)
    error_message = db.Column(db.Text, nullable=True)
    error_category = db.Column(db.String(50), nullable=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    max_retries = db.Column(db.Integer, nullable=False, default=DEFAULT_MAX_RETRIES)
    priority = db.Column(db.Integer, nullable=False, default=DEFAULT_PRIORITY)
    data_snapshot = db.Column(db.JSON, nullable=True)
    synced_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    claim_token = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    scheduled_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    processing_started_at = db.Column(db.DateTime, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)

    def can_retry(self):
        return self.retry_count < self.max_retries

    def mark_success(self, when=None):
        self.status = SyncStatus.SUCCESS
        self.processed_at = when or datetime.utcnow()
        self.error_message = None
        self.error_category = None
        self.claim_token = None

    def mark_failed(self, error, category=None, when=None):
        self.status = SyncStatus.FAILED
        self.processed_at = when or datetime.utcnow()
        self.error_message = error
        self.error_category = category
        self.claim_token = None

    def schedule_retry(self, delay=DEFAULT_RETRY_DELAY, when=None):
        """Move a failed item back to PENDING with linear backoff.

        The delay grows with the attempt number: retry N waits N * delay.
        """
        self.retry_count += 1
        self.status = SyncStatus.PENDING
        self.processing_started_at = None
        self.scheduled_at = (when or datetime.utcnow()) + delay * self.retry_count

    def release(self):
        """Give a claimed item back to the queue without counting an attempt."""
        self.status = SyncStatus.PENDING
        self.processing_started_at = None
        self.claim_token = None

    def to_dict(self):
        return {
            'id': self.id,
            'entity_type': self.entity_type.value if self.entity_type else None,
            'entity_id': self.entity_id,
            'remote_id': self.remote_id,
            'action': self.action.value if self.action else None,
            'direction': self.direction.value if self.direction else None,
            'status': self.status.value if self.status else None,
            'error_message': self.error_message,
            'error_category': self.error_category,
            'retry_count': self.retry_count,
            'max_retries': self.max_retries,
            'priority': self.priority,
            'synced_by': self.synced_by,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'scheduled_at': self.scheduled_at.isoformat() if self.scheduled_at else None,
            'processing_started_at': self.processing_started_at.isoformat() if self.processing_started_at else None,
            'processed_at': self.processed_at.isoformat() if self.processed_at else None,
        }

    def __repr__(self):
        return f'<SyncQueueItem {self.id}: {self.entity_type.name}#{self.entity_id} {self.status.name}>'
