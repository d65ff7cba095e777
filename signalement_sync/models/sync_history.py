from datetime import datetime
from sqlalchemy import event
from signalement_sync.extensions import db
from signalement_sync.models.enums import (
    EntityType, SyncAction, SyncDirection, SyncStatus
)

class SyncHistory(db.Model):
    """Append-only outcome of one sync attempt."""

    __tablename__ = "sync_history"
    __table_args__ = (
        db.Index('idx_sync_history_entity', 'entity_type', 'entity_id', 'synced_at'),
        db.Index('idx_sync_history_status', 'status', 'synced_at'),
    )

    id = db.Column(db.Integer, primary_key=True)
    sync_queue_id = db.Column(db.Integer, nullable=True)
    entity_type = db.Column(db.Enum(EntityType, native_enum=False, length=50), nullable=False)
    entity_id = db.Column(db.Integer, nullable=True)  # None when a remote document never resolved locally
    remote_id = db.Column(db.String(128), nullable=True)
    action = db.Column(db.Enum(SyncAction, native_enum=False, length=20), nullable=False)
    direction = db.Column(db.Enum(SyncDirection, native_enum=False, length=20), nullable=False)
    status = db.Column(db.Enum(SyncStatus, native_enum=False, length=20), nullable=False)
    error_message = db.Column(db.Text, nullable=True)
    error_category = db.Column(db.String(50), nullable=True)
    remote_response = db.Column(db.JSON, nullable=True)
    duration_ms = db.Column(db.Integer, nullable=True)
    synced_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    synced_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'sync_queue_id': self.sync_queue_id,
            'entity_type': self.entity_type.value,
            'entity_id': self.entity_id,
            'remote_id': self.remote_id,
            'action': self.action.value,
            'direction': self.direction.value,
            'status': self.status.value,
            'error_message': self.error_message,
            'error_category': self.error_category,
            'remote_response': self.remote_response,
            'duration_ms': self.duration_ms,
            'synced_by': self.synced_by,
            'synced_at': self.synced_at.isoformat() if self.synced_at else None,
        }

    def __repr__(self):
        return f'<SyncHistory {self.id}: {self.entity_type.name}#{self.entity_id} {self.status.name}>'


@event.listens_for(SyncHistory, 'before_update')
def _reject_history_update(mapper, connection, target):
    raise ValueError(f"Sync history records are immutable (id={target.id})")
