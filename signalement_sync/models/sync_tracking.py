"""Sync bookkeeping columns shared by every synchronized entity."""

from datetime import datetime
from signalement_sync.extensions import db

class SyncTrackedMixin:
    """Columns the sync engine owns on a domain entity.

    ``remote_id`` is the key of the mirrored document, set on the first
    successful push or when a pulled document is matched to the row.
    """

    remote_id = db.Column(db.String(128), unique=True, nullable=True, index=True)
    synced = db.Column(db.Boolean, nullable=False, default=False, index=True)
    last_synced_at = db.Column(db.DateTime, nullable=True)
    last_sync_error = db.Column(db.Text, nullable=True)

    def mark_synced(self, remote_id, when=None):
        """Record a successful synchronization with the given document key."""
        self.remote_id = remote_id
        self.synced = True
        self.last_synced_at = when or datetime.utcnow()
        self.last_sync_error = None

    def mark_sync_failed(self, error):
        """Keep the entity a push candidate and remember why it failed."""
        self.synced = False
        self.last_sync_error = error
