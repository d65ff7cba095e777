"""
Repository for sync history database operations.

History rows are append-only: this repository inserts and reads them, and
only the retention helper removes them.
"""

import logging
from datetime import datetime, timedelta
from sqlalchemy import desc, func
from sqlalchemy.exc import SQLAlchemyError
from signalement_sync.extensions import db
from signalement_sync.models.sync_history import SyncHistory

log = logging.getLogger(__name__)

class SqlAlchemySyncHistoryRepository:
    """SQL Alchemy implementation of sync history repository."""

    def __init__(self, db_instance=None):
        """Initialize repository with database instance.

        Args:
            db_instance: Flask-SQLAlchemy database instance
        """
        self.db = db_instance or db

    def record(self, entity_type, entity_id, action, direction, status,
               remote_id=None, sync_queue_id=None, error_message=None,
               error_category=None, remote_response=None, duration_ms=None,
               synced_by=None, synced_at=None):
        """Append one sync outcome.

        Args:
            entity_type: EntityType of the synchronized entity
            entity_id: Local id, or None when a remote document never resolved
            action: SyncAction performed
            direction: SyncDirection of the attempt
            status: SyncStatus.SUCCESS or SyncStatus.FAILED
            remote_id: Document key on the remote side
            sync_queue_id: Queue item that drove the attempt, if any
            error_message: Failure message
            error_category: Failure category
            remote_response: JSON-serializable echo of what was exchanged
            duration_ms: Wall time of the attempt
            synced_by: Actor id
            synced_at: When the attempt finished (default: now)

        Returns:
            SyncHistory: Created record or None if failed
        """
        try:
            entry = SyncHistory(
                entity_type=entity_type,
                entity_id=entity_id,
                remote_id=remote_id,
                action=action,
                direction=direction,
                status=status,
                sync_queue_id=sync_queue_id,
                error_message=error_message,
                error_category=error_category,
                remote_response=remote_response,
                duration_ms=duration_ms,
                synced_by=synced_by,
                synced_at=synced_at or datetime.utcnow(),
            )
            self.db.session.add(entry)
            self.db.session.commit()
            return entry

        except SQLAlchemyError as e:
            log.error(f"Error adding sync history record for {entity_type.name}#{entity_id}: {e}")
            self.db.session.rollback()
            return None

    def for_entity(self, entity_type, entity_id, limit=None):
        """Get the history of one entity, most recent first."""
        query = SyncHistory.query.filter_by(
            entity_type=entity_type, entity_id=entity_id
        ).order_by(desc(SyncHistory.synced_at), desc(SyncHistory.id))
        if limit:
            query = query.limit(limit)
        return query.all()

    def by_status(self, status, limit=None):
        query = SyncHistory.query.filter_by(status=status).order_by(
            desc(SyncHistory.synced_at), desc(SyncHistory.id)
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def recent(self, limit=20):
        return SyncHistory.query.order_by(
            desc(SyncHistory.synced_at), desc(SyncHistory.id)
        ).limit(limit).all()

    def in_range(self, start_date, end_date):
        """Get sync records within a date range.

        Args:
            start_date: Start date
            end_date: End date

        Returns:
            list: Sync records in range, most recent first
        """
        return SyncHistory.query.filter(
            SyncHistory.synced_at >= start_date,
            SyncHistory.synced_at <= end_date
        ).order_by(desc(SyncHistory.synced_at)).all()

    def count_by_status_since(self, status, since):
        return self.db.session.query(func.count(SyncHistory.id)).filter(
            SyncHistory.status == status,
            SyncHistory.synced_at >= since
        ).scalar()

    def older_than(self, cutoff_date):
        return SyncHistory.query.filter(
            SyncHistory.synced_at < cutoff_date
        ).order_by(SyncHistory.synced_at).all()

    def prune(self, days_to_keep=30, now=None):
        """Remove old sync history records.

        Args:
            days_to_keep: Number of days of history to retain
            now: Reference time (default: now)

        Returns:
            int: Number of records deleted
        """
        try:
            cutoff_date = (now or datetime.utcnow()) - timedelta(days=days_to_keep)

            count = SyncHistory.query.filter(
                SyncHistory.synced_at < cutoff_date
            ).delete(synchronize_session=False)

            self.db.session.commit()
            log.info(f"Pruned {count} sync history records older than {cutoff_date.isoformat()}")
            return count

        except SQLAlchemyError as e:
            log.error(f"Error clearing old sync records: {e}")
            self.db.session.rollback()
            return 0
