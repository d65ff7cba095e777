"""
Repository for the durable sync work queue.

The queue holds at most one active (PENDING or PROCESSING) item per
(entity_type, entity_id). Enqueue folds new work into the active item, and
workers take ownership of items through a conditional update so that two
concurrent cycles never process the same item.
"""

import logging
import uuid
from datetime import datetime, timedelta
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from signalement_sync.errors import QueueError
from signalement_sync.extensions import db
from signalement_sync.models.enums import (
    ACTIVE_STATUSES, SyncAction, SyncDirection, SyncStatus
)
from signalement_sync.models.sync_queue import (
    DEFAULT_MAX_RETRIES, DEFAULT_PRIORITY, SyncQueueItem
)

log = logging.getLogger(__name__)

class SqlAlchemySyncQueueRepository:
    """SQL Alchemy implementation of the sync queue."""

    def __init__(self, db_instance=None, max_retries=DEFAULT_MAX_RETRIES,
                 retry_delay_minutes=5, clock=None):
        """Initialize the repository.

        Args:
            db_instance: Flask-SQLAlchemy database instance
            max_retries: Retry budget given to newly enqueued items
            retry_delay_minutes: Base delay of the linear retry backoff
            clock: Callable returning the current naive UTC datetime
        """
        self.db = db_instance or db
        self.max_retries = max_retries
        self.retry_delay = timedelta(minutes=retry_delay_minutes)
        self._clock = clock or datetime.utcnow

    @property
    def session(self):
        return self.db.session

    def now(self):
        return self._clock()

    def get_by_id(self, item_id):
        return self.session.get(SyncQueueItem, item_id)

    def get_active(self, entity_type, entity_id):
        """Return the PENDING or PROCESSING item for an entity, if any."""
        query = (
            select(SyncQueueItem)
            .where(
                SyncQueueItem.entity_type == entity_type,
                SyncQueueItem.entity_id == entity_id,
                SyncQueueItem.status.in_(ACTIVE_STATUSES),
            )
            .order_by(SyncQueueItem.id)
        )
        return self.session.execute(query).scalars().first()

    def enqueue(self, entity_type, entity_id, action, direction=SyncDirection.LOCAL_TO_REMOTE,
                remote_id=None, data_snapshot=None, priority=DEFAULT_PRIORITY,
                synced_by=None, scheduled_at=None):
        """Add work for an entity, folding it into the active item if one exists.

        Returns:
            SyncQueueItem: The new item or the active item it was merged into
        """
        existing = self.get_active(entity_type, entity_id)
        if existing is not None:
            return self._coalesce(existing, action, direction, remote_id,
                                  data_snapshot, priority, synced_by)

        now = self.now()
        item = SyncQueueItem(
            entity_type=entity_type,
            entity_id=entity_id,
            remote_id=remote_id,
            action=action,
            direction=direction,
            status=SyncStatus.PENDING,
            retry_count=0,
            max_retries=self.max_retries,
            priority=priority,
            data_snapshot=data_snapshot,
            synced_by=synced_by,
            created_at=now,
            scheduled_at=scheduled_at or now,
        )
        self.session.add(item)
        try:
            self.session.commit()
        except IntegrityError:
            # Another writer took the active slot between our read and insert
            self.session.rollback()
            existing = self.get_active(entity_type, entity_id)
            if existing is None:
                raise
            log.info(f"Concurrent enqueue for {entity_type.name}#{entity_id}, merging into item {existing.id}")
            return self._coalesce(existing, action, direction, remote_id,
                                  data_snapshot, priority, synced_by)

        log.debug(f"Enqueued {action.name} {direction.name} for {entity_type.name}#{entity_id} (item {item.id})")
        return item

    def _coalesce(self, item, action, direction, remote_id, data_snapshot, priority, synced_by):
        if SyncAction.DELETE in (item.action, action):
            item.action = SyncAction.DELETE
        elif SyncAction.CREATE in (item.action, action):
            item.action = SyncAction.CREATE
        else:
            item.action = SyncAction.UPDATE

        if item.direction != direction:
            item.direction = SyncDirection.BOTH
        if data_snapshot is not None:
            item.data_snapshot = data_snapshot
        if remote_id and not item.remote_id:
            item.remote_id = remote_id
        if synced_by is not None:
            item.synced_by = synced_by
        item.priority = min(item.priority, priority)

        self.session.commit()
        log.debug(f"Coalesced work into item {item.id} ({item.action.name} {item.direction.name})")
        return item

    def claim_next_batch(self, now=None, limit=50, claim_token=None):
        """Take ownership of up to ``limit`` due PENDING items.

        Each item is claimed with its own conditional update; an item another
        worker claimed first updates zero rows and is left out.

        Returns:
            tuple: (claim_token, list of claimed SyncQueueItem)
        """
        now = now or self.now()
        claim_token = claim_token or uuid.uuid4().hex

        candidates = self.session.execute(
            select(SyncQueueItem.id)
            .where(
                SyncQueueItem.status == SyncStatus.PENDING,
                SyncQueueItem.scheduled_at <= now,
            )
            .order_by(SyncQueueItem.priority, SyncQueueItem.scheduled_at, SyncQueueItem.id)
            .limit(limit)
        ).scalars().all()

        claimed_ids = []
        for item_id in candidates:
            result = self.session.execute(
                update(SyncQueueItem)
                .where(
                    SyncQueueItem.id == item_id,
                    SyncQueueItem.status == SyncStatus.PENDING,
                )
                .values(
                    status=SyncStatus.PROCESSING,
                    processing_started_at=now,
                    claim_token=claim_token,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed_ids.append(item_id)
        self.session.commit()

        if not claimed_ids:
            return claim_token, []

        items = self.session.execute(
            select(SyncQueueItem)
            .where(SyncQueueItem.id.in_(claimed_ids))
            .order_by(SyncQueueItem.priority, SyncQueueItem.scheduled_at, SyncQueueItem.id)
            .execution_options(populate_existing=True)
        ).scalars().all()

        if len(claimed_ids) < len(candidates):
            log.info(f"Claimed {len(claimed_ids)} of {len(candidates)} due items, the rest were taken by another worker")
        return claim_token, items

    def is_owned(self, item, claim_token):
        """Reload an item and check it is still PROCESSING under our claim."""
        self.session.refresh(item)
        return item.status == SyncStatus.PROCESSING and item.claim_token == claim_token

    def mark_success(self, item):
        item.mark_success(self.now())
        self.session.commit()
        return item

    def mark_failed(self, item, error, retryable=True, category=None):
        """Record a failed attempt and reschedule it while retries remain.

        Returns:
            bool: True if the item was rescheduled, False if it is now terminal
        """
        now = self.now()
        item.mark_failed(error, category, now)

        rescheduled = bool(retryable) and item.can_retry()
        if rescheduled:
            item.schedule_retry(self.retry_delay, now)
            log.warning(
                f"Queue item {item.id} ({item.entity_type.name}#{item.entity_id}) failed: {error}; "
                f"retry {item.retry_count}/{item.max_retries} at {item.scheduled_at.isoformat()}"
            )
        else:
            log.error(
                f"Queue item {item.id} ({item.entity_type.name}#{item.entity_id}) failed permanently "
                f"after {item.retry_count} retries: {error}"
            )

        self.session.commit()
        return rescheduled

    def release(self, items, claim_token):
        """Return still-owned items to PENDING without consuming a retry."""
        released = 0
        for item in items:
            self.session.refresh(item)
            if item.status == SyncStatus.PROCESSING and item.claim_token == claim_token:
                item.release()
                released += 1
        self.session.commit()
        return released

    def find_stuck(self, timeout, now=None):
        """PROCESSING items whose claim is older than ``timeout``."""
        cutoff = (now or self.now()) - timeout
        query = (
            select(SyncQueueItem)
            .where(
                SyncQueueItem.status == SyncStatus.PROCESSING,
                SyncQueueItem.processing_started_at < cutoff,
            )
            .order_by(SyncQueueItem.processing_started_at)
        )
        return self.session.execute(query).scalars().all()

    def reclaim_stuck(self, timeout, now=None):
        stuck = self.find_stuck(timeout, now)
        for item in stuck:
            log.warning(
                f"Reclaiming stuck queue item {item.id} ({item.entity_type.name}#{item.entity_id}), "
                f"processing since {item.processing_started_at.isoformat()}"
            )
            item.release()
        self.session.commit()
        return len(stuck)

    def cancel(self, item_id):
        item = self.get_by_id(item_id)
        if item is None:
            raise QueueError(f"Sync queue item {item_id} not found")
        if item.status != SyncStatus.PENDING:
            raise QueueError(f"Only PENDING items can be cancelled (item {item_id} is {item.status.name})")

        item.status = SyncStatus.CANCELLED
        item.processed_at = self.now()
        item.claim_token = None
        self.session.commit()
        log.info(f"Cancelled queue item {item_id}")
        return item

    def requeue(self, item_id):
        """Give a FAILED or CANCELLED item a fresh retry budget."""
        item = self.get_by_id(item_id)
        if item is None:
            raise QueueError(f"Sync queue item {item_id} not found")
        if item.status not in (SyncStatus.FAILED, SyncStatus.CANCELLED):
            raise QueueError(f"Only FAILED or CANCELLED items can be requeued (item {item_id} is {item.status.name})")

        active = self.get_active(item.entity_type, item.entity_id)
        if active is not None:
            raise QueueError(
                f"{item.entity_type.name}#{item.entity_id} already has active queue item {active.id}"
            )

        item.status = SyncStatus.PENDING
        item.retry_count = 0
        item.scheduled_at = self.now()
        item.processing_started_at = None
        item.processed_at = None
        item.error_message = None
        item.error_category = None
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise QueueError(f"Could not requeue item {item_id}: entity already has active work") from e

        log.info(f"Requeued queue item {item_id}")
        return item

    def _latest_failed_ids(self, entity_type):
        latest = (
            select(func.max(SyncQueueItem.id))
            .where(SyncQueueItem.entity_type == entity_type)
            .group_by(SyncQueueItem.entity_id)
        )
        return select(SyncQueueItem.entity_id).where(
            SyncQueueItem.id.in_(latest),
            SyncQueueItem.status == SyncStatus.FAILED,
        )

    def blocked_entity_ids(self, entity_type):
        """Ids of entities the push scan must skip.

        An entity is blocked while it has active queue work, or when its most
        recent queue item failed permanently and awaits a manual requeue.
        """
        active = self.session.execute(
            select(SyncQueueItem.entity_id).where(
                SyncQueueItem.entity_type == entity_type,
                SyncQueueItem.status.in_(ACTIVE_STATUSES),
            )
        ).scalars().all()
        failed = self.session.execute(self._latest_failed_ids(entity_type)).scalars().all()
        return set(active) | set(failed)

    def is_blocked(self, entity_type, entity_id):
        if self.get_active(entity_type, entity_id) is not None:
            return True
        latest = self.session.execute(
            select(SyncQueueItem)
            .where(
                SyncQueueItem.entity_type == entity_type,
                SyncQueueItem.entity_id == entity_id,
            )
            .order_by(SyncQueueItem.id.desc())
        ).scalars().first()
        return latest is not None and latest.status == SyncStatus.FAILED

    def find(self, status=None, entity_type=None, entity_id=None, since=None, until=None, limit=None):
        """Filter queue items, most recent first."""
        query = select(SyncQueueItem)
        if status is not None:
            query = query.where(SyncQueueItem.status == status)
        if entity_type is not None:
            query = query.where(SyncQueueItem.entity_type == entity_type)
        if entity_id is not None:
            query = query.where(SyncQueueItem.entity_id == entity_id)
        if since is not None:
            query = query.where(SyncQueueItem.created_at >= since)
        if until is not None:
            query = query.where(SyncQueueItem.created_at <= until)
        query = query.order_by(SyncQueueItem.created_at.desc(), SyncQueueItem.id.desc())
        if limit:
            query = query.limit(limit)
        return self.session.execute(query).scalars().all()

    def count_by_status(self):
        counts = {status.value: 0 for status in SyncStatus}
        rows = self.session.execute(
            select(SyncQueueItem.status, func.count(SyncQueueItem.id)).group_by(SyncQueueItem.status)
        ).all()
        for status, count in rows:
            counts[status.value] = count
        return counts
