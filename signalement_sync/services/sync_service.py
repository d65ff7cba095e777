"""
Orchestration of the synchronization between the relational store and the
remote document store.

A cycle runs three independent phases: queued work is replayed, local
changes are pushed, and remote documents are pulled back. Each entity is
handled in its own unit of work, so one bad row never blocks the others; a
systemic failure (the remote store is unreachable) stops the current phase
only.
"""

import json
import logging
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from sqlalchemy.exc import SQLAlchemyError
from signalement_sync.errors import (
    MappingError, NotCreatableError, RemoteUnavailableError, SyncError
)
from signalement_sync.extensions import db
from signalement_sync.models.enums import SyncAction, SyncDirection, SyncStatus
from signalement_sync.models.sync_history_repository import SqlAlchemySyncHistoryRepository
from signalement_sync.models.sync_queue_repository import SqlAlchemySyncQueueRepository
from signalement_sync.services.handlers import build_handlers
from signalement_sync.services.sync_result import ItemOutcome, SyncResult

log = logging.getLogger(__name__)

MODES = ('all', 'push', 'pull', 'queue')

def _echo(fields):
    """JSON-safe copy of a document for history and snapshots."""
    if fields is None:
        return None
    return json.loads(json.dumps(fields, default=str))

def _describe(error):
    """Return (message, category, retryable) for a per-item failure."""
    if isinstance(error, SyncError):
        return error.message, error.category, error.retryable
    if isinstance(error, SQLAlchemyError):
        original = getattr(error, 'orig', None)
        return f"Database conflict: {original or error}", "conflict", True
    return f"Unexpected error: {error}", "error", True

class SyncService:
    """Service for syncing local entities with the remote document store."""

    def __init__(self, db_instance=None, gateway=None, handlers=None,
                 queue_repository=None, history_repository=None, actor_id=None,
                 batch_size=50, clock=None, stuck_timeout_minutes=15):
        if gateway is None:
            raise SyncError("A remote store gateway is required", category="configuration", retryable=False)
        self.db = db_instance or db
        self.gateway = gateway
        self._clock = clock or datetime.utcnow
        self.handlers = handlers if handlers is not None else build_handlers(self.db)
        self.queue = queue_repository or SqlAlchemySyncQueueRepository(self.db, clock=self._clock)
        self.history = history_repository or SqlAlchemySyncHistoryRepository(self.db)
        self.actor_id = actor_id
        self.batch_size = batch_size
        self.stuck_timeout = timedelta(minutes=stuck_timeout_minutes)

    @property
    def session(self):
        return self.db.session

    def now(self) -> datetime:
        return self._clock()

    # Entry points

    def run(self, mode: str = 'all', entity_type=None) -> SyncResult:
        """Dispatch a cycle by mode name, optionally limited to one entity type."""
        if mode not in MODES:
            raise ValueError(f"Unknown sync mode '{mode}', expected one of {', '.join(MODES)}")

        if entity_type is not None:
            directions = {
                'all': SyncDirection.BOTH,
                'push': SyncDirection.LOCAL_TO_REMOTE,
                'pull': SyncDirection.REMOTE_TO_LOCAL,
            }
            if mode not in directions:
                raise ValueError(f"Mode '{mode}' cannot be limited to an entity type")
            return self.sync_entity_type(entity_type, directions[mode])

        return {
            'all': self.sync_all,
            'push': self.push_all,
            'pull': self.pull_all,
            'queue': self.process_queue,
        }[mode]()

    def sync_all(self) -> SyncResult:
        """Reclaim stuck work, replay the queue, then push and pull every type."""
        log.info("Starting full sync cycle")
        started = time.monotonic()
        result = SyncResult()

        try:
            reclaimed = self.reclaim_stuck()
            if reclaimed:
                result = result.merge(SyncResult(success_counts={'reclaimed': reclaimed}), 'queue_')
            result = result.merge(self.process_queue(), 'queue_')
            result = result.merge(self.push_all(), 'push_')
            result = result.merge(self.pull_all(), 'pull_')
        except Exception as e:
            self.session.rollback()
            log.error(f"Sync cycle failed: {e}", exc_info=True)
            result = result.merge(SyncResult.failed(f"Sync cycle failed: {e}"))

        duration = time.monotonic() - started
        log.info(
            f"Sync cycle finished in {duration:.2f}s: {result.total_success} succeeded, "
            f"{result.total_errors} failed",
            extra={'sync_result': result.to_dict()}
        )
        return result

    def push_all(self) -> SyncResult:
        outcomes: List[ItemOutcome] = []
        for handler in self.handlers.values():
            try:
                self._push_type(handler, outcomes)
            except Exception as e:
                return self._abort_phase(outcomes, f"Push of {handler.category}", e)
        return SyncResult.from_outcomes(outcomes)

    def pull_all(self) -> SyncResult:
        outcomes: List[ItemOutcome] = []
        for handler in self.handlers.values():
            try:
                self._pull_collection(handler, outcomes)
            except Exception as e:
                return self._abort_phase(outcomes, f"Pull of {handler.collection}", e)
        return SyncResult.from_outcomes(outcomes)

    def sync_entity_type(self, entity_type, direction=SyncDirection.BOTH) -> SyncResult:
        """Run the push and/or pull phase for a single entity type."""
        handler = self.handlers.get(entity_type)
        if handler is None:
            return SyncResult.failed(f"No sync handler for {entity_type.name}")

        if direction == SyncDirection.BOTH:
            push = self.sync_entity_type(entity_type, SyncDirection.LOCAL_TO_REMOTE)
            pull = self.sync_entity_type(entity_type, SyncDirection.REMOTE_TO_LOCAL)
            return SyncResult().merge(push, 'push_').merge(pull, 'pull_')

        outcomes: List[ItemOutcome] = []
        try:
            if direction == SyncDirection.LOCAL_TO_REMOTE:
                self._push_type(handler, outcomes)
            else:
                self._pull_collection(handler, outcomes)
        except Exception as e:
            return self._abort_phase(outcomes, f"Sync of {handler.category}", e)
        return SyncResult.from_outcomes(outcomes)

    def push_entity(self, entity_type, entity_id) -> SyncResult:
        """Push a single entity on demand."""
        handler = self.handlers.get(entity_type)
        if handler is None:
            return SyncResult.failed(f"No sync handler for {entity_type.name}")

        try:
            entity = handler.get(entity_id)
            if entity is None:
                log.warning(f"Cannot push {entity_type.name}#{entity_id}: not found")
                return SyncResult.from_outcomes([ItemOutcome(f"{handler.category}_not_found", False)])
            outcome = self._push_one(handler, entity)
        except Exception as e:
            return self._abort_phase([ItemOutcome(handler.category, False)],
                                     f"Push of {entity_type.name}#{entity_id}", e)
        return SyncResult.from_outcomes([outcome])

    def process_queue(self, limit: Optional[int] = None) -> SyncResult:
        """Claim due queue items and replay them."""
        try:
            claim_token, items = self.queue.claim_next_batch(self.now(), limit or self.batch_size)
        except Exception as e:
            return self._abort_phase([], "Queue", e)
        if not items:
            return SyncResult()

        log.info(f"Processing {len(items)} queued sync items")
        outcomes: List[ItemOutcome] = []
        for index, item in enumerate(items):
            try:
                if not self.queue.is_owned(item, claim_token):
                    log.info(f"Skipping queue item {item.id}: no longer owned ({item.status.name})")
                    continue
                try:
                    outcomes.append(self._replay(item))
                except RemoteUnavailableError:
                    raise
                except Exception as e:
                    outcomes.append(self._replay_crashed(item, e))
            except Exception as e:
                self.session.rollback()
                try:
                    released = self.queue.release(items[index:], claim_token)
                    log.info(f"Released {released} unprocessed queue items")
                except SQLAlchemyError as release_error:
                    self.session.rollback()
                    log.error(f"Could not release queue items, leaving them to the stuck reclaim: {release_error}")
                return self._abort_phase(outcomes, "Queue", e)
        return SyncResult.from_outcomes(outcomes)

    def reclaim_stuck(self) -> int:
        count = self.queue.reclaim_stuck(self.stuck_timeout, self.now())
        if count:
            log.warning(f"Reclaimed {count} stuck queue items")
        return count

    def _abort_phase(self, outcomes, label, error) -> SyncResult:
        """Stop a phase and report ``error`` in the result instead of raising it."""
        self.session.rollback()
        if isinstance(error, RemoteUnavailableError):
            message = f"{label} aborted: {error.message}"
            log.error(message)
        else:
            message = f"{label} failed: {error}"
            log.error(message, exc_info=True)
        return SyncResult.from_outcomes(outcomes, success=False, error_message=message)

    # Push

    def _push_type(self, handler, outcomes):
        blocked = self.queue.blocked_entity_ids(handler.entity_type)
        candidates = handler.push_candidates(exclude_ids=blocked)
        log.info(f"Pushing {len(candidates)} {handler.category} ({len(blocked)} blocked by the queue)")
        for entity in candidates:
            outcomes.append(self._push_one(handler, entity))

    def _push_one(self, handler, entity, queue_item=None) -> ItemOutcome:
        started = time.monotonic()
        entity_id = entity.id
        action = SyncAction.UPDATE if entity.remote_id else SyncAction.CREATE
        document_key = None
        try:
            now = self.now()
            document_key = handler.document_key(entity)
            document = handler.map_to_remote(entity, now)
            document_key = self.gateway.upsert(handler.collection, document_key, document)
            entity.mark_synced(document_key, now)
            self.session.commit()
        except RemoteUnavailableError:
            self.session.rollback()
            raise
        except Exception as e:
            message, category, retryable = _describe(e)
            self._push_failed(handler, entity_id, action, document_key, message, category,
                              retryable, queue_item, started)
            return ItemOutcome(handler.category, False)

        log.debug(f"Pushed {handler.entity_type.name}#{entity_id} to {handler.collection}/{document_key}")
        self.history.record(
            handler.entity_type, entity_id, action, SyncDirection.LOCAL_TO_REMOTE, SyncStatus.SUCCESS,
            remote_id=document_key,
            sync_queue_id=queue_item.id if queue_item else None,
            remote_response=document,
            duration_ms=self._elapsed_ms(started),
            synced_by=self.actor_id,
            synced_at=now,
        )
        if queue_item is not None:
            self.queue.mark_success(queue_item)
        return ItemOutcome(handler.category, True)

    def _push_failed(self, handler, entity_id, action, document_key, message, category,
                     retryable, queue_item, started):
        self.session.rollback()
        log.error(f"Failed to push {handler.entity_type.name}#{entity_id}: {message} [{category}]")

        remote_id = document_key
        entity = handler.get(entity_id)
        if entity is not None:
            entity.mark_sync_failed(message)
            remote_id = entity.remote_id or document_key
            try:
                self.session.commit()
            except SQLAlchemyError as e:
                self.session.rollback()
                log.error(f"Could not record sync failure on {handler.entity_type.name}#{entity_id}: {e}")

        item = queue_item
        if item is None:
            item = self.queue.enqueue(
                handler.entity_type, entity_id, action, SyncDirection.LOCAL_TO_REMOTE,
                remote_id=remote_id, synced_by=self.actor_id,
            )

        self.history.record(
            handler.entity_type, entity_id, action, SyncDirection.LOCAL_TO_REMOTE, SyncStatus.FAILED,
            remote_id=remote_id,
            sync_queue_id=item.id,
            error_message=message,
            error_category=category,
            duration_ms=self._elapsed_ms(started),
            synced_by=self.actor_id,
            synced_at=self.now(),
        )

        # An item coalesced into another worker's claim is left to that worker
        if item.status != SyncStatus.PROCESSING or item is queue_item:
            self.queue.mark_failed(item, message, retryable=retryable, category=category)

    # Pull

    def _pull_collection(self, handler, outcomes):
        try:
            documents = self.gateway.fetch_all(handler.collection)
        except RemoteUnavailableError:
            raise
        except Exception as e:
            message, _, _ = _describe(e)
            log.error(f"Failed to fetch {handler.collection}: {message}")
            outcomes.append(ItemOutcome(f"{handler.category}_fetch", False))
            return

        log.info(f"Pulling {len(documents)} documents from {handler.collection}")
        for document_key, fields in documents:
            outcomes.append(self._pull_one(handler, document_key, fields))

    def _pull_one(self, handler, document_key, fields, queue_item=None) -> ItemOutcome:
        started = time.monotonic()
        entity_id = None
        action = SyncAction.UPDATE
        try:
            now = self.now()
            entity = handler.locate_local(document_key, fields)
            if entity is None:
                action = SyncAction.CREATE
                entity = handler.build_from_remote(document_key, fields, now)
                counter = 'created'
            else:
                entity_id = entity.id
                handler.apply_remote(entity, fields, now)
                counter = 'updated'
            entity.mark_synced(document_key, now)
            self.session.commit()
            entity_id = entity.id
        except Exception as e:
            self.session.rollback()
            message, category, retryable = _describe(e)
            if isinstance(e, NotCreatableError):
                suffix = '_not_found'
                log.info(f"{handler.collection}/{document_key}: {message}")
            elif isinstance(e, MappingError):
                suffix = '_invalid_data'
                log.warning(f"Skipping {handler.collection}/{document_key}: {message}")
            else:
                suffix = ''
                log.error(f"Failed to pull {handler.collection}/{document_key}: {message}", exc_info=True)

            self.history.record(
                handler.entity_type, entity_id, action, SyncDirection.REMOTE_TO_LOCAL, SyncStatus.FAILED,
                remote_id=document_key,
                sync_queue_id=queue_item.id if queue_item else None,
                error_message=message,
                error_category=category,
                remote_response=_echo(fields),
                duration_ms=self._elapsed_ms(started),
                synced_by=self.actor_id,
                synced_at=self.now(),
            )
            if queue_item is not None:
                self.queue.mark_failed(queue_item, message, retryable=retryable, category=category)
            return ItemOutcome(f"{handler.category}{suffix}", False)

        self.history.record(
            handler.entity_type, entity_id, action, SyncDirection.REMOTE_TO_LOCAL, SyncStatus.SUCCESS,
            remote_id=document_key,
            sync_queue_id=queue_item.id if queue_item else None,
            remote_response=_echo(fields),
            duration_ms=self._elapsed_ms(started),
            synced_by=self.actor_id,
            synced_at=now,
        )
        if queue_item is not None:
            self.queue.mark_success(queue_item)
        return ItemOutcome(f"{handler.category}_{counter}", True)

    # Queue replay

    def _replay(self, item) -> ItemOutcome:
        handler = self.handlers.get(item.entity_type)
        if handler is None:
            return self._fail_item(
                item, item.entity_type.value.lower(),
                f"No sync handler for {item.entity_type.name}", "unsupported"
            )

        if item.action == SyncAction.DELETE:
            return self._replay_delete(handler, item)

        if item.direction == SyncDirection.REMOTE_TO_LOCAL:
            if not item.data_snapshot:
                return self._fail_item(item, f"{handler.category}_invalid_data",
                                       f"Queue item {item.id} has no data snapshot to apply", "invalid_data")
            if not isinstance(item.data_snapshot, dict):
                return self._fail_item(item, f"{handler.category}_invalid_data",
                                       f"Queue item {item.id} data snapshot is not a document", "invalid_data")
            entity = handler.get(item.entity_id)
            document_key = (item.remote_id or (handler.document_key(entity) if entity else None)
                            or str(item.entity_id))
            fields = dict(item.data_snapshot)
            fields.setdefault('id', item.entity_id)
            return self._pull_one(handler, document_key, fields, queue_item=item)

        entity = handler.get(item.entity_id)
        if entity is None:
            return self._fail_item(item, f"{handler.category}_not_found",
                                   f"{item.entity_type.name}#{item.entity_id} no longer exists", "invalid_data")
        return self._push_one(handler, entity, queue_item=item)

    def _replay_delete(self, handler, item) -> ItemOutcome:
        started = time.monotonic()
        document_key = item.remote_id
        if not document_key:
            entity = handler.get(item.entity_id)
            document_key = entity.remote_id if entity is not None else None

        if document_key:
            try:
                self.gateway.delete(handler.collection, document_key)
            except RemoteUnavailableError:
                raise
            except SyncError as e:
                log.error(f"Failed to delete {handler.collection}/{document_key}: {e.message}")
                self._record_item(item, SyncStatus.FAILED, document_key, started, e.message, e.category)
                self.queue.mark_failed(item, e.message, retryable=e.retryable, category=e.category)
                return ItemOutcome(f"{handler.category}_deleted", False)
        else:
            log.info(f"{item.entity_type.name}#{item.entity_id} was never pushed, nothing to delete")

        self._record_item(item, SyncStatus.SUCCESS, document_key, started)
        self.queue.mark_success(item)
        return ItemOutcome(f"{handler.category}_deleted", True)

    def _replay_crashed(self, item, error) -> ItemOutcome:
        self.session.rollback()
        handler = self.handlers.get(item.entity_type)
        category = handler.category if handler else item.entity_type.value.lower()
        message, error_category, retryable = _describe(error)
        log.error(f"Queue item {item.id} failed: {message}", exc_info=True)
        self._record_item(item, SyncStatus.FAILED, item.remote_id, time.monotonic(), message, error_category)
        self.queue.mark_failed(item, message, retryable=retryable, category=error_category)
        return ItemOutcome(category, False)

    def _fail_item(self, item, outcome_category, message, error_category) -> ItemOutcome:
        log.error(f"Queue item {item.id} cannot be processed: {message}")
        self._record_item(item, SyncStatus.FAILED, item.remote_id, time.monotonic(), message, error_category)
        self.queue.mark_failed(item, message, retryable=False, category=error_category)
        return ItemOutcome(outcome_category, False)

    def _record_item(self, item, status, remote_id, started, message=None, category=None):
        self.history.record(
            item.entity_type, item.entity_id, item.action, item.direction, status,
            remote_id=remote_id,
            sync_queue_id=item.id,
            error_message=message,
            error_category=category,
            duration_ms=self._elapsed_ms(started),
            synced_by=self.actor_id,
            synced_at=self.now(),
        )

    @staticmethod
    def _elapsed_ms(started):
        return int((time.monotonic() - started) * 1000)

    def status_summary(self) -> Dict[str, Dict[str, int]]:
        """Queue and entity sync counts for operators."""
        entities = {}
        for handler in self.handlers.values():
            rows = handler.repository.get_all()
            entities[handler.category] = {
                'total': len(rows),
                'synced': sum(1 for row in rows if row.synced),
                'with_errors': sum(1 for row in rows if row.last_sync_error),
            }
        return {'queue': self.queue.count_by_status(), 'entities': entities}
