"""Tests for the sync orchestrator"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from signalement_sync.errors import RemoteUnavailableError, SyncError
from signalement_sync.models.enums import EntityType, SyncAction, SyncDirection, SyncStatus
from signalement_sync.models.signalement import Signalement
from signalement_sync.services.sync_service import SyncService

MOBILE_SIGNALEMENT = {
    'description': 'Lampadaire tombé',
    'latitude': -18.9137,
    'longitude': 47.5361,
    'surface': 1.5,
    'budget': 80000,
    'statusCode': 'EN_COURS',
}

def _first_upserts(remote):
    order = []
    for operation, collection, _ in remote.calls:
        if operation == 'upsert' and collection not in order:
            order.append(collection)
    return order

# Push

def test_push_all_writes_documents_under_natural_keys(sync_service, remote, users, clock):
    result = sync_service.push_all()

    assert result.success
    assert dict(result.success_counts) == {'users': 3}
    assert remote.count('users') == 3
    assert remote.get('users', '1')['email'] == 'user1@example.com'
    assert users[0].synced
    assert users[0].remote_id == '1'
    assert users[0].last_synced_at == clock.now

def test_push_is_idempotent(db, sync_service, remote, users):
    sync_service.push_all()
    users[0].name = 'Renamed'
    users[0].synced = False
    db.session.commit()

    result = sync_service.push_all()

    assert dict(result.success_counts) == {'users': 1}
    assert remote.count('users') == 3
    assert remote.get('users', '1')['name'] == 'Renamed'
    assert users[0].remote_id == '1'

def test_full_resync_types_are_pushed_every_cycle(sync_service, remote, entreprise):
    sync_service.push_all()
    result = sync_service.push_all()

    assert dict(result.success_counts) == {'entreprises': 1}
    assert remote.count('entreprises') == 1

def test_push_records_history(sync_service, history_repository, users, clock):
    sync_service.push_all()

    (entry,) = history_repository.for_entity(EntityType.USER, users[0].id)
    assert entry.status == SyncStatus.SUCCESS
    assert entry.action == SyncAction.CREATE
    assert entry.direction == SyncDirection.LOCAL_TO_REMOTE
    assert entry.remote_id == '1'
    assert entry.remote_response['email'] == 'user1@example.com'
    assert entry.synced_at == clock.now

def test_push_failure_is_isolated_and_queued(sync_service, remote, queue_repository,
                                             history_repository, users, clock):
    remote.fail_next(document_key='2', operation='upsert')

    result = sync_service.push_all()

    assert result.success
    assert result.success_counts['users'] == 2
    assert result.error_counts['users'] == 1
    assert remote.get('users', '2') is None

    assert not users[1].synced
    assert users[1].last_sync_error == 'Injected remote failure'

    item = queue_repository.get_active(EntityType.USER, users[1].id)
    assert item.status == SyncStatus.PENDING
    assert item.action == SyncAction.CREATE
    assert item.retry_count == 1
    assert item.scheduled_at == clock.now + timedelta(minutes=5)
    assert item.error_category == 'remote_error'

    (failure,) = history_repository.by_status(SyncStatus.FAILED)
    assert failure.entity_id == users[1].id
    assert failure.sync_queue_id == item.id

def test_retry_exhaustion_blocks_until_requeued(sync_service, remote, queue_repository, users, clock):
    remote.fail_next(document_key='2', operation='upsert')
    sync_service.push_all()
    item = queue_repository.get_active(EntityType.USER, users[1].id)

    # Not due yet
    assert sync_service.process_queue().total_errors == 0

    for minutes in (5, 10, 15):
        clock.advance(minutes=minutes)
        remote.fail_next(document_key='2', operation='upsert')
        result = sync_service.process_queue()
        assert dict(result.error_counts) == {'users': 1}

    assert item.status == SyncStatus.FAILED
    assert item.retry_count == 3

    # The push scan leaves the exhausted entity alone
    clock.advance(hours=1)
    result = sync_service.push_all()
    assert result.total_success == 0
    assert result.total_errors == 0
    assert remote.get('users', '2') is None

    queue_repository.requeue(item.id)
    result = sync_service.process_queue()

    assert dict(result.success_counts) == {'users': 1}
    assert item.status == SyncStatus.SUCCESS
    assert remote.get('users', '2')['name'] == 'User 2'

def test_push_aborts_when_remote_unavailable(sync_service, remote, queue_repository, users):
    remote.fail_next(RemoteUnavailableError('Firestore down'), operation='upsert')

    result = sync_service.push_all()

    assert not result.success
    assert 'Firestore down' in result.error_message
    assert result.total_errors == 0
    assert queue_repository.find() == []
    assert not any(user.synced for user in users)

def test_push_entity(sync_service, remote, users):
    result = sync_service.push_entity(EntityType.USER, users[2].id)

    assert dict(result.success_counts) == {'users': 1}
    assert remote.get('users', '3') is not None

    missing = sync_service.push_entity(EntityType.USER, 999)
    assert dict(missing.error_counts) == {'users_not_found': 1}

def test_dependency_order_and_round_trip(sync_service, remote, signalement):
    result = sync_service.sync_all()

    assert result.success
    assert result.total_errors == 0
    assert _first_upserts(remote) == ['signalement_status', 'users', 'entreprises', 'signalements']
    assert remote.get('signalement_status', 'EN_COURS')['libelle'] == 'En cours'
    assert remote.get('signalements', '1')['statusCode'] == 'NOUVEAU'
    assert result.success_counts['push_signalements'] == 1
    assert result.success_counts['pull_signalements_updated'] == 1
    assert result.success_counts['pull_status_updated'] == 3

# Pull

def test_pull_applies_partial_update(sync_service, remote, users, clock):
    remote.put('users', '1', {'id': users[0].id, 'name': 'Renamed'})

    result = sync_service.pull_all()

    assert dict(result.success_counts) == {'users_updated': 1}
    assert users[0].name == 'Renamed'
    assert users[0].email == 'user1@example.com'
    assert users[0].updated_at == clock.now
    assert users[0].remote_id == '1'
    assert users[0].synced

def test_pull_creates_signalement_from_mobile_document(db, sync_service, remote, users, statuses):
    remote.put('signalements', 'mobile-1', dict(MOBILE_SIGNALEMENT, userId=users[1].id))

    result = sync_service.pull_all()

    assert dict(result.success_counts) == {'signalements_created': 1}
    created = db.session.query(Signalement).filter_by(remote_id='mobile-1').one()
    assert created.user is users[1]
    assert created.status is statuses['EN_COURS']
    assert created.synced

    again = sync_service.pull_all()
    assert dict(again.success_counts) == {'signalements_updated': 1}
    assert db.session.query(Signalement).count() == 1

def test_pull_unknown_status_code_is_invalid_data(db, sync_service, remote, history_repository, signalement):
    remote.put('signalements', '1', {'id': signalement.id, 'statusCode': 'ARCHIVE', 'description': 'changed'})
    remote.put('signalements', 'mobile-2', dict(MOBILE_SIGNALEMENT, userId=1, statusCode='ARCHIVE'))

    result = sync_service.pull_all()

    assert dict(result.error_counts) == {'signalements_invalid_data': 2}
    assert db.session.query(Signalement).count() == 1
    assert signalement.description == 'Nid de poule profond'
    assert signalement.status.code == 'NOUVEAU'

    failures = history_repository.by_status(SyncStatus.FAILED)
    assert {f.remote_id for f in failures} == {'1', 'mobile-2'}
    assert all(f.error_category == 'invalid_data' for f in failures)

def test_pull_dangling_user_reference(db, sync_service, remote, users, statuses):
    remote.put('signalements', 'mobile-3', dict(MOBILE_SIGNALEMENT, userId=999))

    result = sync_service.pull_all()

    assert dict(result.error_counts) == {'signalements_invalid_data': 1}
    assert db.session.query(Signalement).count() == 0

def test_pull_reports_uncreatable_and_creates_entreprise(sync_service, remote, db):
    remote.put('users', 'ghost', {'name': 'Ghost', 'email': 'ghost@example.com'})
    remote.put('entreprises', 'e-1', {'nom': 'Pavage Plus', 'specialites': ['voirie']})

    result = sync_service.pull_all()

    assert dict(result.success_counts) == {'entreprises_created': 1}
    assert dict(result.error_counts) == {'users_not_found': 1}

def test_pull_fetch_failure_is_counted(sync_service, remote, users):
    remote.fail_next(operation='fetch_all')

    result = sync_service.pull_all()

    assert result.success
    assert result.error_counts['status_fetch'] == 1

# Queue

def test_process_queue_skips_cancelled_items(sync_service, remote, queue_repository, users):
    item = queue_repository.enqueue(EntityType.USER, users[0].id, SyncAction.UPDATE)
    queue_repository.cancel(item.id)

    result = sync_service.process_queue()

    assert result.total_success == 0
    assert remote.count('users') == 0
    assert item.status == SyncStatus.CANCELLED

def test_process_queue_skips_items_claimed_elsewhere(sync_service, remote, queue_repository, users, clock):
    queue_repository.enqueue(EntityType.USER, users[0].id, SyncAction.UPDATE)
    queue_repository.claim_next_batch(clock.now, claim_token='other-worker')

    result = sync_service.process_queue()

    assert result.total_success == 0
    assert remote.count('users') == 0

def test_process_queue_skips_lost_claims(sync_service, remote, queue_repository, users, mocker):
    queue_repository.enqueue(EntityType.USER, users[0].id, SyncAction.UPDATE)
    mocker.patch.object(queue_repository, 'is_owned', return_value=False)

    result = sync_service.process_queue()

    assert result.total_success == 0
    assert remote.count('users') == 0

def test_process_queue_releases_items_when_remote_unavailable(sync_service, remote, queue_repository, users):
    items = [queue_repository.enqueue(EntityType.USER, user.id, SyncAction.UPDATE) for user in users]
    remote.fail_next(RemoteUnavailableError('Firestore down'), operation='upsert')

    result = sync_service.process_queue()

    assert not result.success
    assert remote.count('users') == 0
    for item in items:
        assert item.status == SyncStatus.PENDING
        assert item.retry_count == 0
        assert item.claim_token is None

def test_sync_all_reclaims_stuck_items(sync_service, queue_repository, users, clock):
    item = queue_repository.enqueue(EntityType.USER, users[0].id, SyncAction.UPDATE)
    queue_repository.claim_next_batch(clock.now, claim_token='crashed-worker')
    clock.advance(minutes=16)

    result = sync_service.sync_all()

    assert result.success_counts['queue_reclaimed'] == 1
    assert result.success_counts['queue_users'] == 1
    assert result.success_counts['push_users'] == 2
    assert item.status == SyncStatus.SUCCESS

def test_replay_remote_snapshot(sync_service, queue_repository, users):
    item = queue_repository.enqueue(
        EntityType.USER, users[0].id, SyncAction.UPDATE, SyncDirection.REMOTE_TO_LOCAL,
        data_snapshot={'name': 'From mobile'},
    )

    result = sync_service.process_queue()

    assert dict(result.success_counts) == {'users_updated': 1}
    assert users[0].name == 'From mobile'
    assert users[0].remote_id == '1'
    assert item.status == SyncStatus.SUCCESS

def test_replay_remote_without_snapshot_fails(sync_service, queue_repository, users):
    item = queue_repository.enqueue(
        EntityType.USER, users[0].id, SyncAction.UPDATE, SyncDirection.REMOTE_TO_LOCAL
    )

    result = sync_service.process_queue()

    assert dict(result.error_counts) == {'users_invalid_data': 1}
    assert item.status == SyncStatus.FAILED

def test_replay_delete(sync_service, remote, queue_repository, users):
    sync_service.push_all()
    item = queue_repository.enqueue(EntityType.USER, users[0].id, SyncAction.DELETE, remote_id='1')
    never_pushed = queue_repository.enqueue(EntityType.ENTREPRISE, 99, SyncAction.DELETE)

    result = sync_service.process_queue()

    assert dict(result.success_counts) == {'users_deleted': 1, 'entreprises_deleted': 1}
    assert remote.get('users', '1') is None
    assert item.status == SyncStatus.SUCCESS
    assert never_pushed.status == SyncStatus.SUCCESS
    assert ('delete', 'entreprises', None) not in remote.calls

def test_replay_unsupported_entity_type(sync_service, queue_repository):
    item = queue_repository.enqueue(EntityType.SESSION, 1, SyncAction.UPDATE)

    result = sync_service.process_queue()

    assert dict(result.error_counts) == {'session': 1}
    assert item.status == SyncStatus.FAILED
    assert item.error_category == 'unsupported'

def test_replay_push_for_missing_entity(sync_service, queue_repository, users):
    item = queue_repository.enqueue(EntityType.USER, 999, SyncAction.UPDATE)

    result = sync_service.process_queue()

    assert dict(result.error_counts) == {'users_not_found': 1}
    assert item.status == SyncStatus.FAILED

# Entry points

def test_run_dispatch(sync_service, remote, users):
    with pytest.raises(ValueError):
        sync_service.run('everything')
    with pytest.raises(ValueError):
        sync_service.run('queue', EntityType.USER)

    result = sync_service.run('push', EntityType.USER)
    assert dict(result.success_counts) == {'users': 3}

    both = sync_service.run('all', EntityType.USER)
    assert dict(both.success_counts) == {'pull_users_updated': 3}

def test_sync_entity_type_without_handler(sync_service):
    result = sync_service.sync_entity_type(EntityType.SESSION)

    assert not result.success

def test_status_summary(sync_service, remote, queue_repository, users):
    remote.fail_next(document_key='2', operation='upsert')
    sync_service.push_all()

    summary = sync_service.status_summary()

    assert summary['queue']['PENDING'] == 1
    assert summary['entities']['users'] == {'total': 3, 'synced': 2, 'with_errors': 1}

def test_gateway_is_required(db):
    with pytest.raises(SyncError):
        SyncService(db, None)

# Unexpected errors

def test_run_pull_counts_undecodable_collections(sync_service, remote, users):
    remote.fail_next(ValueError('Unsupported Firestore value'), operation='fetch_all')

    result = sync_service.run('pull')

    assert result.success
    assert result.error_counts['status_fetch'] == 1

def test_sync_entity_type_counts_undecodable_collection(sync_service, remote, users):
    remote.fail_next(ValueError('Unsupported Firestore value'), operation='fetch_all')

    result = sync_service.sync_entity_type(EntityType.USER, SyncDirection.REMOTE_TO_LOCAL)

    assert dict(result.error_counts) == {'users_fetch': 1}

def test_run_push_reports_database_errors(sync_service, queue_repository, users, mocker):
    mocker.patch.object(queue_repository, 'blocked_entity_ids', side_effect=SQLAlchemyError('database gone'))

    result = sync_service.run('push')

    assert not result.success
    assert 'database gone' in result.error_message

def test_sync_entity_type_reports_database_errors(sync_service, queue_repository, users, mocker):
    mocker.patch.object(queue_repository, 'blocked_entity_ids', side_effect=SQLAlchemyError('database gone'))

    result = sync_service.sync_entity_type(EntityType.USER, SyncDirection.LOCAL_TO_REMOTE)

    assert not result.success
    assert 'database gone' in result.error_message

def test_pull_all_reports_unexpected_errors(sync_service, remote, users, mocker):
    mocker.patch.object(sync_service.history, 'record', side_effect=SQLAlchemyError('history table locked'))
    remote.put('users', '1', {'id': 1, 'name': 'Remote'})

    result = sync_service.pull_all()

    assert not result.success
    assert 'history table locked' in result.error_message

def test_push_entity_reports_unexpected_errors(sync_service, users, mocker):
    mocker.patch.object(sync_service.handlers[EntityType.USER], 'get', side_effect=SQLAlchemyError('database gone'))

    result = sync_service.push_entity(EntityType.USER, users[0].id)

    assert not result.success
    assert dict(result.error_counts) == {'users': 1}
    assert 'database gone' in result.error_message

def test_process_queue_reports_claim_errors(sync_service, queue_repository, mocker):
    mocker.patch.object(queue_repository, 'claim_next_batch', side_effect=SQLAlchemyError('database locked'))

    result = sync_service.run('queue')

    assert not result.success
    assert 'database locked' in result.error_message

def test_malformed_snapshot_does_not_block_the_batch(sync_service, remote, queue_repository, users):
    bad = queue_repository.enqueue(
        EntityType.USER, users[0].id, SyncAction.UPDATE, SyncDirection.REMOTE_TO_LOCAL,
        data_snapshot=['name', 'x'],
    )
    good = queue_repository.enqueue(EntityType.USER, users[1].id, SyncAction.UPDATE)

    result = sync_service.process_queue()

    assert result.success
    assert dict(result.error_counts) == {'users_invalid_data': 1}
    assert dict(result.success_counts) == {'users': 1}
    assert bad.status == SyncStatus.FAILED
    assert bad.error_category == 'invalid_data'
    assert good.status == SyncStatus.SUCCESS

def test_unexpected_replay_error_fails_only_that_item(sync_service, remote, queue_repository, users, mocker):
    crashing = queue_repository.enqueue(EntityType.USER, users[0].id, SyncAction.DELETE, remote_id='1')
    good = queue_repository.enqueue(EntityType.USER, users[1].id, SyncAction.UPDATE)
    mocker.patch.object(sync_service, '_replay_delete', side_effect=RuntimeError('boom'))

    result = sync_service.process_queue()

    assert result.success
    assert dict(result.error_counts) == {'users': 1}
    assert dict(result.success_counts) == {'users': 1}
    assert crashing.status == SyncStatus.PENDING
    assert crashing.retry_count == 1
    assert crashing.error_category == 'error'
    assert good.status == SyncStatus.SUCCESS
