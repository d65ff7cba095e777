import json
from datetime import datetime, timedelta
import click
from flask import current_app
from flask.cli import with_appcontext

from signalement_sync.errors import QueueError
from signalement_sync.extensions import db
from signalement_sync.models.enums import EntityType, SyncAction, SyncDirection, SyncStatus
from signalement_sync.models.signalement_status import DEFAULT_STATUSES, SignalementStatus
from signalement_sync.services.container import container

def _choice(enum_class):
    return click.Choice([member.name for member in enum_class], case_sensitive=False)

def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))

@click.group('sync')
def sync_cli():
    """Synchronization with the remote document store."""

@sync_cli.command('run')
@click.option('--mode', type=click.Choice(['all', 'push', 'pull', 'queue']), default='all',
              help='Which phases to run')
@click.option('--entity-type', type=_choice(EntityType), help='Limit the cycle to one entity type')
@click.option('--actor', 'actor_id', type=int, help='User id recorded as the initiator')
@click.option('--background', is_flag=True, help='Queue the cycle on the task executor and wait for it')
@with_appcontext
def run_command(mode, entity_type, actor_id, background):
    """Run a sync cycle."""
    entity_type = EntityType[entity_type.upper()] if entity_type else None
    if entity_type is not None and mode == 'queue':
        raise click.BadParameter("--entity-type cannot be combined with --mode queue")

    if background:
        from signalement_sync.tasks.sync_tasks import queue_sync_cycle
        result = queue_sync_cycle(mode, entity_type, actor_id).result()
    else:
        sync_service = container().create_sync_service(actor_id=actor_id)
        result = sync_service.run(mode, entity_type)

    _echo_json(result.to_dict())
    if not result.success:
        raise click.ClickException(result.error_message or "Sync cycle failed")

@sync_cli.command('enqueue')
@click.argument('entity_type', type=_choice(EntityType))
@click.argument('entity_id', type=int)
@click.option('--action', type=_choice(SyncAction), default='UPDATE', help='Action to replay')
@click.option('--direction', type=_choice(SyncDirection), default='LOCAL_TO_REMOTE', help='Sync direction')
@click.option('--priority', type=int, default=5, help='Lower runs sooner')
@click.option('--remote-id', help='Key of the remote document')
@click.option('--snapshot', help='JSON document to apply for REMOTE_TO_LOCAL items')
@click.option('--actor', 'actor_id', type=int, help='User id recorded as the initiator')
@with_appcontext
def enqueue_command(entity_type, entity_id, action, direction, priority, remote_id, snapshot, actor_id):
    """Add work for one entity to the sync queue."""
    try:
        data_snapshot = json.loads(snapshot) if snapshot else None
    except ValueError as e:
        raise click.BadParameter(f"--snapshot is not valid JSON: {e}")
    if data_snapshot is not None and not isinstance(data_snapshot, dict):
        raise click.BadParameter("--snapshot must be a JSON object")

    item = container().get('queue_repository').enqueue(
        EntityType[entity_type.upper()],
        entity_id,
        SyncAction[action.upper()],
        SyncDirection[direction.upper()],
        remote_id=remote_id,
        data_snapshot=data_snapshot,
        priority=priority,
        synced_by=actor_id,
    )
    click.echo(f"Queue item {item.id} is {item.status.name} ({item.action.name} {item.direction.name})")

@sync_cli.command('cancel')
@click.argument('item_id', type=int)
@with_appcontext
def cancel_command(item_id):
    """Cancel a PENDING queue item."""
    try:
        container().get('queue_repository').cancel(item_id)
    except QueueError as e:
        raise click.ClickException(e.message)
    click.echo(f"Queue item {item_id} cancelled")

@sync_cli.command('requeue')
@click.argument('item_id', type=int)
@with_appcontext
def requeue_command(item_id):
    """Retry a FAILED or CANCELLED queue item with a fresh retry budget."""
    try:
        container().get('queue_repository').requeue(item_id)
    except QueueError as e:
        raise click.ClickException(e.message)
    click.echo(f"Queue item {item_id} requeued")

@sync_cli.command('reclaim')
@click.option('--timeout', type=int, help='Minutes after which a PROCESSING item is considered stuck')
@with_appcontext
def reclaim_command(timeout):
    """Return stuck PROCESSING items to PENDING."""
    minutes = timeout or current_app.config.get('SYNC_STUCK_TIMEOUT_MINUTES', 15)
    count = container().get('queue_repository').reclaim_stuck(timedelta(minutes=minutes))
    click.echo(f"Reclaimed {count} stuck queue items")

@sync_cli.command('status')
@with_appcontext
def status_command():
    """Show queue and entity sync counts."""
    sync_service = container().create_sync_service()
    _echo_json(sync_service.status_summary())

@sync_cli.command('history')
@click.option('--entity-type', type=_choice(EntityType), help='Filter by entity type')
@click.option('--entity-id', type=int, help='Filter by entity id (requires --entity-type)')
@click.option('--status', type=click.Choice(['SUCCESS', 'FAILED'], case_sensitive=False), help='Filter by outcome')
@click.option('--limit', type=int, default=20, help='Maximum number of records')
@with_appcontext
def history_command(entity_type, entity_id, status, limit):
    """Show recent sync history records."""
    history = container().get('history_repository')
    if entity_id is not None:
        if not entity_type:
            raise click.BadParameter("--entity-id requires --entity-type")
        records = history.for_entity(EntityType[entity_type.upper()], entity_id, limit=limit)
    elif status:
        records = history.by_status(SyncStatus[status.upper()], limit=limit)
    else:
        records = history.recent(limit)

    if entity_type and entity_id is None:
        records = [r for r in records if r.entity_type == EntityType[entity_type.upper()]]

    for record in records:
        line = (f"{record.synced_at:%Y-%m-%d %H:%M:%S} {record.status.name:<7} "
                f"{record.direction.name:<15} {record.action.name:<6} "
                f"{record.entity_type.name}#{record.entity_id} -> {record.remote_id}")
        if record.error_message:
            line += f" [{record.error_category}] {record.error_message}"
        click.echo(line)
    if not records:
        click.echo("No sync history records")

@sync_cli.command('prune-history')
@click.option('--days', type=int, default=30, help='Days of history to keep')
@click.option('--confirm', is_flag=True, help='Confirm cleanup operation')
@with_appcontext
def prune_history_command(days, confirm):
    """Delete sync history older than the retention window."""
    if not confirm:
        click.echo(f'This will remove sync history older than {days} days. Use --confirm to proceed.')
        return

    deleted = container().get('history_repository').prune(days)
    click.echo(f'Deleted {deleted} old sync history records.')

@click.command('init-db')
@click.option('--seed', is_flag=True, help='Create the reference signalement statuses')
@with_appcontext
def init_db_command(seed):
    """Initialize the database (tables and reference data)."""
    click.echo('Initializing the database...')

    # Create all tables
    db.create_all()

    if seed:
        created = 0
        for values in DEFAULT_STATUSES:
            if SignalementStatus.query.filter_by(code=values['code']).first() is None:
                now = datetime.utcnow()
                db.session.add(SignalementStatus(created_at=now, updated_at=now, **values))
                created += 1
        db.session.commit()
        click.echo(f'Seeded {created} signalement statuses.')

    click.echo('Database initialized successfully!')

def register_commands(app):
    """Register CLI commands with the app."""
    app.cli.add_command(sync_cli)
    app.cli.add_command(init_db_command)
