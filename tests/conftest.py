from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from signalement_sync import create_app
from signalement_sync.extensions import db as _db
from signalement_sync.models.entreprise import Entreprise
from signalement_sync.models.signalement import Signalement
from signalement_sync.models.signalement_status import DEFAULT_STATUSES, SignalementStatus
from signalement_sync.models.sync_history_repository import SqlAlchemySyncHistoryRepository
from signalement_sync.models.sync_queue_repository import SqlAlchemySyncQueueRepository
from signalement_sync.models.user import User
from signalement_sync.services.container import container
from signalement_sync.services.sync_service import SyncService


class FrozenClock:
    """Controllable replacement for datetime.utcnow."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def app():
    """Create and configure a Flask app for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SECRET_KEY': 'test-key',
        'REMOTE_GATEWAY': 'memory',
        'SYNC_SCHEDULER_ENABLED': False,
        'LOG_TO_FILE': False,
    })
    yield app

@pytest.fixture
def db(app):
    """Create a database instance for testing."""
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()

@pytest.fixture
def runner(app):
    """A test CLI runner for the app."""
    return app.test_cli_runner()

@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 6, 1, 12, 0, 0))

@pytest.fixture
def remote(db):
    """The in-memory document store behind the app's gateway."""
    return container().get('remote_store')

@pytest.fixture
def queue_repository(db, clock):
    return SqlAlchemySyncQueueRepository(db, max_retries=3, retry_delay_minutes=5, clock=clock)

@pytest.fixture
def history_repository(db):
    return SqlAlchemySyncHistoryRepository(db)

@pytest.fixture
def sync_service(db, clock, queue_repository, history_repository):
    return SyncService(
        db,
        container().get('gateway'),
        queue_repository=queue_repository,
        history_repository=history_repository,
        actor_id=None,
        clock=clock,
    )

@pytest.fixture
def statuses(db):
    """The reference statuses, keyed by code."""
    created = datetime(2024, 1, 1)
    rows = [SignalementStatus(created_at=created, updated_at=created, **values) for values in DEFAULT_STATUSES]
    db.session.add_all(rows)
    db.session.commit()
    return {status.code: status for status in rows}

@pytest.fixture
def users(db):
    created = datetime(2024, 1, 1)
    rows = [
        User(
            email=f'user{i}@example.com',
            name=f'User {i}',
            password_hash='not-a-real-hash',
            role_code='USER',
            role_libelle='Utilisateur',
            created_at=created,
            updated_at=created,
        )
        for i in range(1, 4)
    ]
    db.session.add_all(rows)
    db.session.commit()
    return rows

@pytest.fixture
def entreprise(db):
    created = datetime(2024, 1, 1)
    row = Entreprise(
        nom='Voirie Express',
        siret='12345678901234',
        telephone='0102030405',
        email='contact@voirie.example',
        specialites=['voirie', 'signalisation'],
        is_active=True,
        note_moyenne=Decimal('4.50'),
        nombre_interventions=12,
        created_at=created,
        updated_at=created,
    )
    db.session.add(row)
    db.session.commit()
    return row

@pytest.fixture
def signalement(db, users, statuses, entreprise):
    created = datetime(2024, 2, 1)
    row = Signalement(
        user=users[0],
        status=statuses['NOUVEAU'],
        entreprise=entreprise,
        latitude=Decimal('-18.87919000'),
        longitude=Decimal('47.50790500'),
        adresse='Avenue de l\'Indépendance',
        description='Nid de poule profond',
        budget=Decimal('1500000.00'),
        surface=Decimal('12.50'),
        niveau=3,
        date_signalement=created,
        created_at=created,
        updated_at=created,
    )
    db.session.add(row)
    db.session.commit()
    return row
