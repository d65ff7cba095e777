"""Repositories for the domain entities the sync engine mirrors."""

from sqlalchemy import select
from signalement_sync.models.base_repository import BaseRepository
from signalement_sync.models.entreprise import Entreprise
from signalement_sync.models.signalement import Signalement
from signalement_sync.models.signalement_status import SignalementStatus
from signalement_sync.models.user import User

class SyncedEntityRepository(BaseRepository):
    """Queries on the sync bookkeeping columns of one entity model."""

    def find_not_synced(self):
        query = (
            select(self.model_class)
            .where(self.model_class.synced.is_(False))
            .order_by(self.model_class.id)
        )
        return self.session.execute(query).scalars().all()

    def get_by_remote_id(self, remote_id):
        if not remote_id:
            return None
        query = select(self.model_class).where(self.model_class.remote_id == remote_id)
        return self.session.execute(query).scalar_one_or_none()

class UserRepository(SyncedEntityRepository):

    def __init__(self, db_instance=None):
        super().__init__(db_instance, User)

class SignalementRepository(SyncedEntityRepository):

    def __init__(self, db_instance=None):
        super().__init__(db_instance, Signalement)

class EntrepriseRepository(SyncedEntityRepository):

    def __init__(self, db_instance=None):
        super().__init__(db_instance, Entreprise)

class StatusRepository(SyncedEntityRepository):

    def __init__(self, db_instance=None):
        super().__init__(db_instance, SignalementStatus)

    def get_all(self):
        query = select(SignalementStatus).order_by(SignalementStatus.ordre, SignalementStatus.id)
        return self.session.execute(query).scalars().all()

    def get_by_code(self, code):
        if not code:
            return None
        query = select(SignalementStatus).where(SignalementStatus.code == code)
        return self.session.execute(query).scalar_one_or_none()
