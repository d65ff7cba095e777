"""
Per-entity-type sync handlers.

A handler knows how one local model maps onto one remote collection: which
rows need pushing, which document key a row is written under, how a remote
document is matched back to a row, and whether a row may be created from
remote data.
"""

import logging
from signalement_sync.errors import DanglingReferenceError, MappingError, NotCreatableError
from signalement_sync.extensions import db
from signalement_sync.models.enums import EntityType
from signalement_sync.models.signalement_status import DEFAULT_STATUS_CODE
from signalement_sync.models.synced_repository import (
    EntrepriseRepository, SignalementRepository, StatusRepository, UserRepository
)
from signalement_sync.services import mapper

log = logging.getLogger(__name__)

class EntitySyncHandler:
    """Base handler; subclasses bind a model to a remote collection."""

    entity_type = None
    collection = None
    category = None
    repository_class = None
    # Push every row each cycle instead of only rows with synced = False
    full_resync = False

    def __init__(self, db_instance=None):
        self.db = db_instance or db
        self.repository = self.repository_class(self.db)

    @property
    def session(self):
        return self.db.session

    @property
    def model(self):
        return self.repository.model_class

    def get(self, entity_id):
        return self.repository.get_by_id(entity_id)

    def push_candidates(self, exclude_ids=()):
        """Rows the push phase should write, minus the excluded ids."""
        if self.full_resync:
            entities = self.repository.get_all()
        else:
            entities = self.repository.find_not_synced()
        return [entity for entity in entities if entity.id not in exclude_ids]

    def natural_key(self, entity):
        return str(entity.id)

    def document_key(self, entity):
        """Key the entity is written under.

        A bound entity keeps its ``remote_id``. An unbound one gets its
        natural key, unless another row already holds that key, in which case
        None asks the store to allocate one.
        """
        if entity.remote_id:
            return entity.remote_id
        key = self.natural_key(entity)
        holder = self.repository.get_by_remote_id(key)
        if holder is not None and holder.id != entity.id:
            log.warning(
                f"{self.entity_type.name}#{entity.id}: key {key} already bound to "
                f"{self.entity_type.name}#{holder.id}, letting the store allocate one"
            )
            return None
        return key

    def map_to_remote(self, entity, now=None):
        raise NotImplementedError("map_to_remote must be implemented by the handler")

    def locate_local(self, document_key, fields):
        """Find the local row for a remote document.

        Matches on the stored ``remote_id`` first, then on the local id the
        document carries. A row already bound to another document is not a
        match for this one.
        """
        entity = self.repository.get_by_remote_id(document_key)
        if entity is not None:
            return entity

        local_id = mapper.remote_local_id(fields)
        if local_id is None:
            return None
        entity = self.repository.get_by_id(local_id)
        if entity is not None and entity.remote_id and entity.remote_id != document_key:
            raise MappingError(
                f"Document {self.collection}/{document_key} claims local id {local_id}, "
                f"which is bound to document {entity.remote_id}"
            )
        return entity

    def apply_remote(self, entity, fields, now=None):
        raise NotImplementedError("apply_remote must be implemented by the handler")

    def build_from_remote(self, document_key, fields, now=None):
        raise NotCreatableError(
            f"{self.entity_type.name} document {self.collection}/{document_key} has no local match "
            f"and cannot be created from remote data"
        )

class UserHandler(EntitySyncHandler):
    entity_type = EntityType.USER
    collection = "users"
    category = "users"
    repository_class = UserRepository

    def map_to_remote(self, entity, now=None):
        return mapper.user_to_document(entity, now)

    def apply_remote(self, entity, fields, now=None):
        return mapper.apply_user_fields(entity, fields, now)

class SignalementHandler(EntitySyncHandler):
    entity_type = EntityType.SIGNALEMENT
    collection = "signalements"
    category = "signalements"
    repository_class = SignalementRepository

    def __init__(self, db_instance=None):
        super().__init__(db_instance)
        self.users = UserRepository(self.db)
        self.statuses = StatusRepository(self.db)
        self.entreprises = EntrepriseRepository(self.db)

    def map_to_remote(self, entity, now=None):
        return mapper.signalement_to_document(entity, now)

    def _resolve_status(self, fields):
        code = fields.get('statusCode')
        if code is None:
            return mapper.MISSING
        if not isinstance(code, str):
            raise MappingError(f"Field 'statusCode' must be a string, got {code!r}")
        status = self.statuses.get_by_code(code)
        if status is None:
            raise DanglingReferenceError(f"Unknown status code '{code}'")
        return status

    def _resolve_entreprise(self, fields):
        if 'entrepriseId' not in fields:
            return mapper.MISSING
        entreprise_id = mapper.to_int(fields['entrepriseId'], 'entrepriseId')
        if entreprise_id is None:
            return None
        entreprise = self.entreprises.get_by_id(entreprise_id)
        if entreprise is None:
            raise DanglingReferenceError(f"Unknown entreprise id {entreprise_id}")
        return entreprise

    def apply_remote(self, entity, fields, now=None):
        # References are resolved before any field is touched
        status = self._resolve_status(fields)
        entreprise = self._resolve_entreprise(fields)
        return mapper.apply_signalement_fields(entity, fields, status=status, entreprise=entreprise, now=now)

    def build_from_remote(self, document_key, fields, now=None):
        user_id = mapper.to_int(fields.get('userId'), 'userId')
        if user_id is None:
            raise MappingError(f"Document {self.collection}/{document_key} has no userId")
        user = self.users.get_by_id(user_id)
        if user is None:
            raise DanglingReferenceError(f"Unknown user id {user_id}")

        status = self._resolve_status(fields)
        if status is mapper.MISSING:
            status = self.statuses.get_by_code(DEFAULT_STATUS_CODE)
            if status is None:
                raise DanglingReferenceError(f"Default status '{DEFAULT_STATUS_CODE}' is not seeded")

        entreprise = self._resolve_entreprise(fields)
        if entreprise is mapper.MISSING:
            entreprise = None

        signalement = mapper.build_signalement(fields, user, status, entreprise, now=now)
        self.session.add(signalement)
        return signalement

class EntrepriseHandler(EntitySyncHandler):
    entity_type = EntityType.ENTREPRISE
    collection = "entreprises"
    category = "entreprises"
    repository_class = EntrepriseRepository
    full_resync = True

    def map_to_remote(self, entity, now=None):
        return mapper.entreprise_to_document(entity, now)

    def apply_remote(self, entity, fields, now=None):
        return mapper.apply_entreprise_fields(entity, fields, now)

    def build_from_remote(self, document_key, fields, now=None):
        entreprise = mapper.build_entreprise(fields, now=now)
        self.session.add(entreprise)
        return entreprise

class StatusHandler(EntitySyncHandler):
    """Statuses are keyed by their code and only ever updated from remote."""

    entity_type = EntityType.SIGNALEMENT_STATUS
    collection = "signalement_status"
    category = "status"
    repository_class = StatusRepository
    full_resync = True

    def natural_key(self, entity):
        return entity.code

    def map_to_remote(self, entity, now=None):
        return mapper.status_to_document(entity, now)

    def locate_local(self, document_key, fields):
        entity = super().locate_local(document_key, fields)
        if entity is not None:
            return entity
        code = fields.get('code') if isinstance(fields.get('code'), str) else document_key
        entity = self.repository.get_by_code(code)
        if entity is not None and entity.remote_id and entity.remote_id != document_key:
            return None
        return entity

    def apply_remote(self, entity, fields, now=None):
        return mapper.apply_status_fields(entity, fields, now)

def build_handlers(db_instance=None):
    """Handler registry keyed by entity type, in dependency order."""
    handlers = (
        StatusHandler(db_instance),
        UserHandler(db_instance),
        EntrepriseHandler(db_instance),
        SignalementHandler(db_instance),
    )
    return {handler.entity_type: handler for handler in handlers}
