"""Base repository for database operations."""

from sqlalchemy import select
from signalement_sync.extensions import db


class BaseRepository:
    """Base repository implementing common database operations."""

    def __init__(self, db_instance=None, model_class=None):
        """Initialize the repository.

        Args:
            db_instance: SQLAlchemy database instance
            model_class: Model class to use for queries
        """
        self.db = db_instance or db
        self.model_class = model_class

    @property
    def session(self):
        return self.db.session

    def get_by_id(self, id):
        """Get an entity by ID.

        Args:
            id: Entity ID

        Returns:
            Entity instance or None
        """
        if not self.model_class:
            raise NotImplementedError("Model class must be set in derived repository")

        return self.session.get(self.model_class, id)

    def get_all(self):
        """Get all entities.

        Returns:
            List of entities
        """
        if not self.model_class:
            raise NotImplementedError("Model class must be set in derived repository")

        query = select(self.model_class).order_by(self.model_class.id)
        return self.session.execute(query).scalars().all()
