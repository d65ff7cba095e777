from datetime import datetime
from signalement_sync.extensions import db
from signalement_sync.models.sync_tracking import SyncTrackedMixin

class User(SyncTrackedMixin, db.Model):
    """Citizen or manager account.

    Credentials are owned by the authentication layer; the sync engine reads
    identity fields and never fabricates a user from remote data.
    """

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), index=True, unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    role_code = db.Column(db.String(20), nullable=True)
    role_libelle = db.Column(db.String(50), nullable=True)
    is_locked = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    signalements = db.relationship('Signalement', back_populates='user', lazy=True)

    def __repr__(self):
        return f'<User {self.id}: {self.email}>'
