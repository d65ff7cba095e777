from datetime import datetime
from signalement_sync.extensions import db
from signalement_sync.models.sync_tracking import SyncTrackedMixin

class Signalement(SyncTrackedMixin, db.Model):
    """Geolocated issue report submitted by a citizen."""

    __tablename__ = "signalements"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    status_id = db.Column(db.Integer, db.ForeignKey('signalement_status.id'), nullable=False, index=True)
    entreprise_id = db.Column(db.Integer, db.ForeignKey('entreprises.id'), nullable=True)

    # Location
    latitude = db.Column(db.Numeric(10, 8), nullable=False)
    longitude = db.Column(db.Numeric(11, 8), nullable=False)
    adresse = db.Column(db.String(255), nullable=True)

    # Problem details
    description = db.Column(db.Text, nullable=False)
    budget = db.Column(db.Numeric(15, 2), nullable=False)
    surface = db.Column(db.Numeric(12, 2), nullable=False)
    niveau = db.Column(db.Integer, nullable=True)

    date_signalement = db.Column(db.DateTime, default=datetime.utcnow)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User', back_populates='signalements')
    status = db.relationship('SignalementStatus', lazy='joined')
    entreprise = db.relationship('Entreprise', back_populates='signalements')

    def __repr__(self):
        return f'<Signalement {self.id}>'
