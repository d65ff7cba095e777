from datetime import datetime
from signalement_sync.extensions import db
from signalement_sync.models.sync_tracking import SyncTrackedMixin

class Entreprise(SyncTrackedMixin, db.Model):
    """Contractor company assigned to signalement actions."""

    __tablename__ = "entreprises"

    id = db.Column(db.Integer, primary_key=True)
    nom = db.Column(db.String(150), unique=True, nullable=False)
    siret = db.Column(db.String(14), unique=True, nullable=True)
    telephone = db.Column(db.String(20), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    adresse = db.Column(db.Text, nullable=True)
    specialites = db.Column(db.JSON, nullable=True)  # List of specialty labels
    is_active = db.Column(db.Boolean, default=True)
    note_moyenne = db.Column(db.Numeric(3, 2), nullable=True)
    nombre_interventions = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    signalements = db.relationship('Signalement', back_populates='entreprise', lazy=True)

    def __repr__(self):
        return f'<Entreprise {self.id}: {self.nom}>'
