from datetime import datetime
from signalement_sync.extensions import db
from signalement_sync.models.sync_tracking import SyncTrackedMixin

DEFAULT_STATUS_CODE = 'NOUVEAU'

# Reference statuses created by ``flask init-db --seed``
DEFAULT_STATUSES = (
    {'code': 'NOUVEAU', 'libelle': 'Nouveau', 'ordre': 1, 'couleur': '#3B82F6',
     'description': "Signalement reçu, en attente d'analyse"},
    {'code': 'EN_COURS', 'libelle': 'En cours', 'ordre': 2, 'couleur': '#F59E0B',
     'description': 'Travaux ou analyse en cours de réalisation'},
    {'code': 'TERMINE', 'libelle': 'Terminé', 'ordre': 3, 'couleur': '#10B981',
     'description': 'Problème résolu et travaux finalisés'},
)

class SignalementStatus(SyncTrackedMixin, db.Model):
    """Workflow status of a signalement, mirrored by its code."""

    __tablename__ = "signalement_status"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False)
    libelle = db.Column(db.String(50), nullable=False)
    description = db.Column(db.Text, nullable=True)
    couleur = db.Column(db.String(7), nullable=True)  # Format: #FF0000
    ordre = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<SignalementStatus {self.code}>'
