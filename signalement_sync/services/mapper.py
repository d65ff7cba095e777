"""
Translation between local entities and remote documents.

Every function here is pure apart from attribute assignment on the entity it
is given: foreign keys are resolved by the caller and passed in. Applying a
document is a partial update, only the keys present in the payload are
touched, and ``updated_at`` moves only when a business field changed.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from signalement_sync.errors import MappingError
from signalement_sync.models.entreprise import Entreprise
from signalement_sync.models.signalement import Signalement

log = logging.getLogger(__name__)

# Sentinel for foreign keys the payload does not mention
MISSING = object()

COORDINATE_PLACES = 8
AMOUNT_PLACES = 2

# Value conversion

def to_float(value):
    if value is None:
        return None
    return float(value)

def to_iso(value):
    return value.isoformat() if value else None

def to_decimal(value, places, field_name):
    """Convert a remote number to a Decimal at the column scale.

    Floats go through their shortest string form so 0.1 stays 0.1. Rounding
    that changes the value is logged at WARNING.
    """
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal, str)):
        raise MappingError(f"Field '{field_name}' must be numeric, got {type(value).__name__}")
    try:
        original = Decimal(str(value).strip())
    except InvalidOperation:
        raise MappingError(f"Field '{field_name}' must be numeric, got {value!r}")
    if not original.is_finite():
        raise MappingError(f"Field '{field_name}' must be a finite number, got {value!r}")

    try:
        stored = original.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_EVEN)
    except InvalidOperation:
        raise MappingError(f"Field '{field_name}' is out of range, got {value!r}")
    if stored != original:
        log.warning(
            f"Precision loss on '{field_name}': remote value {original} stored as {stored}",
            extra={'field': field_name, 'original': str(original), 'stored': str(stored)}
        )
    return stored

def to_int(value, field_name):
    """Accept integers sent as int, integral float or numeric string."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise MappingError(f"Field '{field_name}' must be an integer, got a boolean")
    if isinstance(value, int):
        return value
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise MappingError(f"Field '{field_name}' must be an integer, got {value!r}")
    if not number.is_finite() or number != number.to_integral_value():
        raise MappingError(f"Field '{field_name}' must be an integer, got {value!r}")
    return int(number)

def to_bool(value, field_name):
    if not isinstance(value, bool):
        raise MappingError(f"Field '{field_name}' must be a boolean, got {value!r}")
    return value

def to_text(value, field_name, required=False):
    if value is None:
        if required:
            raise MappingError(f"Field '{field_name}' is required")
        return None
    if not isinstance(value, str):
        raise MappingError(f"Field '{field_name}' must be a string, got {type(value).__name__}")
    if required and not value.strip():
        raise MappingError(f"Field '{field_name}' must not be empty")
    return value

def to_string_list(value, field_name):
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise MappingError(f"Field '{field_name}' must be a list of strings")
    return list(value)

def to_datetime(value, field_name):
    """Parse an ISO-8601 timestamp into a naive UTC datetime."""
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1]
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            raise MappingError(f"Field '{field_name}' must be an ISO-8601 timestamp, got {value!r}")
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raise MappingError(f"Field '{field_name}' must be an ISO-8601 timestamp, got {value!r}")

def remote_local_id(fields):
    """Return the local id carried by a remote document, or None."""
    try:
        return to_int(fields.get('id'), 'id')
    except MappingError as e:
        log.warning(f"Ignoring malformed local id in remote document: {e.message}")
        return None

def _assign(entity, attribute, value):
    if getattr(entity, attribute) == value:
        return False
    setattr(entity, attribute, value)
    return True

def _apply(entity, fields, rules):
    """Apply ``{remote_key: (attribute, converter)}`` rules present in fields."""
    changed = False
    for remote_key, (attribute, converter) in rules.items():
        if remote_key in fields:
            changed |= _assign(entity, attribute, converter(fields[remote_key], remote_key))
    return changed

def _touch(entity, changed, now):
    if changed:
        entity.updated_at = now or datetime.utcnow()
    return entity

def _required(converter):
    def convert(value, field_name):
        if value is None:
            raise MappingError(f"Field '{field_name}' is required")
        return converter(value, field_name)
    return convert

def _decimal(places, required=False):
    def convert(value, field_name):
        return to_decimal(value, places, field_name)
    return _required(convert) if required else convert

def _text(required=False):
    def convert(value, field_name):
        return to_text(value, field_name, required=required)
    return convert

def _check_required(fields, keys, kind):
    missing = [key for key in keys if fields.get(key) is None]
    if missing:
        raise MappingError(f"Cannot create {kind} from remote data, missing: {', '.join(missing)}")

# Users

USER_RULES = {
    'name': ('name', _text(required=True)),
    'email': ('email', _text(required=True)),
}

def user_to_document(user, synced_at=None):
    return {
        'id': user.id,
        'email': user.email,
        'name': user.name,
        'remoteUid': user.remote_id,
        'roleCode': user.role_code,
        'roleLibelle': user.role_libelle,
        'isLocked': bool(user.is_locked),
        'createdAt': to_iso(user.created_at),
        'updatedAt': to_iso(user.updated_at),
        'syncedAt': to_iso(synced_at),
    }

def apply_user_fields(user, fields, now=None):
    return _touch(user, _apply(user, fields, USER_RULES), now)

# Signalements

SIGNALEMENT_RULES = {
    'description': ('description', _text(required=True)),
    'adresse': ('adresse', _text()),
    'latitude': ('latitude', _decimal(COORDINATE_PLACES, required=True)),
    'longitude': ('longitude', _decimal(COORDINATE_PLACES, required=True)),
    'surface': ('surface', _decimal(AMOUNT_PLACES, required=True)),
    'budget': ('budget', _decimal(AMOUNT_PLACES, required=True)),
    'niveau': ('niveau', to_int),
}

SIGNALEMENT_REQUIRED = ('description', 'latitude', 'longitude', 'surface', 'budget')

def signalement_to_document(signalement, synced_at=None):
    status = signalement.status
    user = signalement.user
    return {
        'id': signalement.id,
        'description': signalement.description,
        'adresse': signalement.adresse,
        'latitude': to_float(signalement.latitude),
        'longitude': to_float(signalement.longitude),
        'statusCode': status.code if status else None,
        'statusLibelle': status.libelle if status else None,
        'userEmail': user.email if user else None,
        'userId': signalement.user_id,
        'entrepriseId': signalement.entreprise_id,
        'dateSignalement': to_iso(signalement.date_signalement),
        'surface': to_float(signalement.surface),
        'budget': to_float(signalement.budget),
        'niveau': signalement.niveau,
        'createdAt': to_iso(signalement.created_at),
        'updatedAt': to_iso(signalement.updated_at),
        'syncedAt': to_iso(synced_at),
    }

def apply_signalement_fields(signalement, fields, status=MISSING, entreprise=MISSING, now=None):
    """Apply a signalement document.

    ``status`` and ``entreprise`` are the already resolved targets of
    ``statusCode`` and ``entrepriseId``; MISSING leaves the reference alone.
    """
    changed = _apply(signalement, fields, SIGNALEMENT_RULES)
    if status is not MISSING and signalement.status is not status:
        signalement.status = status
        changed = True
    if entreprise is not MISSING and signalement.entreprise is not entreprise:
        signalement.entreprise = entreprise
        changed = True
    return _touch(signalement, changed, now)

def build_signalement(fields, user, status, entreprise=None, now=None):
    """Create a signalement from a remote-origin document."""
    _check_required(fields, SIGNALEMENT_REQUIRED, 'signalement')
    now = now or datetime.utcnow()
    signalement = Signalement(user=user)
    apply_signalement_fields(signalement, fields, status=status, entreprise=entreprise, now=now)
    signalement.date_signalement = to_datetime(fields.get('dateSignalement'), 'dateSignalement') or now
    signalement.created_at = to_datetime(fields.get('createdAt'), 'createdAt') or now
    signalement.updated_at = now
    return signalement

# Entreprises

ENTREPRISE_RULES = {
    'nom': ('nom', _text(required=True)),
    'siret': ('siret', _text()),
    'telephone': ('telephone', _text()),
    'email': ('email', _text()),
    'adresse': ('adresse', _text()),
    'isActive': ('is_active', _required(to_bool)),
    'specialites': ('specialites', to_string_list),
    'noteMoyenne': ('note_moyenne', _decimal(AMOUNT_PLACES)),
}

def entreprise_to_document(entreprise, synced_at=None):
    return {
        'id': entreprise.id,
        'nom': entreprise.nom,
        'siret': entreprise.siret,
        'telephone': entreprise.telephone,
        'email': entreprise.email,
        'adresse': entreprise.adresse,
        'specialites': list(entreprise.specialites or []),
        'isActive': bool(entreprise.is_active),
        'noteMoyenne': to_float(entreprise.note_moyenne),
        'nombreInterventions': entreprise.nombre_interventions or 0,
        'createdAt': to_iso(entreprise.created_at),
        'updatedAt': to_iso(entreprise.updated_at),
        'syncedAt': to_iso(synced_at),
    }

def apply_entreprise_fields(entreprise, fields, now=None):
    return _touch(entreprise, _apply(entreprise, fields, ENTREPRISE_RULES), now)

def build_entreprise(fields, now=None):
    _check_required(fields, ('nom',), 'entreprise')
    now = now or datetime.utcnow()
    entreprise = Entreprise(is_active=True, specialites=[])
    apply_entreprise_fields(entreprise, fields, now=now)
    entreprise.nombre_interventions = to_int(fields.get('nombreInterventions'), 'nombreInterventions') or 0
    entreprise.created_at = to_datetime(fields.get('createdAt'), 'createdAt') or now
    entreprise.updated_at = now
    return entreprise

# Signalement statuses

STATUS_RULES = {
    'libelle': ('libelle', _text(required=True)),
    'description': ('description', _text()),
    'ordre': ('ordre', _required(to_int)),
    'color': ('couleur', _text()),
}

def status_to_document(status, synced_at=None):
    return {
        'id': status.id,
        'code': status.code,
        'libelle': status.libelle,
        'description': status.description,
        'ordre': status.ordre,
        'color': status.couleur,
        'syncedAt': to_iso(synced_at),
    }

def apply_status_fields(status, fields, now=None):
    return _touch(status, _apply(status, fields, STATUS_RULES), now)
