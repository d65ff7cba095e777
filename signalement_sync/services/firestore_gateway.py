"""Firestore gateway over the Firestore REST API (v1)."""

import logging
import time
from datetime import date, datetime, timezone
from decimal import Decimal
from functools import wraps
import requests
from requests.exceptions import ConnectionError, Timeout
from signalement_sync.errors import RemoteStoreError, RemoteStoreRejected
from signalement_sync.services.gateway import RemoteStoreGateway

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://firestore.googleapis.com/v1"
PAGE_SIZE = 300

def retry(func):
    """Retry transient remote errors with exponential backoff.

    Reads ``max_tries``, ``retry_delay`` and ``retry_backoff`` from the
    gateway instance. Rejections are raised immediately.
    """
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        mtries, mdelay = self.max_tries, self.retry_delay

        while True:
            try:
                return func(self, *args, **kwargs)
            except RemoteStoreRejected:
                raise
            except RemoteStoreError as e:
                mtries -= 1
                if mtries <= 0:
                    raise
                log.warning(f"{func.__name__}: {e.message}, Retrying in {mdelay} seconds...")
                time.sleep(mdelay)
                mdelay *= self.retry_backoff
    return wrapper

# Value codec

def encode_value(value):
    """Encode a Python value as a Firestore REST ``Value``."""
    if value is None:
        return {'nullValue': None}
    if isinstance(value, bool):
        return {'booleanValue': value}
    if isinstance(value, int):
        return {'integerValue': str(value)}
    if isinstance(value, (float, Decimal)):
        return {'doubleValue': float(value)}
    if isinstance(value, str):
        return {'stringValue': value}
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return {'timestampValue': value.isoformat() + 'Z'}
    if isinstance(value, date):
        return {'timestampValue': datetime(value.year, value.month, value.day).isoformat() + 'Z'}
    if isinstance(value, (list, tuple)):
        return {'arrayValue': {'values': [encode_value(v) for v in value]}}
    if isinstance(value, dict):
        return {'mapValue': {'fields': encode_fields(value)}}
    raise TypeError(f"Cannot encode value of type {type(value).__name__} for Firestore")

def encode_fields(fields):
    return {key: encode_value(value) for key, value in fields.items()}

def _parse_timestamp(raw):
    # Firestore returns RFC 3339 with up to nanosecond precision
    text = raw.rstrip('Z')
    if '+' in text[10:]:
        text = text[:10] + text[10:].split('+')[0]
    if '.' in text:
        head, fraction = text.split('.', 1)
        text = f"{head}.{fraction[:6].ljust(6, '0')}"
    return datetime.fromisoformat(text)

def decode_value(value):
    """Decode a Firestore REST ``Value`` into a Python value."""
    if 'nullValue' in value:
        return None
    if 'booleanValue' in value:
        return value['booleanValue']
    if 'integerValue' in value:
        return int(value['integerValue'])
    if 'doubleValue' in value:
        return float(value['doubleValue'])
    if 'stringValue' in value:
        return value['stringValue']
    if 'timestampValue' in value:
        return _parse_timestamp(value['timestampValue'])
    if 'arrayValue' in value:
        return [decode_value(v) for v in value['arrayValue'].get('values', [])]
    if 'mapValue' in value:
        return decode_fields(value['mapValue'].get('fields', {}))
    if 'referenceValue' in value:
        return value['referenceValue']
    if 'geoPointValue' in value:
        return dict(value['geoPointValue'])
    raise ValueError(f"Unsupported Firestore value: {sorted(value)}")

def decode_fields(fields):
    return {key: decode_value(value) for key, value in (fields or {}).items()}

class FirestoreRestGateway(RemoteStoreGateway):
    """Gateway writing documents through the Firestore REST API."""

    name = "firestore"

    def __init__(self, project_id, database="(default)", access_token=None,
                 base_url=DEFAULT_BASE_URL, timeout=10, max_tries=3,
                 retry_delay=1, retry_backoff=2, session=None):
        self.project_id = project_id
        self.database = database
        self.access_token = access_token
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_tries = max_tries
        self.retry_delay = retry_delay
        self.retry_backoff = retry_backoff
        self.session = session or requests.Session()

    @property
    def documents_url(self):
        return f"{self.base_url}/projects/{self.project_id}/databases/{self.database}/documents"

    def _headers(self):
        headers = {'Content-Type': 'application/json'}
        if self.access_token:
            headers['Authorization'] = f"Bearer {self.access_token}"
        return headers

    def _request(self, method, url, params=None, json=None):
        """Make an HTTP request, mapping failures to remote store errors."""
        try:
            response = self.session.request(
                method=method,
                url=url,
                headers=self._headers(),
                params=params,
                json=json,
                timeout=self.timeout
            )
            response.raise_for_status()
            return response.json() if response.content else None

        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code
            if status_code == 429 or status_code >= 500:
                raise RemoteStoreError(f"Firestore error {status_code}: {e}", status_code=status_code)
            raise RemoteStoreRejected(f"Firestore rejected {method} {url}: {status_code}", status_code=status_code)
        except (ConnectionError, Timeout) as e:
            raise RemoteStoreError(f"Connection error: {e}")

    @staticmethod
    def _document_key(document):
        return document['name'].rsplit('/', 1)[-1]

    @retry
    def _patch(self, collection, document_key, body):
        return self._request('PATCH', f"{self.documents_url}/{collection}/{document_key}", json=body)

    def upsert(self, collection, document_key, fields):
        body = {'fields': encode_fields(fields)}
        if document_key is None:
            # POST allocates a new key on every call, so it is never retried
            document = self._request('POST', f"{self.documents_url}/{collection}", json=body)
        else:
            document = self._patch(collection, document_key, body)

        key = self._document_key(document) if document and 'name' in document else document_key
        log.debug(f"Wrote firestore document {collection}/{key}")
        return key

    @retry
    def fetch_all(self, collection):
        documents = []
        params = {'pageSize': PAGE_SIZE}
        while True:
            payload = self._request('GET', f"{self.documents_url}/{collection}", params=params) or {}
            for document in payload.get('documents', []):
                documents.append((self._document_key(document), decode_fields(document.get('fields'))))

            page_token = payload.get('nextPageToken')
            if not page_token:
                break
            params = {'pageSize': PAGE_SIZE, 'pageToken': page_token}

        log.debug(f"Fetched {len(documents)} firestore documents from {collection}")
        return documents

    @retry
    def delete(self, collection, document_key):
        try:
            self._request('DELETE', f"{self.documents_url}/{collection}/{document_key}")
        except RemoteStoreRejected as e:
            if e.status_code != 404:
                raise
            log.debug(f"Firestore document {collection}/{document_key} already absent")
