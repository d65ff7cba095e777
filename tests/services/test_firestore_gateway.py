"""Tests for the Firestore REST gateway"""

import json
from datetime import datetime

import pytest
import requests
from requests.exceptions import Timeout

from signalement_sync.errors import RemoteStoreError, RemoteStoreRejected
from signalement_sync.services.firestore_gateway import (
    FirestoreRestGateway, decode_fields, decode_value, encode_fields, encode_value
)

DOCUMENTS = "https://firestore.test/v1/projects/demo/databases/(default)/documents"

def _response(status_code=200, payload=None):
    response = requests.Response()
    response.status_code = status_code
    response.url = DOCUMENTS
    response._content = json.dumps(payload).encode() if payload is not None else b''
    return response

def _document(collection, key, fields):
    return {'name': f"projects/demo/databases/(default)/documents/{collection}/{key}",
            'fields': encode_fields(fields)}

@pytest.fixture
def session(mocker):
    return mocker.Mock(spec=requests.Session)

@pytest.fixture
def sleep(mocker):
    return mocker.patch('signalement_sync.services.firestore_gateway.time.sleep')

@pytest.fixture
def gateway(session):
    return FirestoreRestGateway('demo', access_token='token', base_url='https://firestore.test/v1/',
                                max_tries=3, retry_delay=1, retry_backoff=2, session=session)

def test_encode_values():
    assert encode_value(None) == {'nullValue': None}
    assert encode_value(True) == {'booleanValue': True}
    assert encode_value(12) == {'integerValue': '12'}
    assert encode_value(1.5) == {'doubleValue': 1.5}
    assert encode_value('a') == {'stringValue': 'a'}
    assert encode_value(datetime(2024, 6, 1, 12, 0)) == {'timestampValue': '2024-06-01T12:00:00Z'}
    assert encode_value(['x']) == {'arrayValue': {'values': [{'stringValue': 'x'}]}}
    assert encode_value({'k': 1}) == {'mapValue': {'fields': {'k': {'integerValue': '1'}}}}
    with pytest.raises(TypeError):
        encode_value(object())

def test_decode_values():
    assert decode_value({'integerValue': '42'}) == 42
    assert decode_value({'timestampValue': '2024-06-01T12:00:00.123456789Z'}) == datetime(2024, 6, 1, 12, 0, 0, 123456)
    assert decode_value({'arrayValue': {}}) == []
    assert decode_value({'geoPointValue': {'latitude': -18.9, 'longitude': 47.5}}) == {
        'latitude': -18.9, 'longitude': 47.5
    }
    assert decode_fields(None) == {}

def test_upsert_patches_document(gateway, session):
    session.request.return_value = _response(payload=_document('users', '1', {'name': 'A'}))

    assert gateway.upsert('users', '1', {'name': 'A', 'id': 1}) == '1'

    kwargs = session.request.call_args.kwargs
    assert kwargs['method'] == 'PATCH'
    assert kwargs['url'] == f"{DOCUMENTS}/users/1"
    assert kwargs['headers']['Authorization'] == 'Bearer token'
    assert kwargs['json'] == {'fields': {'name': {'stringValue': 'A'}, 'id': {'integerValue': '1'}}}

def test_upsert_without_key_posts_and_returns_allocated_key(gateway, session):
    session.request.return_value = _response(payload=_document('signalements', 'auto123', {}))

    assert gateway.upsert('signalements', None, {'description': 'x'}) == 'auto123'
    assert session.request.call_args.kwargs['method'] == 'POST'
    assert session.request.call_args.kwargs['url'] == f"{DOCUMENTS}/signalements"

def test_fetch_all_follows_pages(gateway, session):
    session.request.side_effect = [
        _response(payload={'documents': [_document('users', '1', {'name': 'A'})], 'nextPageToken': 'p2'}),
        _response(payload={'documents': [_document('users', '2', {'name': 'B'})]}),
    ]

    assert gateway.fetch_all('users') == [('1', {'name': 'A'}), ('2', {'name': 'B'})]
    assert session.request.call_args.kwargs['params'] == {'pageSize': 300, 'pageToken': 'p2'}

def test_fetch_all_empty_collection(gateway, session):
    session.request.return_value = _response(payload={})

    assert gateway.fetch_all('users') == []

def test_delete_ignores_missing_document(gateway, session, sleep):
    session.request.return_value = _response(404, {'error': {'code': 404}})

    gateway.delete('users', '1')

    assert session.request.call_count == 1
    sleep.assert_not_called()

def test_transient_errors_are_retried(gateway, session, sleep):
    session.request.side_effect = [
        _response(503, {'error': {'code': 503}}),
        _response(429, {'error': {'code': 429}}),
        _response(payload=_document('users', '1', {})),
    ]

    assert gateway.upsert('users', '1', {}) == '1'

    assert session.request.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [1, 2]

def test_allocating_upsert_is_not_retried(gateway, session, sleep):
    session.request.return_value = _response(503, {'error': {'code': 503}})

    with pytest.raises(RemoteStoreError):
        gateway.upsert('signalements', None, {'description': 'x'})

    assert session.request.call_count == 1
    sleep.assert_not_called()

def test_retries_exhausted(gateway, session, sleep):
    session.request.side_effect = Timeout("read timed out")

    with pytest.raises(RemoteStoreError):
        gateway.fetch_all('users')

    assert session.request.call_count == 3

def test_client_errors_are_rejected_without_retry(gateway, session, sleep):
    session.request.return_value = _response(400, {'error': {'code': 400}})

    with pytest.raises(RemoteStoreRejected) as excinfo:
        gateway.upsert('users', '1', {})

    assert excinfo.value.status_code == 400
    assert not excinfo.value.retryable
    assert session.request.call_count == 1
    sleep.assert_not_called()
