'''
Testing module for the StoreKit notification backend, testing internal and public APIs.

The backend tests call the DB APIs directly to test the outcome on the tables in the SQLite
database.

The server tests spins up a local Flask instance as per
(https://flask.palletsprojects.com/en/stable/testing/#sending-requests-with-the-test-client) and
sends a request using the test client and we vet the request and response produced by hitting said
endpoint.

Apple is never contacted, `platform_apple_api.http_request` is monkeypatched with a fake that
records the requests and answers from a scripted list of responses. Signed payloads are produced
locally with a throwaway certificate chain that the webhook is configured to trust.
'''

import base64
import dataclasses
import datetime
import flask
import json
import logging
import math
import sqlite3
import time
import traceback
import typing
import uuid
import werkzeug

import jwt
from cryptography                              import x509
from cryptography.x509.oid                     import NameOID
from cryptography.hazmat.primitives            import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from appstoreserverlibrary.models.Environment        import Environment        as AppleEnvironment
from appstoreserverlibrary.models.NotificationTypeV2 import NotificationTypeV2 as AppleNotificationV2

import base
import backend
import consumption
import dispatcher
import platform_apple
import platform_apple_api
import platform_apple_types
import server

def make_certificate(subject_key: ec.EllipticCurvePrivateKey,
                     common_name: str,
                     issuer_key:  ec.EllipticCurvePrivateKey | None = None,
                     issuer_cert: x509.Certificate | None           = None,
                     is_ca:       bool                              = False) -> x509.Certificate:
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now     = datetime.datetime.now(datetime.timezone.utc)
    builder = (x509.CertificateBuilder()
               .subject_name(subject)
               .issuer_name(issuer_cert.subject if issuer_cert else subject)
               .public_key(subject_key.public_key())
               .serial_number(x509.random_serial_number())
               .not_valid_before(now - datetime.timedelta(days=1))
               .not_valid_after(now + datetime.timedelta(days=30))
               .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True))
    result  = builder.sign(issuer_key or subject_key, hashes.SHA256())
    return result

@dataclasses.dataclass
class Signer:
    '''Stands in for Apple's signing infrastructure, a root CA that issued the leaf that signs'''
    root_key:  ec.EllipticCurvePrivateKey
    root_cert: x509.Certificate
    leaf_key:  ec.EllipticCurvePrivateKey
    leaf_cert: x509.Certificate

    def x5c(self) -> list[str]:
        result = [base64.b64encode(it.public_bytes(serialization.Encoding.DER)).decode('ascii') for it in (self.leaf_cert, self.root_cert)]
        return result

    def root_cert_der(self) -> bytes:
        result = self.root_cert.public_bytes(serialization.Encoding.DER)
        return result

    def sign(self, payload: dict[str, typing.Any]) -> str:
        result = jwt.encode(payload, self.leaf_key, algorithm='ES256', headers={'x5c': self.x5c()})
        return result

def make_signer(name: str) -> Signer:
    root_key  = ec.generate_private_key(ec.SECP256R1())
    root_cert = make_certificate(root_key, f'{name} Root CA', is_ca=True)
    leaf_key  = ec.generate_private_key(ec.SECP256R1())
    leaf_cert = make_certificate(leaf_key, f'{name} Leaf', issuer_key=root_key, issuer_cert=root_cert)
    result    = Signer(root_key=root_key, root_cert=root_cert, leaf_key=leaf_key, leaf_cert=leaf_cert)
    return result

SIGNER:           Signer = make_signer('Test')
UNTRUSTED_SIGNER: Signer = make_signer('Untrusted')

def b64url_encode(data: bytes) -> str:
    result = base64.urlsafe_b64encode(data).rstrip(b'=').decode('ascii')
    return result

def make_api_config() -> platform_apple_api.Config:
    key    = ec.generate_private_key(ec.SECP256R1())
    pem    = key.private_bytes(encoding             = serialization.Encoding.PEM,
                               format               = serialization.PrivateFormat.PKCS8,
                               encryption_algorithm = serialization.NoEncryption())
    result = platform_apple_api.Config(key_id              = 'TESTKEY123',
                                       issuer_id           = '00000000-0000-0000-0000-000000000000',
                                       bundle_id           = 'com.example.app',
                                       private_key         = pem,
                                       default_environment = AppleEnvironment.SANDBOX.value)
    return result

def make_transaction_info(transaction_id:          str,
                          original_transaction_id: str | None = None,
                          price:                   int | None = None,
                          app_account_token:       str | None = None,
                          purchase_date:           int | None = None,
                          revocation_date:         int | None = None) -> dict[str, typing.Any]:
    result: dict[str, typing.Any] = {
        'transactionId':      transaction_id,
        'productId':          'com.example.app.gems',
        'type':               'Consumable',
        'currency':           'USD',
        'quantity':           1,
        'inAppOwnershipType': 'PURCHASED',
        'environment':        AppleEnvironment.SANDBOX.value,
    }
    if original_transaction_id is not None:
        result['originalTransactionId'] = original_transaction_id
    if price is not None:
        result['price'] = price
    if app_account_token is not None:
        result['appAccountToken'] = app_account_token
    if purchase_date is not None:
        result['purchaseDate'] = purchase_date
    if revocation_date is not None:
        result['revocationDate']   = revocation_date
        result['revocationReason'] = 0
    return result

def make_notification_payload(notification_type: str,
                              tx_info:           dict[str, typing.Any] | None = None,
                              notification_uuid: str | None                   = None,
                              subtype:           str | None                   = None,
                              signed_date:       int | None                   = None,
                              environment:       str                          = AppleEnvironment.SANDBOX.value,
                              extra_data:        dict[str, typing.Any] | None = None) -> dict[str, typing.Any]:
    data: dict[str, typing.Any] = {'bundleId': 'com.example.app', 'environment': environment}
    if tx_info is not None:
        data['signedTransactionInfo'] = SIGNER.sign(tx_info)
    if extra_data:
        data.update(extra_data)

    result: dict[str, typing.Any] = {
        'notificationType': notification_type,
        'notificationUUID': notification_uuid or str(uuid.uuid4()),
        'version':          '2.0',
        'signedDate':       signed_date if signed_date is not None else int(time.time() * 1000),
        'data':             data,
    }
    if subtype:
        result['subtype'] = subtype
    return result

def apple_response(status: int, body: dict[str, typing.Any] | None = None) -> platform_apple_api.HTTPResponse:
    result = platform_apple_api.HTTPResponse(status  = status,
                                             headers = {'Content-Type': 'application/json'},
                                             body    = json.dumps(body) if body is not None else '')
    return result

@dataclasses.dataclass
class FakeAppleRequest:
    method:  str                   = ''
    url:     str                   = ''
    headers: dict[str, str]        = dataclasses.field(default_factory=dict)
    body:    typing.Any            = None

class FakeAppleAPI:
    '''
    Replaces `platform_apple_api.http_request`. Answers with the scripted responses in order and
    then with `default` once they run out.
    '''
    def __init__(self, responses: list[platform_apple_api.HTTPResponse] | None = None, default: platform_apple_api.HTTPResponse | None = None):
        self.responses: list[platform_apple_api.HTTPResponse] = list(responses or [])
        self.default:   platform_apple_api.HTTPResponse       = default or apple_response(200, {})
        self.requests:  list[FakeAppleRequest]                = []

    def __call__(self, pool: typing.Any, method: str, url: str, headers: dict[str, str], body: bytes | None, timeout_s: float) -> platform_apple_api.HTTPResponse:
        self.requests.append(FakeAppleRequest(method=method, url=url, headers=dict(headers), body=json.loads(body) if body else None))
        result = self.responses.pop(0) if len(self.responses) else self.default
        return result

@dataclasses.dataclass
class TestingContext:
    """
    Sets up a database with the necessary tables and flask instance that you can simulate HTTP
    requests to, to target the webhook and admin routes. This class is designed to be used in a
    `with` context such that the DB is closed on scope exit.

    For tests, this means you probably want to supply a in-memory URI-style path to make a transient
    DB that is wiped on scope exit. This means tests have a fresh DB to work with for each `with`
    context and each chunk of tests to execute.
    """

    db:           backend.SetupDBResult
    sql_conn:     sqlite3.Connection
    flask_app:    flask.Flask
    flask_client: werkzeug.Client
    core:         platform_apple.Core

    db_path:      str                       = ''
    uri:          bool                      = False
    api_config:   platform_apple_api.Config = dataclasses.field(default_factory=platform_apple_api.Config)
    root_certs:   list[bytes]               = dataclasses.field(default_factory=list)
    enqueued:     list[int]                 = dataclasses.field(default_factory=list)

    def __init__(self, db_path: str, uri: bool, api_config: platform_apple_api.Config | None = None, root_certs: list[bytes] | None = None):
        self.db_path    = db_path
        self.uri        = uri
        self.api_config = api_config if api_config else make_api_config()
        self.root_certs = root_certs if root_certs is not None else [SIGNER.root_cert_der()]
        self.enqueued   = []

    def __enter__(self):
        err     = base.ErrorSink()
        self.db = backend.setup_db(path=self.db_path, uri=self.uri, err=err)
        assert len(err.msg_list) == 0, err.build()

        self.core = platform_apple.init(api_config      = self.api_config,
                                        root_cert_bytes = self.root_certs,
                                        db_path         = self.db_path,
                                        db_path_is_uri  = self.uri,
                                        err             = err)
        assert len(err.msg_list) == 0, err.build()

        def enqueue(notification_id: int) -> bool:
            self.enqueued.append(notification_id)
            return True
        self.core.enqueue = enqueue

        self.flask_app    = server.init(testing_mode=True, db_path=self.db_path, db_path_is_uri=self.uri)
        platform_apple.equip_flask_routes(self.core, self.flask_app)
        self.flask_client = self.flask_app.test_client()
        assert self.db.sql_conn
        self.sql_conn = self.db.sql_conn
        return self

    def __exit__(self,
                 exc_type: object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        assert self.db.sql_conn
        self.db.sql_conn.close()
        return False

    def context(self) -> consumption.Context:
        result = consumption.Context(sql_conn=self.sql_conn, api_config=self.api_config, runtime=backend.get_runtime(self.sql_conn))
        return result

    def post_notification(self, payload: dict[str, typing.Any]) -> werkzeug.test.TestResponse:
        result = self.flask_client.post(platform_apple.FLASK_ROUTE_WEBHOOK, json={'signedPayload': SIGNER.sign(payload)})
        return result

    def store_notification(self, payload: dict[str, typing.Any]) -> int:
        response: werkzeug.test.TestResponse = self.post_notification(payload)
        assert response.status_code == 200, response.json
        assert response.json
        result = typing.cast(int, response.json['id'])
        return result

    def store_row(self,
                  notification_type:   str,
                  received_unix_ts_ms: int,
                  status:              backend.NotificationStatus = backend.NotificationStatus.Pending,
                  retry_count:         int                        = 0,
                  last_retry_unix_ts_ms: int | None               = None) -> int:
        '''Store a notification directly with the bookkeeping columns set up for the test'''
        err                 = base.ErrorSink()
        payload             = make_notification_payload(notification_type)
        row                 = platform_apple.notification_row_from_decoded_payload(signed_payload  = 'unused.signed.payload',
                                                                                   decoded_payload = payload,
                                                                                   source          = backend.NotificationSource.Webhook,
                                                                                   unix_ts_ms      = received_unix_ts_ms,
                                                                                   err             = err)
        assert len(err.msg_list) == 0, err.build()
        row.status = status
        with base.SQLTransaction(self.sql_conn) as tx:
            ingest = backend.ingest_notification_tx(tx, row)
            assert tx.cursor is not None
            _ = tx.cursor.execute('UPDATE notifications_raw SET retry_count = ?, last_retry_unix_ts_ms = ? WHERE id = ?',
                                  (retry_count, last_retry_unix_ts_ms, ingest.id))
        assert ingest.created
        return ingest.id

    def notification(self, notification_id: int) -> backend.NotificationRow:
        result = backend.get_notification(self.sql_conn, notification_id)
        assert result
        return result

    def count(self, table: str) -> int:
        result = 0
        with base.SQLTransaction(self.sql_conn) as tx:
            assert tx.cursor is not None
            _      = tx.cursor.execute(f'SELECT COUNT(*) FROM {table}')
            result = typing.cast(tuple[int], tx.cursor.fetchone())[0]
        return result

def unix_ts_ms_from_datetime(dt: datetime.datetime) -> int:
    utc    = dt.replace(tzinfo=datetime.timezone.utc)
    result = int(utc.timestamp()) * 1000 + utc.microsecond // 1000
    return result

def test_status_transitions():
    # NOTE: Automatic transitions the pipeline performs on its own
    assert backend.transition_allowed(backend.NotificationStatus.Pending,        backend.NotificationStatus.Processed)
    assert backend.transition_allowed(backend.NotificationStatus.Pending,        backend.NotificationStatus.Failed)
    assert backend.transition_allowed(backend.NotificationStatus.Failed,         backend.NotificationStatus.Pending)
    assert backend.transition_allowed(backend.NotificationStatus.Failed,         backend.NotificationStatus.FailedPermanent)
    assert backend.transition_allowed(backend.JobStatus.Pending,                 backend.JobStatus.Processing)
    assert backend.transition_allowed(backend.JobStatus.Processing,              backend.JobStatus.Sent)
    assert backend.transition_allowed(backend.ConsumptionRequestStatus.Pending,  backend.ConsumptionRequestStatus.Sent)

    # NOTE: Resets are only allowed for admin operations
    assert not backend.transition_allowed(backend.NotificationStatus.FailedPermanent, backend.NotificationStatus.Pending)
    assert     backend.transition_allowed(backend.NotificationStatus.FailedPermanent, backend.NotificationStatus.Pending, manual=True)
    assert not backend.transition_allowed(backend.JobStatus.Failed,                   backend.JobStatus.Pending)
    assert     backend.transition_allowed(backend.JobStatus.Failed,                   backend.JobStatus.Pending,          manual=True)

    # NOTE: Never allowed
    assert not backend.transition_allowed(backend.NotificationStatus.Processed, backend.NotificationStatus.Pending,         manual=True)
    assert not backend.transition_allowed(backend.NotificationStatus.Processed, backend.NotificationStatus.Failed,          manual=True)
    assert not backend.transition_allowed(backend.NotificationStatus.Pending,   backend.NotificationStatus.FailedPermanent, manual=True)
    assert not backend.transition_allowed(backend.JobStatus.Pending,            backend.JobStatus.Sent)
    assert not backend.transition_allowed(backend.JobStatus.Sent,               backend.JobStatus.Failed,                   manual=True)
    assert not backend.transition_allowed(backend.NotificationStatus.Pending,   backend.JobStatus.Processing)

    with TestingContext(db_path='file:test_status_transitions_db?mode=memory&cache=shared', uri=True) as test:
        now             = int(time.time() * 1000)
        notification_id = test.store_row('TEST', now)
        with base.SQLTransaction(test.sql_conn) as tx:
            err = base.ErrorSink()
            assert backend.update_notification_status_tx(tx, notification_id, backend.NotificationStatus.Pending, backend.NotificationStatus.Processed, now, None, err)

            # NOTE: Illegal transition is rejected without touching the row
            assert not backend.update_notification_status_tx(tx, notification_id, backend.NotificationStatus.Processed, backend.NotificationStatus.Pending, now, None, err, manual=True)
            assert len(err.msg_list) == 1

            # NOTE: Legal transition but the row is no longer in the expected state, the conditional
            # update loses the race and reports it without an error
            race_err = base.ErrorSink()
            assert not backend.update_notification_status_tx(tx, notification_id, backend.NotificationStatus.Pending, backend.NotificationStatus.Failed, now, 'late', race_err)
            assert not race_err.has()

        row = test.notification(notification_id)
        assert row.status               == backend.NotificationStatus.Processed
        assert row.processed_unix_ts_ms == now
        assert row.error_message        is None

def test_bucket_lifetime_dollars():
    assert consumption.bucket_lifetime_dollars(0)        == 1
    assert consumption.bucket_lifetime_dollars(0.01)     == 2
    assert consumption.bucket_lifetime_dollars(49.99)    == 2
    assert consumption.bucket_lifetime_dollars(50)       == 3
    assert consumption.bucket_lifetime_dollars(99.99)    == 3
    assert consumption.bucket_lifetime_dollars(100)      == 4
    assert consumption.bucket_lifetime_dollars(499.99)   == 4
    assert consumption.bucket_lifetime_dollars(500)      == 5
    assert consumption.bucket_lifetime_dollars(999.99)   == 5
    assert consumption.bucket_lifetime_dollars(1000)     == 6
    assert consumption.bucket_lifetime_dollars(1999.99)  == 6
    assert consumption.bucket_lifetime_dollars(2000)     == 7
    assert consumption.bucket_lifetime_dollars(250000)   == 7

    # NOTE: Anything that isn't a usable amount is undeclared
    assert consumption.bucket_lifetime_dollars(-5)         == 0
    assert consumption.bucket_lifetime_dollars(math.nan)   == 0
    assert consumption.bucket_lifetime_dollars(math.inf)   == 0
    assert consumption.bucket_lifetime_dollars(-math.inf)  == 0

def test_normalize_date_range():
    now          = unix_ts_ms_from_datetime(datetime.datetime(2024, 6, 15, 12, 30))
    end_of_today = unix_ts_ms_from_datetime(datetime.datetime(2024, 6, 15, 23, 59, 59, 999000))
    assert end_of_today == base.round_unix_ts_ms_to_end_of_day(now)

    # NOTE: Defaults to the 30 days ending today
    err        = base.ErrorSink()
    date_range = platform_apple.normalize_date_range(None, None, now, err)
    assert not err.has(), err.build()
    assert date_range.end_unix_ts_ms   == end_of_today
    assert date_range.start_unix_ts_ms == end_of_today - 30 * base.MILLISECONDS_IN_DAY

    # NOTE: Only an end, the start is 30 days before it
    end        = unix_ts_ms_from_datetime(datetime.datetime(2024, 5, 1))
    date_range = platform_apple.normalize_date_range('', '2024-05-01', now, err)
    assert date_range.end_unix_ts_ms   == end
    assert date_range.start_unix_ts_ms == end - 30 * base.MILLISECONDS_IN_DAY

    # NOTE: Reversed bounds are swapped
    date_range = platform_apple.normalize_date_range('2024-06-10', '2024-06-01', now, err)
    assert date_range.start_unix_ts_ms == unix_ts_ms_from_datetime(datetime.datetime(2024, 6, 1))
    assert date_range.end_unix_ts_ms   == unix_ts_ms_from_datetime(datetime.datetime(2024, 6, 10))

    # NOTE: An end in the future is clamped to the end of today
    date_range = platform_apple.normalize_date_range('2024-06-01T00:00:00Z', '2030-01-01T00:00:00Z', now, err)
    assert date_range.start_unix_ts_ms == unix_ts_ms_from_datetime(datetime.datetime(2024, 6, 1))
    assert date_range.end_unix_ts_ms   == end_of_today

    # NOTE: A span over 180 days is cut back to the 180 days before the end
    date_range = platform_apple.normalize_date_range('2023-01-01', '2024-06-01', now, err)
    assert date_range.end_unix_ts_ms   == unix_ts_ms_from_datetime(datetime.datetime(2024, 6, 1))
    assert date_range.start_unix_ts_ms == date_range.end_unix_ts_ms - 180 * base.MILLISECONDS_IN_DAY

    # NOTE: The span is measured from the clamped end, not the requested one
    date_range = platform_apple.normalize_date_range('2023-12-01', '2030-01-01', now, err)
    assert date_range.end_unix_ts_ms   == end_of_today
    assert date_range.start_unix_ts_ms == end_of_today - 180 * base.MILLISECONDS_IN_DAY

    # NOTE: Entirely in the future, falls back to the default window ending today
    date_range = platform_apple.normalize_date_range('2030-01-01', '2030-02-01', now, err)
    assert date_range.end_unix_ts_ms   == end_of_today
    assert date_range.start_unix_ts_ms == end_of_today - 30 * base.MILLISECONDS_IN_DAY

    # NOTE: Unix milliseconds are accepted as numbers and as strings
    start      = unix_ts_ms_from_datetime(datetime.datetime(2024, 6, 2))
    end        = unix_ts_ms_from_datetime(datetime.datetime(2024, 6, 3))
    date_range = platform_apple.normalize_date_range(start, str(end), now, err)
    assert date_range.start_unix_ts_ms == start
    assert date_range.end_unix_ts_ms   == end
    assert not err.has(), err.build()

    # NOTE: Garbage is reported rather than defaulted
    bad_err = base.ErrorSink()
    _       = platform_apple.normalize_date_range('yesterday', None, now, bad_err)
    assert bad_err.has()
    bad_err = base.ErrorSink()
    _       = platform_apple.normalize_date_range(None, True, now, bad_err)
    assert bad_err.has()

def test_verify_signed_payload():
    payload: dict[str, typing.Any] = make_notification_payload('TEST')
    root_certs                     = [SIGNER.root_cert]

    # NOTE: Valid token, with and without the chain being checked
    token   = SIGNER.sign(payload)
    decoded = platform_apple.verify_and_decode_signed_payload(token, root_certs)
    assert decoded['notificationUUID'] == payload['notificationUUID']
    assert platform_apple.verify_and_decode_signed_payload(token)['notificationType'] == 'TEST'

    # NOTE: Malformed tokens
    for it in ['', 'abc', 'a.b', 'a..c', 'a.b.c.d', '!!!.@@@.###']:
        try:
            _ = platform_apple.verify_and_decode_signed_payload(it, root_certs)
            assert False, f'Malformed token {it!r} was accepted'
        except platform_apple.VerificationError:
            pass

    # NOTE: Payload swapped out after signing
    header, _, signature = token.split('.')
    tampered_payload     = dict(payload, notificationType='REFUND')
    tampered             = f'{header}.{b64url_encode(json.dumps(tampered_payload).encode())}.{signature}'
    try:
        _ = platform_apple.verify_and_decode_signed_payload(tampered, root_certs)
        assert False, 'Tampered token was accepted'
    except platform_apple.VerificationError:
        pass

    # NOTE: Signed by a chain that doesn't lead to a trusted root
    untrusted = UNTRUSTED_SIGNER.sign(payload)
    try:
        _ = platform_apple.verify_and_decode_signed_payload(untrusted, root_certs)
        assert False, 'Token from an untrusted chain was accepted'
    except platform_apple.VerificationError:
        pass

    # NOTE: Leaf certificate in x5c doesn't match the key that signed
    mismatched = jwt.encode(payload, UNTRUSTED_SIGNER.leaf_key, algorithm='ES256', headers={'x5c': SIGNER.x5c()})
    try:
        _ = platform_apple.verify_and_decode_signed_payload(mismatched, root_certs)
        assert False, 'Token signed by a key other than the x5c leaf was accepted'
    except platform_apple.VerificationError:
        pass

    # NOTE: Missing x5c and unsigned tokens
    no_x5c   = jwt.encode(payload, SIGNER.leaf_key, algorithm='ES256')
    unsigned = jwt.encode(payload, None, algorithm='none')
    for it in [no_x5c, unsigned]:
        try:
            _ = platform_apple.verify_and_decode_signed_payload(it)
            assert False, 'Token without a usable signature was accepted'
        except platform_apple.VerificationError:
            pass

def test_webhook_stores_and_dedups_notifications():
    with TestingContext(db_path='file:test_webhook_dedup_db?mode=memory&cache=shared', uri=True) as test:
        tx_info = make_transaction_info('1000000001', '1000000001', price=9990, app_account_token='user-a')
        payload = make_notification_payload(AppleNotificationV2.DID_RENEW.value, tx_info, subtype='BILLING_RECOVERY')

        # NOTE: First delivery is stored and handed to the dispatcher
        response: werkzeug.test.TestResponse = test.flask_client.post(platform_apple.FLASK_ROUTE_WEBHOOK,
                                                                      json    = {'signedPayload': SIGNER.sign(payload)},
                                                                      headers = {'X-Request-Id': 'request-1'})
        assert response.status_code == 200
        assert response.json
        assert response.json['success']   == True
        assert response.json['requestId'] == 'request-1'
        notification_id: int = response.json['id']
        assert test.enqueued == [notification_id]

        row = test.notification(notification_id)
        assert row.notification_uuid      == payload['notificationUUID']
        assert row.notification_type      == 'DID_RENEW'
        assert row.subtype                == 'BILLING_RECOVERY'
        assert row.environment            == AppleEnvironment.SANDBOX.value
        assert row.status                 == backend.NotificationStatus.Pending
        assert row.source                 == backend.NotificationSource.Webhook
        assert row.signed_date_unix_ts_ms == payload['signedDate']

        # NOTE: The nested transaction is stored decoded
        data = row.decoded_payload['data']
        assert isinstance(data, dict)
        assert data['signedTransactionInfo']                   == tx_info
        assert row.decoded_transaction_info                    == tx_info

        # NOTE: Apple redelivers the same notification (re-signed), it is acknowledged but not stored
        # again or dispatched again
        response = test.post_notification(payload)
        assert response.status_code == 200
        assert response.json
        assert response.json['success'] == True
        assert response.json['id']      == notification_id
        assert len(response.json['requestId']) > 0
        assert test.enqueued             == [notification_id]
        assert test.count('notifications_raw') == 1

        # NOTE: A redelivery doesn't resurrect a notification that has since been processed
        result = dispatcher.process_notification(test.context(), notification_id, int(time.time() * 1000))
        assert result.outcome == dispatcher.Outcome.Processed
        response = test.post_notification(payload)
        assert response.status_code == 200
        assert test.notification(notification_id).status == backend.NotificationStatus.Processed

def test_webhook_rejects_invalid_payloads():
    with TestingContext(db_path='file:test_webhook_reject_db?mode=memory&cache=shared', uri=True) as test:
        payload = make_notification_payload('TEST')
        token   = SIGNER.sign(payload)
        header, _, signature = token.split('.')
        tampered = f'{header}.{b64url_encode(json.dumps(dict(payload, notificationType="REFUND")).encode())}.{signature}'

        bodies: list[typing.Any] = [
            {},
            {'signedPayload': 123},
            {'signedPayload': 'not-a-jws'},
            {'signedPayload': tampered},
            {'signedPayload': UNTRUSTED_SIGNER.sign(payload)},
            {'signedPayload': SIGNER.sign({'notificationType': 'TEST'})}, # Missing notificationUUID
        ]
        for it in bodies:
            response: werkzeug.test.TestResponse = test.flask_client.post(platform_apple.FLASK_ROUTE_WEBHOOK, json=it)
            assert response.status_code == 400, it
            assert response.json
            assert len(response.json['error'])     > 0
            assert len(response.json['requestId']) > 0

        response = test.flask_client.post(platform_apple.FLASK_ROUTE_WEBHOOK, data='{not json', content_type='application/json')
        assert response.status_code == 400

        # NOTE: Nothing that failed verification was stored or dispatched
        assert test.count('notifications_raw') == 0
        assert len(test.enqueued)              == 0

def test_handlers_are_idempotent():
    with TestingContext(db_path='file:test_handlers_idempotent_db?mode=memory&cache=shared', uri=True) as test:
        ctx  = test.context()
        now  = int(time.time() * 1000)
        info = make_transaction_info('2000000001', '2000000000', price=4990, app_account_token='user-b', purchase_date=now - 1000, revocation_date=now)

        def replay(payload: dict[str, typing.Any]):
            # NOTE: Applying the same notification twice leaves the tables as they were after the
            # first time
            notification_id = test.store_notification(payload)
            err             = base.ErrorSink()
            notification    = platform_apple_types.parse_notification(test.notification(notification_id), err)
            for _ in range(2):
                platform_apple.handle_notification(ctx, notification, now, err)
            assert not err.has(), err.build()

        replay(make_notification_payload(AppleNotificationV2.ONE_TIME_CHARGE.value, info))
        with base.SQLTransaction(test.sql_conn) as tx:
            transaction = backend.get_transaction_tx(tx, '2000000001')
        assert test.count('transactions') == 1
        assert transaction
        assert transaction.original_transaction_id == '2000000000'
        assert transaction.price                   == 4.99
        assert transaction.app_account_token       == 'user-b'
        assert transaction.environment             == AppleEnvironment.SANDBOX.value

        replay(make_notification_payload(AppleNotificationV2.REFUND.value, info))
        with base.SQLTransaction(test.sql_conn) as tx:
            refunds = backend.get_refunds_for_transaction_id_tx(tx, '2000000001')
        assert len(refunds) == 1
        assert refunds[0].refund_unix_ts_ms == now
        assert refunds[0].refund_amount     == 4.99
        assert refunds[0].refund_reason     == '0'

        replay(make_notification_payload(AppleNotificationV2.REFUND_REVERSED.value, info))
        assert test.count('refunds') == 0

        replay(make_notification_payload(AppleNotificationV2.EXPIRED.value, info, subtype='VOLUNTARY'))
        with base.SQLTransaction(test.sql_conn) as tx:
            transaction = backend.get_transaction_tx(tx, '2000000001')
        assert transaction
        assert transaction.expiration_unix_ts_ms == now
        assert test.count('transactions')        == 1

def test_unknown_and_informational_types_are_processed():
    with TestingContext(db_path='file:test_unknown_types_db?mode=memory&cache=shared', uri=True) as test:
        unknown_id = test.store_notification(make_notification_payload('SOMETHING_APPLE_ADDS_LATER'))
        test_id    = test.store_notification(make_notification_payload(AppleNotificationV2.TEST.value))
        batch      = dispatcher.process_batch(test.context(), int(time.time() * 1000))
        assert batch.processed == 2
        assert batch.failed    == 0
        assert test.notification(unknown_id).status == backend.NotificationStatus.Processed
        assert test.notification(test_id).status    == backend.NotificationStatus.Processed

        # NOTE: Routing doesn't depend on anything but the type
        err = base.ErrorSink()
        assert isinstance(platform_apple_types.parse_notification(test.notification(unknown_id), err), platform_apple_types.UnknownNotification)
        assert isinstance(platform_apple_types.parse_notification(test.notification(test_id),    err), platform_apple_types.InformationalNotification)

def test_consumption_request_missing_original_transaction_id():
    with TestingContext(db_path='file:test_consumption_missing_db?mode=memory&cache=shared', uri=True) as test:
        notification_id = test.store_notification(make_notification_payload(AppleNotificationV2.CONSUMPTION_REQUEST.value))
        result          = dispatcher.process_notification(test.context(), notification_id, int(time.time() * 1000))
        assert result.outcome == dispatcher.Outcome.Failed

        row = test.notification(notification_id)
        assert row.status == backend.NotificationStatus.Failed
        assert row.error_message
        assert 'Missing originalTransactionId in CONSUMPTION_REQUEST notification' in row.error_message
        assert test.count('consumption_requests')  == 0
        assert test.count('send_consumption_jobs') == 0

def test_consumption_request_end_to_end(monkeypatch):
    apple = FakeAppleAPI(default=apple_response(202))
    monkeypatch.setattr('platform_apple_api.http_request', apple)

    with TestingContext(db_path='file:test_consumption_e2e_db?mode=memory&cache=shared', uri=True) as test:
        now = int(time.time() * 1000)

        # NOTE: Operator declares a refund preference that is sent along with the consumption data
        response: werkzeug.test.TestResponse = test.flask_client.post(server.ROUTE_CONFIG, json={'refundPreference': 2})
        assert response.status_code == 200
        assert response.json
        assert response.json['result']['refundPreference'] == 2

        # NOTE: The same app user bought into two lineages and was refunded once
        first  = make_transaction_info('3000000001', '3000000001', price=9990,  app_account_token='user-c', purchase_date=now - 2000)
        second = make_transaction_info('3000000002', '3000000002', price=59990, app_account_token='user-c', purchase_date=now - 1000)
        _ = test.store_notification(make_notification_payload(AppleNotificationV2.ONE_TIME_CHARGE.value, first))
        _ = test.store_notification(make_notification_payload(AppleNotificationV2.ONE_TIME_CHARGE.value, second))
        _ = test.store_notification(make_notification_payload(AppleNotificationV2.REFUND.value, dict(first, revocationDate=now - 500)))

        # NOTE: Apple asks for consumption data on the first lineage
        request_payload = make_notification_payload(AppleNotificationV2.CONSUMPTION_REQUEST.value,
                                                    first,
                                                    signed_date = now,
                                                    extra_data  = {'consumptionRequestReason': 'UNINTENDED_PURCHASE'})
        notification_id = test.store_notification(request_payload)

        batch = dispatcher.process_batch(test.context(), now)
        assert batch.processed == 4, batch.errors
        assert batch.failed    == 0
        assert test.notification(notification_id).status == backend.NotificationStatus.Processed

        # NOTE: Exactly one consumption response went out
        assert len(apple.requests) == 1
        sent = apple.requests[0]
        assert sent.method == 'PUT'
        assert sent.url    == f'{platform_apple_api.SANDBOX_BASE_URL}/transactions/consumption/3000000001'
        assert sent.headers['Authorization'].startswith('Bearer ')
        assert sent.body == {
            'customerConsented':        True,
            'consumptionStatus':        0,
            'platform':                 1,
            'sampleContentProvided':    True,
            'deliveryStatus':           0,
            'appAccountToken':          'user-c',
            'accountTenure':            0,
            'playTime':                 0,
            'lifetimeDollarsPurchased': 3,  # 9.99 + 59.99
            'lifetimeDollarsRefunded':  2,  # 9.99
            'userStatus':               0,
            'refundPreference':         2,
        }

        with base.SQLTransaction(test.sql_conn) as tx:
            request = backend.get_consumption_request_for_notification_tx(tx, notification_id)
            assert request
            job     = backend.get_latest_send_consumption_job_for_request_tx(tx, request.id)
        assert request.status                     == backend.ConsumptionRequestStatus.Sent
        assert request.original_transaction_id    == '3000000001'
        assert request.consumption_request_reason == 'UNINTENDED_PURCHASE'
        assert request.environment                == AppleEnvironment.SANDBOX.value
        assert request.request_unix_ts_ms         == now
        assert request.deadline_unix_ts_ms        == now + 12 * base.MILLISECONDS_IN_HOUR
        assert job
        assert job.status               == backend.JobStatus.Sent
        assert job.response_status_code == 202
        assert job.sent_unix_ts_ms      == now
        assert job.consumption_data     == sent.body

        # NOTE: The call was audited without leaking the bearer token
        logs = backend.get_apple_api_logs_list(test.sql_conn)
        assert len(logs) == 1
        assert logs[0].method          == 'PUT'
        assert logs[0].response_status == 202
        assert logs[0].duration_ms is not None
        assert logs[0].environment     == AppleEnvironment.SANDBOX.value
        assert logs[0].request_headers
        assert sent.headers['Authorization'] not in logs[0].request_headers

        # NOTE: Replaying the consumption request doesn't answer Apple a second time
        err          = base.ErrorSink()
        notification = platform_apple_types.parse_notification(test.notification(notification_id), err)
        platform_apple.handle_notification(test.context(), notification, now, err)
        assert not err.has(), err.build()
        assert len(apple.requests)                 == 1
        assert test.count('consumption_requests')  == 1
        assert test.count('send_consumption_jobs') == 1

def test_consumption_data_without_app_account_token():
    with TestingContext(db_path='file:test_consumption_data_db?mode=memory&cache=shared', uri=True) as test:
        now     = int(time.time() * 1000)
        runtime = backend.RuntimeRow(refund_preference=1)
        with base.SQLTransaction(test.sql_conn) as tx:
            # NOTE: Nothing on record for the lineage
            data = consumption.compute_consumption_data_tx(tx, 'unknown-lineage', AppleEnvironment.SANDBOX.value, runtime)
            assert data['lifetimeDollarsPurchased'] == 0
            assert data['lifetimeDollarsRefunded']  == 0
            assert data['appAccountToken']          == ''
            assert data['refundPreference']         == 1

            # NOTE: On record but the purchases can't be attributed to a user
            backend.upsert_transaction_tx(tx, backend.TransactionRow(transaction_id          = '4000000001',
                                                                     original_transaction_id = '4000000001',
                                                                     price                   = 19.99,
                                                                     environment             = AppleEnvironment.SANDBOX.value), now)
            data = consumption.compute_consumption_data_tx(tx, '4000000001', AppleEnvironment.SANDBOX.value, runtime)
            assert data['lifetimeDollarsPurchased'] == 0
            assert data['lifetimeDollarsRefunded']  == 0
            assert data['appAccountToken']          == ''

            # NOTE: Matching is scoped by environment
            data = consumption.compute_consumption_data_tx(tx, '4000000001', AppleEnvironment.PRODUCTION.value, runtime)
            assert data['lifetimeDollarsPurchased'] == 0

def test_consumption_request_uses_supplied_deadline(monkeypatch):
    apple = FakeAppleAPI()
    monkeypatch.setattr('platform_apple_api.http_request', apple)

    with TestingContext(db_path='file:test_consumption_deadline_db?mode=memory&cache=shared', uri=True) as test:
        now      = int(time.time() * 1000)
        deadline = now + 3 * base.MILLISECONDS_IN_HOUR

        # NOTE: Reason given as an object carrying the deadline in unix milliseconds
        info            = make_transaction_info('4100000001', '4100000001')
        payload         = make_notification_payload(AppleNotificationV2.CONSUMPTION_REQUEST.value,
                                                    info,
                                                    signed_date = now,
                                                    extra_data  = {'consumptionRequestReason': {'reason': 'UNINTENDED_PURCHASE', 'deadline': deadline}})
        notification_id = test.store_notification(payload)
        assert dispatcher.process_notification(test.context(), notification_id, now).outcome == dispatcher.Outcome.Processed

        # NOTE: Deadline given as an ISO 8601 date next to the bare reason string
        info                = make_transaction_info('4100000002', '4100000002')
        payload             = make_notification_payload(AppleNotificationV2.CONSUMPTION_REQUEST.value,
                                                        info,
                                                        signed_date = now,
                                                        extra_data  = {'consumptionRequestReason': 'OTHER', 'deadline': '2030-01-02T03:04:05Z'})
        iso_notification_id = test.store_notification(payload)
        assert dispatcher.process_notification(test.context(), iso_notification_id, now).outcome == dispatcher.Outcome.Processed

        with base.SQLTransaction(test.sql_conn) as tx:
            request     = backend.get_consumption_request_for_notification_tx(tx, notification_id)
            iso_request = backend.get_consumption_request_for_notification_tx(tx, iso_notification_id)
        assert request
        assert request.deadline_unix_ts_ms        == deadline
        assert request.consumption_request_reason == 'UNINTENDED_PURCHASE'
        assert iso_request
        assert iso_request.deadline_unix_ts_ms        == 1893553445000
        assert iso_request.consumption_request_reason == 'OTHER'

        # NOTE: A deadline that isn't a date fails the notification instead of guessing one
        info        = make_transaction_info('4100000003', '4100000003')
        payload     = make_notification_payload(AppleNotificationV2.CONSUMPTION_REQUEST.value, info, extra_data={'deadline': [1, 2]})
        bad_id      = test.store_notification(payload)
        result      = dispatcher.process_notification(test.context(), bad_id, now)
        assert result.outcome == dispatcher.Outcome.Failed
        assert result.error and 'deadline' in result.error

def test_admin_responses_carry_request_id():
    with TestingContext(db_path='file:test_request_id_db?mode=memory&cache=shared', uri=True) as test:
        # NOTE: The caller's ID is echoed back in the body and the header
        response: werkzeug.test.TestResponse = test.flask_client.post(server.ROUTE_PROCESS_BATCH, json={}, headers={server.REQUEST_ID_HEADER: 'ops-run-42'})
        assert response.status_code == 200, response.json
        assert response.json
        assert response.json['requestId']                 == 'ops-run-42'
        assert response.headers[server.REQUEST_ID_HEADER] == 'ops-run-42'

        # NOTE: One is generated when the caller has none, failures carry it too
        response = test.flask_client.post(server.ROUTE_RETRY_NOTIFICATION, json={})
        assert response.status_code == 400
        assert response.json
        request_id = response.json['requestId']
        assert isinstance(request_id, str) and len(request_id) == 32
        assert response.headers[server.REQUEST_ID_HEADER] == request_id

        other = test.flask_client.post(server.ROUTE_RUN_SWEEP)
        assert other.status_code == 200, other.json
        assert other.json
        assert other.json['requestId'] != request_id

class LogCapture(logging.Handler):
    def __init__(self):
        super().__init__()
        self.messages: list[str] = []

    def emit(self, record: logging.LogRecord):
        self.messages.append(record.getMessage())

def test_consumption_job_failure_is_logged_as_failure(monkeypatch):
    apple = FakeAppleAPI()
    monkeypatch.setattr('platform_apple_api.http_request', apple)

    capture = LogCapture()
    consumption.log.addHandler(capture)
    try:
        with TestingContext(db_path='file:test_consumption_job_log_db?mode=memory&cache=shared', uri=True) as test:
            ctx             = test.context()
            now             = int(time.time() * 1000)
            info            = make_transaction_info('5100000001', '5100000001')
            notification_id = test.store_notification(make_notification_payload(AppleNotificationV2.CONSUMPTION_REQUEST.value, info, signed_date=now))
            assert dispatcher.process_notification(ctx, notification_id, now).outcome == dispatcher.Outcome.Processed

            # NOTE: A later job for the already answered request exhausts its retries, the request
            # can't move from sent to failed
            apple.default = apple_response(500, {'errorCode': 5000000, 'errorMessage': 'An unknown error occurred.'})
            with base.SQLTransaction(test.sql_conn) as tx:
                request = backend.get_consumption_request_for_notification_tx(tx, notification_id)
                assert request
                assert request.status == backend.ConsumptionRequestStatus.Sent
                job_id = consumption.create_job_for_request_tx(tx, request, ctx.runtime, now)

            for attempt in range(backend.MAX_JOB_RETRIES):
                sent = consumption.send_job(ctx, job_id, now + attempt * backend.JOB_RETRY_BACKOFF_MS)
            assert sent.status == backend.JobStatus.Failed
    finally:
        consumption.log.removeHandler(capture)

    assert any(f'Consumption job #{job_id} failed and its request could not be marked failed' in it for it in capture.messages)
    assert not any('was delivered' in it for it in capture.messages)

def test_consumption_job_retry_ceiling(monkeypatch):
    apple = FakeAppleAPI(default=apple_response(500, {'errorCode': 5000000, 'errorMessage': 'An unknown error occurred.'}))
    monkeypatch.setattr('platform_apple_api.http_request', apple)

    with TestingContext(db_path='file:test_consumption_retry_db?mode=memory&cache=shared', uri=True) as test:
        ctx             = test.context()
        now             = int(time.time() * 1000)
        info            = make_transaction_info('5000000001', '5000000001', price=990, app_account_token='user-d')
        notification_id = test.store_notification(make_notification_payload(AppleNotificationV2.CONSUMPTION_REQUEST.value, info, signed_date=now))

        # NOTE: The send failing doesn't fail the notification, the job is retried on its own
        result = dispatcher.process_notification(ctx, notification_id, now)
        assert result.outcome == dispatcher.Outcome.Processed
        assert len(apple.requests) == 1

        with base.SQLTransaction(test.sql_conn) as tx:
            request = backend.get_consumption_request_for_notification_tx(tx, notification_id)
            assert request
            job     = backend.get_latest_send_consumption_job_for_request_tx(tx, request.id)
        assert job
        assert job.status               == backend.JobStatus.Pending
        assert job.retry_count          == 1
        assert job.response_status_code == 500
        assert job.error_message        == 'An unknown error occurred.'
        assert job.scheduled_unix_ts_ms == now + backend.JOB_RETRY_BACKOFF_MS

        # NOTE: Not due until the backoff elapsed
        assert consumption.send_pending_jobs(ctx, unix_ts_ms=now) == []
        assert len(apple.requests) == 1

        second = consumption.send_pending_jobs(ctx, unix_ts_ms=now + backend.JOB_RETRY_BACKOFF_MS)
        assert len(second) == 1
        assert second[0].status == backend.JobStatus.Pending

        third = consumption.send_pending_jobs(ctx, unix_ts_ms=now + 2 * backend.JOB_RETRY_BACKOFF_MS)
        assert len(third) == 1
        assert third[0].status == backend.JobStatus.Failed
        assert len(apple.requests) == backend.MAX_JOB_RETRIES

        # NOTE: A failed job is never picked up again and its request failed with it
        assert consumption.send_pending_jobs(ctx, unix_ts_ms=now + base.MILLISECONDS_IN_DAY) == []
        assert len(apple.requests) == backend.MAX_JOB_RETRIES
        with base.SQLTransaction(test.sql_conn) as tx:
            job     = backend.get_send_consumption_job_tx(tx, job.id)
            request = backend.get_consumption_request_tx(tx, request.id)
        assert job
        assert job.status      == backend.JobStatus.Failed
        assert job.retry_count == backend.MAX_JOB_RETRIES
        assert request
        assert request.status  == backend.ConsumptionRequestStatus.Failed

        # NOTE: Operator resends once Apple has recovered
        apple.default = apple_response(200)
        response: werkzeug.test.TestResponse = test.flask_client.post(server.ROUTE_RESEND_CONSUMPTION, json={'requestId': request.id})
        assert response.status_code == 200, response.json
        assert response.json
        assert response.json['result']['job_id']               == job.id
        assert response.json['result']['status']               == backend.JobStatus.Sent.value
        assert response.json['result']['response_status_code'] == 200
        assert response.json['result']['sent_at']
        with base.SQLTransaction(test.sql_conn) as tx:
            request = backend.get_consumption_request_tx(tx, request.id)
        assert request
        assert request.status == backend.ConsumptionRequestStatus.Sent

        # NOTE: Exactly one of the two IDs must be given
        response = test.flask_client.post(server.ROUTE_RESEND_CONSUMPTION, json={'requestId': request.id, 'jobId': job.id})
        assert response.status_code == 400
        response = test.flask_client.post(server.ROUTE_RESEND_CONSUMPTION, json={})
        assert response.status_code == 400
        response = test.flask_client.post(server.ROUTE_RESEND_CONSUMPTION, json={'jobId': 999})
        assert response.status_code == 400

def test_api_requires_credentials(monkeypatch):
    apple = FakeAppleAPI()
    monkeypatch.setattr('platform_apple_api.http_request', apple)

    with TestingContext(db_path='file:test_api_credentials_db?mode=memory&cache=shared', uri=True, api_config=platform_apple_api.Config()) as test:
        result = test.context().client().request_test_notification()
        assert not result.success
        assert result.status        is None
        assert result.error_message == 'App Store Server API credentials are not configured'
        assert len(apple.requests)  == 0
        assert len(backend.get_apple_api_logs_list(test.sql_conn)) == 0

        response: werkzeug.test.TestResponse = test.flask_client.post(server.ROUTE_TEST_NOTIFICATION, json={})
        assert response.status_code == 502
        assert response.json
        assert response.json['errorMessage'] == result.error_message

def test_service_token():
    config  = make_api_config()
    now     = int(time.time())
    token   = platform_apple_api.mint_service_token(config, now)
    header  = jwt.get_unverified_header(token)
    assert header['alg'] == 'ES256'
    assert header['kid'] == config.key_id
    assert header['typ'] == 'JWT'

    public_key = serialization.load_pem_private_key(config.private_key, password=None).public_key()
    claims     = jwt.decode(token, key=public_key, algorithms=['ES256'], audience=platform_apple_api.TOKEN_AUDIENCE) # pyright: ignore[reportArgumentType]
    assert claims['iss'] == config.issuer_id
    assert claims['bid'] == config.bundle_id
    assert claims['iat'] == now
    assert claims['exp'] == now + platform_apple_api.TOKEN_LIFETIME_S

    # NOTE: A client reuses its token and one is kept per environment
    with TestingContext(db_path='file:test_service_token_db?mode=memory&cache=shared', uri=True, api_config=config) as test:
        ctx     = test.context()
        sandbox = ctx.client('sandbox')
        assert sandbox is ctx.client(AppleEnvironment.SANDBOX.value)
        assert sandbox is ctx.client()  # Default environment of the config
        assert sandbox.service_token() == sandbox.service_token()
        assert sandbox.base_url() == platform_apple_api.SANDBOX_BASE_URL

        production = ctx.client(AppleEnvironment.PRODUCTION.value)
        assert production is not sandbox
        assert production.base_url() == platform_apple_api.PRODUCTION_BASE_URL

def test_test_notification_status_retries_only_while_not_found(monkeypatch):
    sleeps: list[float] = []
    monkeypatch.setattr('platform_apple_api.sleep_s', lambda seconds: sleeps.append(seconds))
    not_found = apple_response(404, {'errorCode': 4040008, 'errorMessage': 'An invalid request was sent, the test notification could not be found.'})

    with TestingContext(db_path='file:test_test_notification_db?mode=memory&cache=shared', uri=True) as test:
        client = test.context().client(AppleEnvironment.SANDBOX.value)

        # NOTE: Not found twice, then Apple has the result
        apple = FakeAppleAPI(responses=[not_found, not_found], default=apple_response(200, {'signedPayload': 'x.y.z', 'sendAttempts': []}))
        monkeypatch.setattr('platform_apple_api.http_request', apple)
        result = client.get_test_notification_status('test-token')
        assert result.success
        assert result.data
        assert result.data['signedPayload'] == 'x.y.z'
        assert len(apple.requests) == 3
        assert sleeps == [2.0, 2.0]
        assert apple.requests[0].url == f'{platform_apple_api.SANDBOX_BASE_URL}/notifications/test/test-token'

        # NOTE: Never found, gives up after the retries
        sleeps.clear()
        apple = FakeAppleAPI(default=not_found)
        monkeypatch.setattr('platform_apple_api.http_request', apple)
        result = client.get_test_notification_status('test-token')
        assert not result.success
        assert result.error_code == 4040008
        assert len(apple.requests) == 1 + platform_apple_api.TEST_NOTIFICATION_STATUS_MAX_RETRIES
        assert sleeps == [2.0] * platform_apple_api.TEST_NOTIFICATION_STATUS_MAX_RETRIES

        # NOTE: Any other error is returned straight away
        sleeps.clear()
        apple = FakeAppleAPI(default=apple_response(401))
        monkeypatch.setattr('platform_apple_api.http_request', apple)
        result = client.get_test_notification_status('test-token')
        assert not result.success
        assert result.status        == 401
        assert result.error_message == 'HTTP 401'
        assert len(apple.requests)  == 1
        assert sleeps               == []

        # NOTE: Through the admin route Apple's error is passed through
        apple = FakeAppleAPI(default=not_found)
        monkeypatch.setattr('platform_apple_api.http_request', apple)
        response: werkzeug.test.TestResponse = test.flask_client.post(server.ROUTE_TEST_NOTIFICATION_STATUS, json={'testNotificationToken': 'test-token'})
        assert response.status_code == 404
        assert response.json
        assert response.json['errorCode'] == 4040008

        response = test.flask_client.post(server.ROUTE_TEST_NOTIFICATION_STATUS, json={})
        assert response.status_code == 400

def test_notification_history_paging(monkeypatch):
    sleeps: list[float] = []
    monkeypatch.setattr('platform_apple_api.sleep_s', lambda seconds: sleeps.append(seconds))

    with TestingContext(db_path='file:test_history_paging_db?mode=memory&cache=shared', uri=True) as test:
        client = test.context().client(AppleEnvironment.SANDBOX.value)
        now    = int(time.time() * 1000)

        # NOTE: Paging stops when Apple says there's nothing more
        apple = FakeAppleAPI(responses=[
            apple_response(200, {'notificationHistory': [{'signedPayload': 'a'}, {'signedPayload': 'b'}], 'hasMore': True, 'paginationToken': 'page-2'}),
            apple_response(200, {'notificationHistory': [{'signedPayload': 'c'}], 'hasMore': False}),
        ])
        monkeypatch.setattr('platform_apple_api.http_request', apple)
        history = client.get_notification_history(now - base.MILLISECONDS_IN_DAY, now, 'REFUND')
        assert [it['signedPayload'] for it in history.items] == ['a', 'b', 'c']
        assert history.pages      == 2
        assert history.has_more   == False
        assert history.error_code is None
        assert len(apple.requests) == 2
        assert apple.requests[0].url.endswith('/notifications/history')
        assert apple.requests[1].url.endswith('/notifications/history?paginationToken=page-2')
        assert apple.requests[0].body == {'startDate': now - base.MILLISECONDS_IN_DAY, 'endDate': now, 'notificationType': 'REFUND'}
        assert sleeps == [platform_apple_api.HISTORY_PAGE_DELAY_S]

        # NOTE: A failing page stops paging, the pages collected so far are kept
        apple = FakeAppleAPI(responses=[
            apple_response(200, {'notificationHistory': [{'signedPayload': 'a'}], 'hasMore': True, 'paginationToken': 'page-2'}),
            apple_response(429, {'errorCode': 4290000, 'errorMessage': 'Rate limit exceeded.'}),
            apple_response(200, {'notificationHistory': [{'signedPayload': 'never'}], 'hasMore': False}),
        ])
        monkeypatch.setattr('platform_apple_api.http_request', apple)
        history = client.get_notification_history(now - base.MILLISECONDS_IN_DAY, now, None)
        assert [it['signedPayload'] for it in history.items] == ['a']
        assert history.pages         == 2
        assert history.error_code    == 4290000
        assert history.error_message == 'Rate limit exceeded.'
        assert len(apple.requests)   == 2
        assert 'notificationType' not in apple.requests[0].body

        # NOTE: The admin route normalizes the dates the same way as a backfill
        apple = FakeAppleAPI(default=apple_response(200, {'notificationHistory': [], 'hasMore': False}))
        monkeypatch.setattr('platform_apple_api.http_request', apple)
        response: werkzeug.test.TestResponse = test.flask_client.post(server.ROUTE_NOTIFICATION_HISTORY, json={'startDate': '2030-01-02', 'endDate': '2030-01-01'})
        assert response.status_code == 200, response.json
        assert response.json
        end_of_today = base.round_unix_ts_ms_to_end_of_day(int(time.time() * 1000))
        assert apple.requests[0].body['endDate'] <= end_of_today
        assert apple.requests[0].body['startDate'] <= apple.requests[0].body['endDate']
        assert response.json['result']['environment'] == AppleEnvironment.SANDBOX.value

def test_backfill_imports_history(monkeypatch):
    apple = FakeAppleAPI()
    monkeypatch.setattr('platform_apple_api.http_request', apple)
    monkeypatch.setattr('platform_apple_api.sleep_s', lambda seconds: None)

    # NOTE: One notification per batch so that processing the imports has to pause between batches
    sleeps: list[float] = []
    monkeypatch.setattr('backend.DISPATCH_BATCH_LIMIT', 1)
    monkeypatch.setattr('server.sleep_s', lambda seconds: sleeps.append(seconds))

    with TestingContext(db_path='file:test_backfill_db?mode=memory&cache=shared', uri=True) as test:
        # NOTE: One of the notifications already came in through the webhook
        info           = make_transaction_info('6000000001', '6000000001', price=1990, app_account_token='user-e')
        purchase       = make_notification_payload(AppleNotificationV2.ONE_TIME_CHARGE.value, info)
        refund         = make_notification_payload(AppleNotificationV2.REFUND.value, dict(info, revocationDate=int(time.time() * 1000)))
        renewal        = make_notification_payload(AppleNotificationV2.DID_CHANGE_RENEWAL_STATUS.value, info, subtype='AUTO_RENEW_DISABLED')
        webhook_id     = test.store_notification(purchase)

        apple.responses = [apple_response(200, {
            'notificationHistory': [{'signedPayload': SIGNER.sign(it)} for it in (purchase, refund, renewal)] + [{'unexpected': True}],
            'hasMore':             False,
        })]
        response: werkzeug.test.TestResponse = test.flask_client.post(server.ROUTE_BACKFILL, json={'startDate': '2024-01-01', 'process': True})
        assert response.status_code == 200, response.json
        assert response.json
        result = response.json['result']
        assert result['pages']       == 1
        assert result['fetched']     == 4
        assert result['imported']    == 2
        assert result['duplicates']  == 1
        assert result['failed']      == 1
        assert result['environment'] == AppleEnvironment.SANDBOX.value
        assert result['processed']['processed'] == 2
        assert result['processed']['failed']    == 0
        assert result['batches']                == 2
        assert sleeps                           == [server.PROCESS_PENDING_BATCH_DELAY_S]

        # NOTE: History imports keep Apple's payload as it was and store the transaction alongside
        with base.SQLTransaction(test.sql_conn) as tx:
            imported = backend.get_notification_by_uuid_tx(tx, refund['notificationUUID'])
            original = backend.get_notification_tx(tx, webhook_id)
        assert imported
        assert imported.source                   == backend.NotificationSource.HistoryAPI
        assert imported.status                   == backend.NotificationStatus.Processed
        assert imported.decoded_transaction_info
        assert imported.decoded_transaction_info['transactionId'] == '6000000001'
        data = imported.decoded_payload['data']
        assert isinstance(data, dict)
        assert isinstance(data['signedTransactionInfo'], str)
        assert original
        assert original.source == backend.NotificationSource.Webhook
        assert original.status == backend.NotificationStatus.Pending

        # NOTE: The refund was applied from the transaction the importer decoded
        assert test.count('refunds') == 1
        assert backend.get_runtime(test.sql_conn).last_backfill_unix_ts_ms > 0

        # NOTE: Bad input is rejected before Apple is contacted
        requests_before = len(apple.requests)
        response = test.flask_client.post(server.ROUTE_BACKFILL, json={'notificationType': 'NOT_A_TYPE'})
        assert response.status_code == 400
        response = test.flask_client.post(server.ROUTE_BACKFILL, json={'startDate': 'last tuesday'})
        assert response.status_code == 400
        assert len(apple.requests) == requests_before

def test_notification_sweep():
    with TestingContext(db_path='file:test_sweep_db?mode=memory&cache=shared', uri=True) as test:
        now            = int(time.time() * 1000)
        minute         = base.MILLISECONDS_IN_MINUTE
        stale_id       = test.store_row('SOMETHING_APPLE_ADDS_LATER', now - 10 * minute)
        fresh_id       = test.store_row('SOMETHING_APPLE_ADDS_LATER', now - 1 * minute)
        retry_id       = test.store_row(AppleNotificationV2.DID_FAIL_TO_RENEW.value, now - 90 * minute, backend.NotificationStatus.Failed)
        too_soon_id    = test.store_row(AppleNotificationV2.DID_FAIL_TO_RENEW.value, now - 90 * minute, backend.NotificationStatus.Failed, retry_count=1, last_retry_unix_ts_ms=now - 10 * minute)
        exhausted_id   = test.store_row(AppleNotificationV2.DID_FAIL_TO_RENEW.value, now - 90 * minute, backend.NotificationStatus.Failed, retry_count=backend.MAX_NOTIFICATION_RETRIES)
        last_chance_id = test.store_row(AppleNotificationV2.CONSUMPTION_REQUEST.value, now - 90 * minute, backend.NotificationStatus.Failed, retry_count=backend.MAX_NOTIFICATION_RETRIES - 1, last_retry_unix_ts_ms=now - 60 * minute)

        sweep = dispatcher.run_notification_sweep(test.context(), now)
        assert sweep.stale_pending    == 1
        assert sweep.requeued_failed  == 2
        assert sweep.failed_permanent == 2
        assert sweep.batch.processed  == 2
        assert sweep.batch.failed     == 1

        # NOTE: Pending for too long, dispatched again
        assert test.notification(stale_id).status == backend.NotificationStatus.Processed

        # NOTE: Recently received, left to the dispatcher
        assert test.notification(fresh_id).status == backend.NotificationStatus.Pending

        # NOTE: Failed and due a retry, retry bookkeeping bumped
        retried = test.notification(retry_id)
        assert retried.status                == backend.NotificationStatus.Processed
        assert retried.retry_count           == 1
        assert retried.last_retry_unix_ts_ms == now

        # NOTE: Retried too recently
        too_soon = test.notification(too_soon_id)
        assert too_soon.status      == backend.NotificationStatus.Failed
        assert too_soon.retry_count == 1

        # NOTE: Out of retries
        assert test.notification(exhausted_id).status == backend.NotificationStatus.FailedPermanent

        # NOTE: Used its last retry and failed again
        last_chance = test.notification(last_chance_id)
        assert last_chance.status      == backend.NotificationStatus.FailedPermanent
        assert last_chance.retry_count == backend.MAX_NOTIFICATION_RETRIES
        assert last_chance.error_message

        assert backend.get_runtime(test.sql_conn).last_sweep_unix_ts_ms == now

        # NOTE: Nothing left for a second sweep to do
        sweep = dispatcher.run_notification_sweep(test.context(), now)
        assert sweep.stale_pending    == 0
        assert sweep.requeued_failed  == 0
        assert sweep.failed_permanent == 0

def test_dispatch_queue():
    dispatch_queue = dispatcher.DispatchQueue(max_size=2)
    assert dispatch_queue.enqueue(1)
    assert dispatch_queue.enqueue(2)
    assert not dispatch_queue.enqueue(3)  # Full, left for the sweep
    assert dispatch_queue.event.is_set()
    assert dispatch_queue.drain(limit=1) == [1]
    assert dispatch_queue.event.is_set()
    assert dispatch_queue.drain() == [2]
    assert not dispatch_queue.event.is_set()
    assert dispatch_queue.drain() == []

    with TestingContext(db_path='file:test_dispatch_queue_db?mode=memory&cache=shared', uri=True) as test:
        dispatch_queue    = dispatcher.DispatchQueue()
        test.core.enqueue = dispatch_queue.enqueue
        notification_id   = test.store_notification(make_notification_payload(AppleNotificationV2.TEST.value))
        batch             = dispatcher.process_queued_notifications(test.context(), dispatch_queue, int(time.time() * 1000))
        assert batch.processed == 1
        assert test.notification(notification_id).status == backend.NotificationStatus.Processed

        # NOTE: Processing the same ID again is a no-op, it's no longer pending
        assert dispatcher.process_notification(test.context(), notification_id, int(time.time() * 1000)).outcome == dispatcher.Outcome.Skipped

def test_admin_process_pending(monkeypatch):
    sleeps: list[float] = []
    monkeypatch.setattr('server.sleep_s', lambda seconds: sleeps.append(seconds))

    with TestingContext(db_path='file:test_process_pending_db?mode=memory&cache=shared', uri=True) as test:
        now        = int(time.time() * 1000)
        failing_id = test.store_row(AppleNotificationV2.CONSUMPTION_REQUEST.value, now - 4000)
        _          = test.store_row(AppleNotificationV2.TEST.value,                now - 3000)
        _          = test.store_row(AppleNotificationV2.TEST.value,                now - 2000)
        _          = test.store_row('SOMETHING_APPLE_ADDS_LATER',                  now - 1000)

        response: werkzeug.test.TestResponse = test.flask_client.post(server.ROUTE_PROCESS_PENDING, json={'limit': 2})
        assert response.status_code == 200, response.json
        assert response.json
        result = response.json['result']
        assert result['batches'] == 2
        assert result['summary'] == {'total': 4, 'processed': 3, 'failed': 1, 'pending': 0}
        assert result['results'][0]['failed'] == 1
        assert result['results'][1]['processed'] == 2

        # NOTE: Backs off further after a batch with failures, no pause after the last batch
        assert sleeps == [server.PROCESS_PENDING_FAILURE_DELAY_S]
        assert test.notification(failing_id).status == backend.NotificationStatus.Failed

        # NOTE: Failed notifications are only picked up by a batch when asked for
        response = test.flask_client.post(server.ROUTE_PROCESS_BATCH, json={})
        assert response.status_code == 200
        assert response.json
        assert response.json['result']['failed'] + response.json['result']['processed'] == 0

        response = test.flask_client.post(server.ROUTE_PROCESS_BATCH, json={'includeFailed': True, 'notificationType': 'CONSUMPTION_REQUEST'})
        assert response.status_code == 200
        assert response.json
        assert response.json['result']['failed'] == 1
        assert test.notification(failing_id).retry_count == 0

        response = test.flask_client.post(server.ROUTE_PROCESS_PENDING, json={'source': 'carrier_pigeon'})
        assert response.status_code == 400
        response = test.flask_client.post(server.ROUTE_PROCESS_PENDING, json={'limit': 'ten'})
        assert response.status_code == 400

def test_admin_retry_and_reprocess(monkeypatch):
    apple = FakeAppleAPI(default=apple_response(200))
    monkeypatch.setattr('platform_apple_api.http_request', apple)

    with TestingContext(db_path='file:test_retry_reprocess_db?mode=memory&cache=shared', uri=True) as test:
        now = int(time.time() * 1000)

        # NOTE: Reviving a permanently failed notification
        dead_id = test.store_row('SOMETHING_APPLE_ADDS_LATER', now, backend.NotificationStatus.FailedPermanent, retry_count=backend.MAX_NOTIFICATION_RETRIES)
        response: werkzeug.test.TestResponse = test.flask_client.post(server.ROUTE_RETRY_NOTIFICATION, json={'notificationId': dead_id})
        assert response.status_code == 200, response.json
        assert response.json
        assert response.json['result']['outcome'] == 'processed'
        assert test.notification(dead_id).status == backend.NotificationStatus.Processed

        # NOTE: Processed notifications can't be retried
        response = test.flask_client.post(server.ROUTE_RETRY_NOTIFICATION, json={'notificationId': dead_id})
        assert response.status_code == 400
        response = test.flask_client.post(server.ROUTE_RETRY_NOTIFICATION, json={'notificationId': 12345})
        assert response.status_code == 400
        response = test.flask_client.post(server.ROUTE_RETRY_NOTIFICATION, json={})
        assert response.status_code == 400

        # NOTE: Reprocessing is only for consumption requests
        other_payload = make_notification_payload(AppleNotificationV2.TEST.value)
        _             = test.store_notification(other_payload)
        response      = test.flask_client.post(server.ROUTE_REPROCESS_NOTIFICATION, json={'notificationUuid': other_payload['notificationUUID']})
        assert response.status_code == 400
        assert response.json
        assert response.json['msg'] == 'This notification is not a CONSUMPTION_REQUEST or was not found'

        response = test.flask_client.post(server.ROUTE_REPROCESS_NOTIFICATION, json={'notificationUuid': str(uuid.uuid4())})
        assert response.status_code == 400

        # NOTE: Answer a consumption request, then answer it again with fresh data
        info            = make_transaction_info('7000000001', '7000000001', price=2990, app_account_token='user-f')
        payload         = make_notification_payload(AppleNotificationV2.CONSUMPTION_REQUEST.value, info)
        notification_id = test.store_notification(payload)
        batch           = dispatcher.process_batch(test.context(), now)
        assert batch.processed == 2  # Along with the TEST notification
        assert len(apple.requests) == 1

        # NOTE: Purchase not on record yet, every measured field is sent as undeclared
        first_body = apple.requests[0].body
        assert first_body['customerConsented']        is True
        assert first_body['platform']                 == 1
        assert first_body['deliveryStatus']           == 0
        assert first_body['consumptionStatus']        == 0
        assert first_body['lifetimeDollarsPurchased'] == 0
        assert first_body['lifetimeDollarsRefunded']  == 0
        assert first_body['appAccountToken']          == ''
        with base.SQLTransaction(test.sql_conn) as tx:
            first_request = backend.get_consumption_request_for_notification_tx(tx, notification_id)
            assert first_request
            first_job     = backend.get_latest_send_consumption_job_for_request_tx(tx, first_request.id)
        assert first_request.status == backend.ConsumptionRequestStatus.Sent
        assert first_job
        assert first_job.status     == backend.JobStatus.Sent

        _     = test.store_notification(make_notification_payload(AppleNotificationV2.ONE_TIME_CHARGE.value, info))
        batch = dispatcher.process_batch(test.context(), now)
        assert batch.processed == 1

        response = test.flask_client.post(server.ROUTE_REPROCESS_NOTIFICATION, json={'notificationUuid': payload['notificationUUID']})
        assert response.status_code == 200, response.json
        assert response.json
        result = response.json['result']
        assert result['notification_uuid']       == payload['notificationUUID']
        assert result['original_transaction_id'] == '7000000001'
        assert result['job_status']              == backend.JobStatus.Sent.value
        assert result['response_code']           == 200
        assert result['sent_at']
        assert len(apple.requests) == 2
        assert apple.requests[1].body['lifetimeDollarsPurchased'] == 2  # 2.99
        assert apple.requests[1].body['appAccountToken']          == 'user-f'

        # NOTE: Both jobs are kept for the audit trail
        with base.SQLTransaction(test.sql_conn) as tx:
            request = backend.get_consumption_request_for_notification_tx(tx, notification_id)
            assert request
            latest  = backend.get_latest_send_consumption_job_for_request_tx(tx, request.id)
        assert test.count('send_consumption_jobs') == 2
        assert latest
        assert latest.id      == result['job_id']
        assert request.status == backend.ConsumptionRequestStatus.Sent

        # NOTE: Resending a specific job
        response = test.flask_client.post(server.ROUTE_RESEND_CONSUMPTION, json={'jobId': latest.id})
        assert response.status_code == 200, response.json
        assert len(apple.requests) == 3

def test_admin_process_jobs_and_sweep(monkeypatch):
    apple = FakeAppleAPI(default=apple_response(503))
    monkeypatch.setattr('platform_apple_api.http_request', apple)

    with TestingContext(db_path='file:test_process_jobs_db?mode=memory&cache=shared', uri=True) as test:
        info            = make_transaction_info('8000000001', '8000000001')
        notification_id = test.store_notification(make_notification_payload(AppleNotificationV2.CONSUMPTION_REQUEST.value, info))

        response: werkzeug.test.TestResponse = test.flask_client.post(server.ROUTE_RUN_SWEEP)
        assert response.status_code == 200, response.json
        assert response.json
        assert response.json['result']['notifications']['stalePending'] == 0  # Too recent for the sweep
        assert test.notification(notification_id).status == backend.NotificationStatus.Pending

        response = test.flask_client.post(server.ROUTE_PROCESS_BATCH, json={'source': 'webhook'})
        assert response.status_code == 200
        assert len(apple.requests) == 1

        # NOTE: The job is backing off, sending it explicitly still attempts it
        with base.SQLTransaction(test.sql_conn) as tx:
            request = backend.get_consumption_request_for_notification_tx(tx, notification_id)
            assert request
            job     = backend.get_latest_send_consumption_job_for_request_tx(tx, request.id)
        assert job
        response = test.flask_client.post(server.ROUTE_PROCESS_JOBS, json={})
        assert response.status_code == 200
        assert response.json
        assert response.json['result']['jobs'] == []

        apple.default = apple_response(200)
        with base.SQLTransaction(test.sql_conn) as tx:
            assert tx.cursor is not None
            _ = tx.cursor.execute('UPDATE send_consumption_jobs SET scheduled_unix_ts_ms = 0 WHERE id = ?', (job.id,))
        response = test.flask_client.post(server.ROUTE_PROCESS_JOBS, json={'jobId': job.id})
        assert response.status_code == 200
        assert response.json
        jobs = response.json['result']['jobs']
        assert len(jobs) == 1
        assert jobs[0]['status']  == backend.JobStatus.Sent.value
        assert jobs[0]['skipped'] == False

        # NOTE: A job that is already sent isn't claimed again
        response = test.flask_client.post(server.ROUTE_PROCESS_JOBS, json={'jobId': job.id})
        assert response.json
        assert response.json['result']['jobs'][0]['skipped'] == True
        assert len(apple.requests) == 2

def test_admin_transaction_lookups(monkeypatch):
    apple = FakeAppleAPI(responses=[
        apple_response(200, {'signedTransactions': ['a.b.c'], 'hasMore': False, 'revision': 'r1'}),
        apple_response(404, {'errorCode': 4040010, 'errorMessage': 'Transaction id not found.'}),
        apple_response(200, {'signedTransactions': [], 'hasMore': False}),
    ])
    monkeypatch.setattr('platform_apple_api.http_request', apple)

    with TestingContext(db_path='file:test_lookups_db?mode=memory&cache=shared', uri=True) as test:
        response: werkzeug.test.TestResponse = test.flask_client.post(server.ROUTE_REFUND_HISTORY, json={'transactionId': '9000000001', 'environment': 'Production'})
        assert response.status_code == 200, response.json
        assert response.json
        assert response.json['result']['signedTransactions'] == ['a.b.c']
        assert apple.requests[0].method == 'GET'
        assert apple.requests[0].url    == f'{platform_apple_api.PRODUCTION_BASE_URL}/refund/lookup/9000000001'

        # NOTE: Apple's error code reaches the operator untouched
        response = test.flask_client.post(server.ROUTE_REFUND_HISTORY, json={'transactionId': '9000000002'})
        assert response.status_code == 404
        assert response.json
        assert response.json['errorCode']    == 4040010
        assert response.json['errorMessage'] == 'Transaction id not found.'

        response = test.flask_client.post(server.ROUTE_TRANSACTION_HISTORY, json={'transactionId': '9000000003'})
        assert response.status_code == 200
        assert apple.requests[2].url == f'{platform_apple_api.SANDBOX_BASE_URL}/history/9000000003'

        response = test.flask_client.post(server.ROUTE_TRANSACTION_HISTORY, json={})
        assert response.status_code == 400
        response = test.flask_client.post(server.ROUTE_TRANSACTION_HISTORY, data='[1, 2]', content_type='application/json')
        assert response.status_code == 400
        assert len(apple.requests) == 3

        # NOTE: Every call was audited
        assert [it.response_status for it in backend.get_apple_api_logs_list(test.sql_conn)] == [200, 404, 200]

def test_admin_config():
    with TestingContext(db_path='file:test_config_db?mode=memory&cache=shared', uri=True) as test:
        response: werkzeug.test.TestResponse = test.flask_client.get(server.ROUTE_CONFIG)
        assert response.status_code == 200
        assert response.json
        assert response.json['result'] == {'refundPreference': 0, 'lastSweepAt': None, 'lastBackfillAt': None}

        response = test.flask_client.post(server.ROUTE_CONFIG, json={'refundPreference': 3})
        assert response.status_code == 200
        assert backend.get_runtime(test.sql_conn).refund_preference == 3

        for it in [4, -1, True, '1']:
            response = test.flask_client.post(server.ROUTE_CONFIG, json={'refundPreference': it})
            assert response.status_code == 400, it
        assert backend.get_runtime(test.sql_conn).refund_preference == 3

        _        = dispatcher.run_notification_sweep(test.context(), int(time.time() * 1000))
        response = test.flask_client.post(server.ROUTE_CONFIG, json={})
        assert response.json
        assert response.json['result']['lastSweepAt'] is not None
