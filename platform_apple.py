import base64
import binascii
import dataclasses
import flask
import json
import logging
import sqlite3
import time
import typing
import uuid

import jwt
from cryptography                              import x509
from cryptography.exceptions                   import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ec, rsa, padding as rsa_padding

import base
import backend
import consumption
import platform_apple_types
from platform_apple_types import (
    TypedNotification,
    PurchaseNotification,
    RefundNotification,
    RefundReversedNotification,
    ConsumptionRequestNotification,
    RenewalStatusNotification,
    ExpiredNotification,
    InformationalNotification,
    UnknownNotification,
)
import platform_apple_api

log = logging.Logger('APPLE')

@dataclasses.dataclass
class Core:
    api_config:     platform_apple_api.Config
    root_certs:     list[x509.Certificate]
    db_path:        str
    db_path_is_uri: bool

    # Hands a freshly stored notification to the background dispatcher. Returns false if it could
    # not be queued in which case the periodic sweep picks the notification up instead.
    enqueue:        typing.Callable[[int], bool] | None = None

@dataclasses.dataclass
class DateRange:
    start_unix_ts_ms: int = 0
    end_unix_ts_ms:   int = 0

@dataclasses.dataclass
class ImportResult:
    imported:   int       = 0
    duplicates: int       = 0
    failed:     int       = 0
    ids:        list[int] = dataclasses.field(default_factory=list)  # Rows created by the import
    errors:     list[str] = dataclasses.field(default_factory=list)

@dataclasses.dataclass
class BackfillResult:
    date_range:    DateRange    = dataclasses.field(default_factory=DateRange)
    environment:   str          = ''
    pages:         int          = 0
    fetched:       int          = 0
    imported:      ImportResult = dataclasses.field(default_factory=ImportResult)
    error_code:    int | None   = None
    error_message: str | None   = None

    def to_dict(self) -> dict[str, base.JSONValue]:
        result: dict[str, base.JSONValue] = {
            'startDate':    base.iso8601_from_unix_ts_ms(self.date_range.start_unix_ts_ms),
            'endDate':      base.iso8601_from_unix_ts_ms(self.date_range.end_unix_ts_ms),
            'environment':  self.environment,
            'pages':        self.pages,
            'fetched':      self.fetched,
            'imported':     self.imported.imported,
            'duplicates':   self.imported.duplicates,
            'failed':       self.imported.failed,
            'errors':       list(self.imported.errors),
            'errorCode':    self.error_code,
            'errorMessage': self.error_message,
        }
        return result

class VerificationError(Exception):
    pass

FLASK_ROUTE_WEBHOOK:                  str = '/webhook'
FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY: str = 'storekit_backend_platform_apple_core'

VERIFY_ALGORITHMS:                    list[str] = ['ES256', 'RS256']
VERIFY_LEEWAY_S:                      int       = 60
DEFAULT_DATE_RANGE_DAYS:              int       = 30
MAX_DATE_RANGE_DAYS:                  int       = 180

# The object containing routes that you register onto a Flask app to turn it
# into an app that accepts App Store Server Notifications V2
flask_blueprint                                 = flask.Blueprint('storekit-backend-apple', __name__)

def require_field(field: typing.Any, msg: str, err: base.ErrorSink | None) -> bool:
    result = True
    if field is None or field == '':
        result = False
        if err:
            err.msg_list.append(msg)
    return result

def b64url_decode(segment: str) -> bytes:
    padding = (4 - len(segment) % 4) % 4
    result  = base64.urlsafe_b64decode(segment + '=' * padding)
    return result

def decode_jws_payload(token: str) -> base.JSONObject:
    '''
    Decode the payload of a JWS without verifying its signature. Used for tokens nested inside a
    payload whose signature was already verified and for history items Apple returned to us over
    TLS.
    '''
    parts = token.split('.')
    if len(parts) != 3 or not all(parts):
        raise VerificationError('JWS must have exactly 3 non-empty segments')
    try:
        payload = json.loads(b64url_decode(parts[1]))
    except (ValueError, binascii.Error) as e:
        raise VerificationError(f'JWS payload is not base64url encoded JSON: {e}') from e
    if not isinstance(payload, dict):
        raise VerificationError('JWS payload is not a JSON object')
    result = typing.cast(base.JSONObject, payload)
    return result

def load_certificate(cert_bytes: bytes) -> x509.Certificate:
    '''Accepts DER (Apple's .cer downloads) or PEM'''
    if cert_bytes.lstrip().startswith(b'-----BEGIN'):
        result = x509.load_pem_x509_certificate(cert_bytes)
    else:
        result = x509.load_der_x509_certificate(cert_bytes)
    return result

def verify_certificate_signed_by(child: x509.Certificate, issuer: x509.Certificate):
    public_key = issuer.public_key()
    hash_alg   = child.signature_hash_algorithm
    if hash_alg is None:
        raise VerificationError(f'Certificate {child.subject.rfc4514_string()} has no signature hash algorithm')
    try:
        if isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(child.signature, child.tbs_certificate_bytes, ec.ECDSA(hash_alg))
        elif isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(child.signature, child.tbs_certificate_bytes, rsa_padding.PKCS1v15(), hash_alg)
        else:
            raise VerificationError(f'Unsupported issuer key type: {type(public_key)}')
    except InvalidSignature as e:
        raise VerificationError(f'Certificate {child.subject.rfc4514_string()} is not signed by {issuer.subject.rfc4514_string()}') from e

def verify_certificate_chain(chain: list[x509.Certificate], root_certs: list[x509.Certificate]):
    # NOTE: x5c[0] is the leaf, each certificate must be signed by the one after it
    for index in range(len(chain) - 1):
        verify_certificate_signed_by(chain[index], chain[index + 1])

    # NOTE: The last certificate is either one of the trusted roots itself or must be signed by one
    last = chain[-1]
    if any(last == root for root in root_certs):
        return

    for root in root_certs:
        try:
            verify_certificate_signed_by(last, root)
            return
        except VerificationError:
            continue
    raise VerificationError('Certificate chain does not lead to a trusted root certificate')

def verify_and_decode_signed_payload(token: str, root_certs: list[x509.Certificate] | None = None) -> base.JSONObject:
    '''
    Verify a JWS signed by Apple using the leaf certificate in its `x5c` header and return the
    decoded payload. If root certificates are given the `x5c` chain must also lead to one of them.
    Raises `VerificationError` on any failure.
    '''
    if not isinstance(token, str) or token.count('.') != 2 or not all(token.split('.')):  # pyright: ignore[reportUnnecessaryIsInstance]
        raise VerificationError('JWS must have exactly 3 non-empty segments')

    try:
        header = jwt.get_unverified_header(token)
    except jwt.exceptions.PyJWTError as e:
        raise VerificationError(f'JWS header could not be decoded: {e}') from e

    if header.get('alg') not in VERIFY_ALGORITHMS:
        raise VerificationError(f'JWS algorithm {header.get("alg")} is not one of {VERIFY_ALGORITHMS}')

    x5c = header.get('x5c')
    if not isinstance(x5c, list) or len(x5c) == 0 or not all(isinstance(it, str) for it in x5c):
        raise VerificationError('JWS header is missing its x5c certificate chain')

    try:
        chain = [x509.load_der_x509_certificate(base64.b64decode(it)) for it in typing.cast(list[str], x5c)]
    except (ValueError, binascii.Error) as e:
        raise VerificationError(f'JWS x5c certificate could not be parsed: {e}') from e

    if root_certs:
        verify_certificate_chain(chain, root_certs)

    try:
        payload = jwt.decode(token,
                             key        = chain[0].public_key(),  # pyright: ignore[reportArgumentType]
                             algorithms = VERIFY_ALGORITHMS,
                             leeway     = VERIFY_LEEWAY_S,
                             options    = {'verify_aud': False})
    except jwt.exceptions.PyJWTError as e:
        raise VerificationError(f'JWS signature verification failed: {e}') from e

    result = typing.cast(base.JSONObject, payload)
    return result

def decode_nested_signed_data(decoded_payload: base.JSONObject, in_place: bool) -> base.JSONObject | None:
    '''
    Decode `signedTransactionInfo` and `signedRenewalInfo` inside the notification's data. The
    decoded transaction is returned. With `in_place` the decoded objects also replace the tokens in
    the payload.
    '''
    data = decoded_payload.get('data')
    if not isinstance(data, dict):
        return None

    result: base.JSONObject | None = None
    for key in ('signedTransactionInfo', 'signedRenewalInfo'):
        value = data.get(key)
        if not isinstance(value, str):
            if key == 'signedTransactionInfo' and isinstance(value, dict):
                result = typing.cast(base.JSONObject, value)
            continue
        try:
            decoded = decode_jws_payload(value)
        except VerificationError as e:
            log.warning(f'Notification {decoded_payload.get("notificationUUID")} has an undecodable {key}: {e}')
            continue
        if key == 'signedTransactionInfo':
            result = decoded
        if in_place:
            data[key] = decoded
    return result

def notification_row_from_decoded_payload(signed_payload:  str,
                                          decoded_payload: base.JSONObject,
                                          source:          backend.NotificationSource,
                                          unix_ts_ms:      int,
                                          err:             base.ErrorSink) -> backend.NotificationRow:
    result                   = backend.NotificationRow()
    result.notification_uuid = base.json_dict_require_str(decoded_payload, 'notificationUUID', err)
    result.notification_type = base.json_dict_require_str(decoded_payload, 'notificationType', err)
    result.subtype           = base.json_dict_optional_str(decoded_payload, 'subtype', err)
    result.signed_date_unix_ts_ms = base.json_dict_optional_int(decoded_payload, 'signedDate', err)
    if err.has():
        return result

    # NOTE: Webhook payloads keep the nested tokens decoded inside the payload, history imports
    # keep Apple's payload as-is and only store the decoded transaction alongside it
    result.decoded_transaction_info = decode_nested_signed_data(decoded_payload, in_place=source == backend.NotificationSource.Webhook)

    environment: str | None = None
    data                    = decoded_payload.get('data')
    summary                 = decoded_payload.get('summary')
    if isinstance(data, dict) and isinstance(data.get('environment'), str):
        environment = typing.cast(str, data.get('environment'))
    elif isinstance(summary, dict) and isinstance(summary.get('environment'), str):
        environment = typing.cast(str, summary.get('environment'))

    result.signed_payload      = signed_payload
    result.decoded_payload     = decoded_payload
    result.environment         = platform_apple_types.normalize_environment(environment)
    result.status              = backend.NotificationStatus.Pending
    result.source              = source
    result.received_unix_ts_ms = unix_ts_ms
    return result

def transaction_row_from_info(info: platform_apple_types.TransactionInfo, environment: str) -> backend.TransactionRow:
    result = backend.TransactionRow(transaction_id               = info.transaction_id,
                                    original_transaction_id      = info.original_transaction_id,
                                    product_id                   = info.product_id,
                                    product_type                 = info.product_type,
                                    purchase_unix_ts_ms          = info.purchase_date,
                                    original_purchase_unix_ts_ms = info.original_purchase_date,
                                    expiration_unix_ts_ms        = info.expires_date,
                                    price                        = info.price_milliunits / 1000.0 if info.price_milliunits is not None else None,
                                    currency                     = info.currency,
                                    quantity                     = info.quantity,
                                    app_account_token            = info.app_account_token,
                                    in_app_ownership_type        = info.in_app_ownership_type,
                                    environment                  = environment)
    return result

def require_transaction_info(notification: TypedNotification, err: base.ErrorSink) -> platform_apple_types.TransactionInfo | None:
    result = notification.tx_info
    if require_field(result, f'{notification.notification_type} notification is missing signedTransactionInfo', err):
        assert result
        if not require_field(result.transaction_id, f'{notification.notification_type} notification is missing transactionId', err):
            result = None
    return result

def handle_purchase(ctx: consumption.Context, notification: PurchaseNotification, unix_ts_ms: int, err: base.ErrorSink):
    # NOTE: SUBSCRIBED (first purchase or resubscribe), DID_RENEW (auto-renewal or billing
    # recovery), ONE_TIME_CHARGE (consumables, non-consumables and non-renewing subscriptions) and
    # OFFER_REDEEMED all describe a transaction that replaces whatever we knew about it before.
    info = require_transaction_info(notification, err)
    if info is None:
        return

    with base.SQLTransaction(ctx.sql_conn) as tx:
        backend.upsert_transaction_tx(tx, transaction_row_from_info(info, notification.environment), unix_ts_ms)
    log.info(f'{notification.notification_type} recorded transaction {info.transaction_id} (original {info.original_transaction_id}, {notification.environment})')

def handle_refund(ctx: consumption.Context, notification: RefundNotification, unix_ts_ms: int, err: base.ErrorSink):
    info = require_transaction_info(notification, err)
    if info is None:
        return

    refund = backend.RefundRow(transaction_id          = info.transaction_id,
                               original_transaction_id = info.original_transaction_id,
                               refund_unix_ts_ms       = info.revocation_date if info.revocation_date is not None else unix_ts_ms,
                               refund_amount           = info.price_milliunits / 1000.0 if info.price_milliunits is not None else None,
                               refund_reason           = info.revocation_reason,
                               environment             = notification.environment)
    with base.SQLTransaction(ctx.sql_conn) as tx:
        created = backend.insert_refund_tx(tx, refund, unix_ts_ms)

    if created:
        log.info(f'Recorded refund of {refund.refund_amount} for transaction {info.transaction_id} ({notification.environment})')
    else:
        log.info(f'Refund for transaction {info.transaction_id} at {base.readable_unix_ts_ms(refund.refund_unix_ts_ms)} already recorded')

def handle_refund_reversed(ctx: consumption.Context, notification: RefundReversedNotification, err: base.ErrorSink):
    info = require_transaction_info(notification, err)
    if info is None:
        return

    with base.SQLTransaction(ctx.sql_conn) as tx:
        deleted = backend.delete_refunds_for_transaction_id_tx(tx, info.transaction_id)
    log.info(f'Refund reversed for transaction {info.transaction_id}, removed {deleted} refund(s)')

def handle_renewal_status(ctx: consumption.Context, notification: RenewalStatusNotification, unix_ts_ms: int, err: base.ErrorSink):
    info = require_transaction_info(notification, err)
    if info is None:
        return

    with base.SQLTransaction(ctx.sql_conn) as tx:
        updated = backend.touch_transactions_for_original_id_tx(tx, info.original_transaction_id, unix_ts_ms)
    log.info(f'{notification.notification_type} ({notification.subtype}) for {info.original_transaction_id}, touched {updated} transaction(s)')

def handle_expired(ctx: consumption.Context, notification: ExpiredNotification, unix_ts_ms: int, err: base.ErrorSink):
    info = require_transaction_info(notification, err)
    if info is None:
        return

    with base.SQLTransaction(ctx.sql_conn) as tx:
        updated = backend.expire_transactions_for_original_id_tx(tx, info.original_transaction_id, unix_ts_ms)
    log.info(f'{notification.notification_type} ({notification.subtype}) for {info.original_transaction_id}, expired {updated} transaction(s)')

def handle_consumption_request(ctx: consumption.Context, notification: ConsumptionRequestNotification, unix_ts_ms: int, err: base.ErrorSink):
    # NOTE: The customer asked Apple for a refund, Apple wants to know how much of the purchase was
    # consumed and expects our answer by the deadline it supplies, otherwise within 12 hours of its
    # request.
    original_transaction_id = notification.tx_info.original_transaction_id if notification.tx_info else ''
    if not original_transaction_id:
        err.msg_list.append('Missing originalTransactionId in CONSUMPTION_REQUEST notification')
        return

    request_unix_ts_ms   = notification.signed_date if notification.signed_date is not None else unix_ts_ms
    deadline_unix_ts_ms  = notification.deadline_unix_ts_ms
    if deadline_unix_ts_ms is None:
        deadline_unix_ts_ms = request_unix_ts_ms + backend.CONSUMPTION_REQUEST_DEADLINE_MS
    job_id: int | None   = None
    with base.SQLTransaction(ctx.sql_conn) as tx:
        request = backend.ConsumptionRequestRow(notification_id            = notification.notification_id,
                                                original_transaction_id    = original_transaction_id,
                                                consumption_request_reason = notification.consumption_request_reason,
                                                request_unix_ts_ms         = request_unix_ts_ms,
                                                deadline_unix_ts_ms        = deadline_unix_ts_ms,
                                                status                     = backend.ConsumptionRequestStatus.Pending,
                                                environment                = notification.environment,
                                                created_unix_ts_ms         = unix_ts_ms)
        created = backend.create_consumption_request_tx(tx, request)
        request.id = created.id

        # NOTE: Replaying the notification must not queue a second response to the same request
        latest_job = None if created.created else backend.get_latest_send_consumption_job_for_request_tx(tx, created.id)
        if latest_job is None:
            job_id = consumption.create_job_for_request_tx(tx, request, ctx.runtime, unix_ts_ms)
        elif latest_job.status == backend.JobStatus.Pending:
            job_id = latest_job.id
        else:
            log.info(f'Consumption request #{created.id} already has job #{latest_job.id} ({latest_job.status.value}), nothing to send')

    log.info(f'Consumption request #{request.id} for {original_transaction_id} ({notification.environment}, reason {notification.consumption_request_reason}) due by {base.readable_unix_ts_ms(request.deadline_unix_ts_ms)}')

    # NOTE: Deliver straight away, a failed send stays queued for the job sweep and does not fail
    # the notification
    if job_id is not None:
        _ = consumption.send_pending_jobs(ctx, job_id=job_id, unix_ts_ms=unix_ts_ms)

def handle_notification(ctx: consumption.Context, notification: TypedNotification, unix_ts_ms: int, err: base.ErrorSink):
    '''
    Apply a notification to the derived tables. Every handler is idempotent, replaying a
    notification leaves the tables as they were after the first time.

      https://developer.apple.com/documentation/appstoreservernotifications/notificationtype
    '''
    match notification:
        case PurchaseNotification():
            handle_purchase(ctx, notification, unix_ts_ms, err)
        case RefundNotification():
            handle_refund(ctx, notification, unix_ts_ms, err)
        case RefundReversedNotification():
            handle_refund_reversed(ctx, notification, err)
        case ConsumptionRequestNotification():
            handle_consumption_request(ctx, notification, unix_ts_ms, err)
        case RenewalStatusNotification():
            handle_renewal_status(ctx, notification, unix_ts_ms, err)
        case ExpiredNotification():
            handle_expired(ctx, notification, unix_ts_ms, err)
        case InformationalNotification():
            # NOTE: DID_FAIL_TO_RENEW, GRACE_PERIOD_EXPIRED, REFUND_DECLINED, DID_CHANGE_RENEWAL_PREF,
            # PRICE_INCREASE, REVOKE, TEST and the like carry nothing we store
            log.info(f'Received {notification.notification_type} ({notification.subtype}) notification {notification.notification_uuid}, no action required')
        case UnknownNotification():
            log.warning(f'Received unrecognised notification type {notification.notification_type} ({notification.notification_uuid}), marking it processed')

def date_input_to_unix_ts_ms(value: base.JSONValue, label: str, err: base.ErrorSink) -> int | None:
    '''Dates arrive as unix milliseconds or ISO 8601 date/datetime strings'''
    result: int | None = None
    if value is None or value == '':
        return result

    if isinstance(value, bool):
        err.msg_list.append(f'{label} must be an ISO 8601 date or unix milliseconds, received a bool')
    elif isinstance(value, int):
        result = value
    elif isinstance(value, float) and value.is_integer():
        result = int(value)
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            result = int(text)
        else:
            parse_err = base.ErrorSink()
            parsed    = base.unix_ts_ms_from_iso8601(text, label, parse_err)
            if parse_err.has():
                err.msg_list.extend(parse_err.msg_list)
            else:
                result = parsed
    else:
        err.msg_list.append(f'{label} must be an ISO 8601 date or unix milliseconds: {base.safe_dump_arbitrary_value_or_type(value)}')
    return result

def normalize_date_range(start: base.JSONValue, end: base.JSONValue, unix_ts_ms: int, err: base.ErrorSink) -> DateRange:
    '''
    Produce a range the notification history API accepts. Missing bounds default to the 30 days
    ending today, reversed bounds are swapped, the end can't be later than the end of today (UTC)
    and the range is limited to the 180 days before its end.
    '''
    result        = DateRange()
    start_ms      = date_input_to_unix_ts_ms(start, 'Start date', err)
    end_ms        = date_input_to_unix_ts_ms(end,   'End date',   err)
    if err.has():
        return result

    end_of_today  = base.round_unix_ts_ms_to_end_of_day(unix_ts_ms)
    if end_ms is None:
        end_ms = end_of_today
    if start_ms is None:
        start_ms = end_ms - (DEFAULT_DATE_RANGE_DAYS * base.MILLISECONDS_IN_DAY)

    if end_ms < start_ms:
        start_ms, end_ms = end_ms, start_ms

    end_ms = min(end_ms, end_of_today)
    if start_ms > end_ms:
        # NOTE: The whole range was in the future
        start_ms = end_ms - (DEFAULT_DATE_RANGE_DAYS * base.MILLISECONDS_IN_DAY)

    # NOTE: Clamped after the end so the window is measured back from the clamped end
    max_span_ms = MAX_DATE_RANGE_DAYS * base.MILLISECONDS_IN_DAY
    if end_ms - start_ms > max_span_ms:
        start_ms = end_ms - max_span_ms

    result.start_unix_ts_ms = start_ms
    result.end_unix_ts_ms   = end_ms
    return result

def import_notification_history_items(sql_conn: sqlite3.Connection, items: list[base.JSONObject], unix_ts_ms: int) -> ImportResult:
    '''
    Store notifications pulled from the history API. They go through the same dedup as the webhook
    so a notification the webhook already received is counted as a duplicate and left untouched.
    '''
    result = ImportResult()
    for index, item in enumerate(items):
        signed_payload = item.get('signedPayload')
        if not isinstance(signed_payload, str):
            result.failed += 1
            result.errors.append(f'History item {index} is missing its signedPayload')
            continue

        try:
            decoded = decode_jws_payload(signed_payload)
        except VerificationError as e:
            result.failed += 1
            result.errors.append(f'History item {index} could not be decoded: {e}')
            continue

        err = base.ErrorSink()
        row = notification_row_from_decoded_payload(signed_payload, decoded, backend.NotificationSource.HistoryAPI, unix_ts_ms, err)
        if err.has():
            result.failed += 1
            result.errors.append(f'History item {index} is invalid: {err.build()}')
            continue

        with base.SQLTransaction(sql_conn) as tx:
            ingest = backend.ingest_notification_tx(tx, row)
        if ingest.created:
            result.imported += 1
            result.ids.append(ingest.id)
        else:
            result.duplicates += 1

    log.info(f'Imported {result.imported} notification(s) from history ({result.duplicates} duplicate(s), {result.failed} failed)')
    return result

def backfill_notification_history(ctx:               consumption.Context,
                                  environment:       str | None,
                                  start:             base.JSONValue,
                                  end:               base.JSONValue,
                                  notification_type: str | None,
                                  unix_ts_ms:        int,
                                  err:               base.ErrorSink) -> BackfillResult | None:
    date_range = normalize_date_range(start, end, unix_ts_ms, err)
    if notification_type and platform_apple_types.apple_notification_type_from_str(notification_type) is None:
        err.msg_list.append(f'Unrecognised notification type "{notification_type}"')
    if err.has():
        return None

    client                = ctx.client(environment)
    history               = client.get_notification_history(date_range.start_unix_ts_ms, date_range.end_unix_ts_ms, notification_type)
    result                = BackfillResult(date_range=date_range, environment=client.environment)
    result.pages          = history.pages
    result.fetched        = len(history.items)
    result.error_code     = history.error_code
    result.error_message  = history.error_message
    result.imported       = import_notification_history_items(ctx.sql_conn, history.items, unix_ts_ms)

    with base.SQLTransaction(ctx.sql_conn) as tx:
        backend.set_last_backfill_unix_ts_ms_tx(tx, unix_ts_ms)
    return result

def webhook_response(http_status: int, body: dict[str, typing.Any]) -> flask.Response:
    result        = flask.jsonify(body)
    result.status = http_status
    return result

@flask_blueprint.route(FLASK_ROUTE_WEBHOOK, methods=['POST'])
def webhook() -> flask.Response:
    request_id = flask.request.headers.get('X-Request-Id') or uuid.uuid4().hex

    assert FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY in flask.current_app.config
    assert isinstance(flask.current_app.config[FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY], Core)
    core = typing.cast(Core, flask.current_app.config[FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY])

    try:
        body = json.loads(flask.request.get_data(as_text=True))
    except ValueError as e:
        log.warning(f'Webhook {request_id} rejected, body is not JSON: {e}')
        return webhook_response(400, {'error': 'Request body is not valid JSON', 'requestId': request_id})

    signed_payload = body.get('signedPayload') if isinstance(body, dict) else None
    if not isinstance(signed_payload, str):
        log.warning(f'Webhook {request_id} rejected, signedPayload is missing: {base.safe_dump_arbitrary_value_or_type(body)}')
        return webhook_response(400, {'error': 'signedPayload is missing', 'requestId': request_id})

    try:
        decoded = verify_and_decode_signed_payload(signed_payload, core.root_certs)
    except VerificationError as e:
        log.warning(f'Webhook {request_id} rejected, signed payload failed verification: {e}')
        return webhook_response(400, {'error': f'Signed payload failed verification: {e}', 'requestId': request_id})

    err        = base.ErrorSink()
    unix_ts_ms = int(time.time() * 1000)
    row        = notification_row_from_decoded_payload(signed_payload, decoded, backend.NotificationSource.Webhook, unix_ts_ms, err)
    if err.has():
        log.warning(f'Webhook {request_id} rejected, decoded payload is invalid: {err.build()}')
        return webhook_response(400, {'error': err.build(), 'requestId': request_id})

    try:
        with backend.OpenDBAtPath(core.db_path, core.db_path_is_uri) as db:
            with base.SQLTransaction(db.sql_conn) as tx:
                ingest = backend.ingest_notification_tx(tx, row)
    except sqlite3.Error as e:
        log.error(f'Webhook {request_id} failed to store notification {row.notification_uuid}: {e}')
        return webhook_response(500, {'error': 'Failed to store notification', 'requestId': request_id})

    # NOTE: Success is decided by the store alone, dispatching happens in the background and
    # anything that doesn't make it onto the queue is recovered by the sweep
    if ingest.created and core.enqueue:
        if not core.enqueue(ingest.id):
            log.warning(f'Dispatch queue rejected notification #{ingest.id}, leaving it for the sweep')

    return webhook_response(200, {'success': True, 'id': ingest.id, 'requestId': request_id})

def init(api_config: platform_apple_api.Config, root_cert_bytes: list[bytes], db_path: str, db_path_is_uri: bool, err: base.ErrorSink) -> Core:
    root_certs: list[x509.Certificate] = []
    for index, cert_bytes in enumerate(root_cert_bytes):
        try:
            root_certs.append(load_certificate(cert_bytes))
        except ValueError as e:
            err.msg_list.append(f'Root certificate {index} could not be loaded: {e}')

    if len(root_certs) == 0:
        log.warning('No Apple root certificates configured, the x5c chain of notifications is not checked')

    # NOTE: For version 2 notifications, Apple retries five times, at 1, 12, 24, 48, and 72 hours
    # after the previous attempt, until we answer with a 200.
    #
    #   https://developer.apple.com/documentation/appstoreservernotifications/responding-to-app-store-server-notifications
    result = Core(api_config=api_config, root_certs=root_certs, db_path=db_path, db_path_is_uri=db_path_is_uri)
    return result

def equip_flask_routes(core: Core, flask_app: flask.Flask):
    flask_app.register_blueprint(flask_blueprint)

    # NOTE: Add the core data structure for Apple into the flask config dictionary. This makes it
    # accessible in routes across concurrent connections.
    flask_app.config[FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY] = core

