'''
This file is the HTTP layer which declares the admin routes for operating the notification
pipeline. These routes are registered onto a Flask application alongside the Apple webhook.

The role of this layer is to intercept and sanitize the HTTP request, extracting the JSON into
valid, strongly typed (to Python's best ability) types that can be passed into the dispatcher, the
consumption sender or the App Store Server API client.

Authentication of the admin routes is expected to be handled in front of this server (e.g. by the
reverse proxy), these routes must not be exposed publicly.
'''

import flask
import json
import logging
import math
import sqlite3
import time
import typing
import uuid

import base
import backend
import consumption
import dispatcher
import platform_apple
import platform_apple_api

class GetJSONFromFlaskRequest:
    json:    dict[str, typing.Any] = {}
    err_msg: str                   = ''

# Keys stored in the flask app config dictionary that can be retrieved within
# a request to get the path to the SQLite DB to load and use for that request.
CONFIG_DB_PATH_KEY                    = 'storekit_backend_db_path'
CONFIG_DB_PATH_IS_URI_KEY             = 'storekit_backend_db_path_is_uri'

# Header a caller (or the reverse proxy) can set to correlate its request with our logs, one is
# generated otherwise. Every response carries it back in the body and the header.
REQUEST_ID_HEADER                     = 'X-Request-Id'

# Name of the endpoints exposed on the server
ROUTE_RETRY_NOTIFICATION              = '/admin/retry-notification'
ROUTE_RESEND_CONSUMPTION              = '/admin/resend-consumption'
ROUTE_REPROCESS_NOTIFICATION          = '/admin/reprocess-notification'
ROUTE_PROCESS_PENDING                 = '/admin/process-pending'
ROUTE_PROCESS_BATCH                   = '/admin/process-batch'
ROUTE_PROCESS_JOBS                    = '/admin/process-jobs'
ROUTE_RUN_SWEEP                       = '/admin/run-sweep'
ROUTE_BACKFILL                        = '/admin/backfill'
ROUTE_NOTIFICATION_HISTORY            = '/admin/notification-history'
ROUTE_REFUND_HISTORY                  = '/admin/refund-history'
ROUTE_TRANSACTION_HISTORY             = '/admin/transaction-history'
ROUTE_TEST_NOTIFICATION               = '/admin/test-notification'
ROUTE_TEST_NOTIFICATION_STATUS        = '/admin/test-notification-status'
ROUTE_CONFIG                          = '/admin/config'

# Pause between the batches of process-pending so a large backlog doesn't monopolise the DB, backs
# off further when a batch had failures as they are likely to be caused by something upstream
PROCESS_PENDING_BATCH_DELAY_S:   float = 0.5
PROCESS_PENDING_FAILURE_DELAY_S: float = 2.0

# The object containing routes that you register onto a Flask app to turn it
# into an app that can administer the notification pipeline.
flask_blueprint = flask.Blueprint('storekit-backend-admin', __name__)

log = logging.Logger('SERVER')

def request_id() -> str:
    '''Correlation ID of the request being served, assigned once on first use'''
    if 'request_id' not in flask.g:
        flask.g.request_id = flask.request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    result = typing.cast(str, flask.g.request_id)
    return result

@flask_blueprint.before_request
def log_request_start():
    log.info(f'{flask.request.method} {flask.request.path} [{request_id()}]')

@flask_blueprint.after_request
def tag_response_with_request_id(response: flask.Response) -> flask.Response:
    response.headers[REQUEST_ID_HEADER] = request_id()
    log.info(f'{flask.request.method} {flask.request.path} [{request_id()}] finished with HTTP {response.status_code}')
    return response

def html_bad_response(http_status: int, msg: str | list[str]) -> flask.Response:
    log.warning(f'{flask.request.path} [{request_id()}] rejected with HTTP {http_status}: {msg}')
    result        = flask.jsonify({ 'status': http_status, 'msg': msg, 'requestId': request_id()})
    result.status = http_status
    return result

def html_good_response(dict_result: typing.Any) -> flask.Response:
    result = flask.jsonify({ 'status': 200, 'result': dict_result, 'requestId': request_id()})
    return result

def html_apple_error_response(api: platform_apple_api.APIResult) -> flask.Response:
    # NOTE: Pass Apple's error through untouched, operators look these codes up in Apple's docs
    http_status   = api.status if api.status is not None and api.status >= 400 else 502
    log.warning(f'{flask.request.path} [{request_id()}] App Store Server API responded {api.status}: {api.error_code} {api.error_message}')
    result        = flask.jsonify({'status':       http_status,
                                   'msg':          api.error_message,
                                   'errorCode':    api.error_code,
                                   'errorMessage': api.error_message,
                                   'requestId':    request_id()})
    result.status = http_status
    return result

def get_json_from_flask_request(request: flask.Request) -> GetJSONFromFlaskRequest:
    # Get JSON from request, an empty body is treated as an empty object as most admin routes have
    # no required fields
    result: GetJSONFromFlaskRequest = GetJSONFromFlaskRequest()
    try:
        json_dict = typing.cast(dict[str, typing.Any] | None, json.loads(request.data)) if len(request.data) else {}
        if json_dict is None or not isinstance(json_dict, dict):  # pyright: ignore[reportUnnecessaryIsInstance]
            result.err_msg = "JSON failed to be parsed as an object"
        else:
            result.json = json_dict
    except Exception as e:
        result.err_msg = str(e)

    return result

def sleep_s(seconds: float):
    time.sleep(seconds)

def now_unix_ts_ms() -> int:
    result = int(time.time() * 1000)
    return result

def init(testing_mode: bool, db_path: str, db_path_is_uri: bool) -> flask.Flask:
    result                                   = flask.Flask(__name__)
    result.config['TESTING']                 = testing_mode
    result.config[CONFIG_DB_PATH_KEY]        = db_path
    result.config[CONFIG_DB_PATH_IS_URI_KEY] = db_path_is_uri
    result.register_blueprint(flask_blueprint)
    return result

def open_db_from_flask_request_context(flask_app: flask.Flask) -> backend.OpenDBAtPath:
    assert CONFIG_DB_PATH_KEY        in flask.current_app.config
    assert CONFIG_DB_PATH_IS_URI_KEY in flask.current_app.config
    db_path        = typing.cast(str, flask_app.config[CONFIG_DB_PATH_KEY])
    db_path_is_uri = typing.cast(bool, flask_app.config[CONFIG_DB_PATH_IS_URI_KEY])
    result         = backend.OpenDBAtPath(db_path, db_path_is_uri)
    return result

def context_from_db(db: backend.OpenDBAtPath) -> consumption.Context:
    assert platform_apple.FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY in flask.current_app.config
    core   = typing.cast(platform_apple.Core, flask.current_app.config[platform_apple.FLASK_CONFIG_PLATFORM_APPLE_CORE_KEY])
    result = consumption.Context(sql_conn=db.sql_conn, api_config=core.api_config, runtime=db.runtime)
    return result

def notification_source_from_str(value: str | None, err: base.ErrorSink) -> backend.NotificationSource | None:
    result: backend.NotificationSource | None = None
    if value:
        try:
            result = backend.NotificationSource(value)
        except ValueError:
            err.msg_list.append(f'Unrecognised source "{value}", expected one of {[it.value for it in backend.NotificationSource]}')
    return result

def run_batches(batches: int, next_batch: typing.Callable[[int], dispatcher.BatchResult]) -> list[dispatcher.BatchResult]:
    '''
    Run up to `batches` dispatcher batches one after the other, pausing between them. Stops early
    once a batch finds nothing left to do.
    '''
    result: list[dispatcher.BatchResult] = []
    for index in range(batches):
        batch = next_batch(index)
        result.append(batch)
        if batch.processed + batch.failed + batch.skipped == 0:
            break
        if index + 1 < batches:
            sleep_s(PROCESS_PENDING_FAILURE_DELAY_S if batch.failed else PROCESS_PENDING_BATCH_DELAY_S)
    return result

@flask_blueprint.errorhandler(sqlite3.Error)
def handle_db_error(e: sqlite3.Error) -> flask.Response:
    log.error(f'DB error serving {flask.request.path} [{request_id()}]: {e}')
    result = html_bad_response(500, f'Database error: {e}')
    return result

@flask_blueprint.route(ROUTE_RETRY_NOTIFICATION, methods=['POST'])
def retry_notification() -> flask.Response:
    # Get JSON from request
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    # Extract values from JSON
    err             = base.ErrorSink()
    notification_id = base.json_dict_optional_int(get.json, 'notificationId', err)
    if notification_id is None and not err.has():
        err.msg_list.append('Missing notificationId from body')
    if err.has():
        return html_bad_response(400, err.msg_list)

    assert notification_id is not None
    with open_db_from_flask_request_context(flask.current_app) as db:
        outcome = dispatcher.retry_notification(context_from_db(db), notification_id, now_unix_ts_ms(), err)

    if err.has() or outcome is None:
        return html_bad_response(400, err.msg_list)

    result = html_good_response({'notificationId': notification_id,
                                 'outcome':        outcome.outcome.name.lower(),
                                 'error':          outcome.error})
    return result

@flask_blueprint.route(ROUTE_RESEND_CONSUMPTION, methods=['POST'])
def resend_consumption() -> flask.Response:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    err        = base.ErrorSink()
    job_id     = base.json_dict_optional_int(get.json, 'jobId',     err)
    request_id = base.json_dict_optional_int(get.json, 'requestId', err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        send = consumption.resend(context_from_db(db), job_id, request_id, now_unix_ts_ms(), err)

    if err.has() or send is None:
        return html_bad_response(400, err.msg_list)
    return html_good_response(send.to_dict())

@flask_blueprint.route(ROUTE_REPROCESS_NOTIFICATION, methods=['POST'])
def reprocess_notification() -> flask.Response:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    err               = base.ErrorSink()
    notification_uuid = base.json_dict_require_str(get.json, 'notificationUuid', err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        details = dispatcher.reprocess_notification(context_from_db(db), notification_uuid, now_unix_ts_ms(), err)

    if err.has() or details is None:
        return html_bad_response(400, err.build())
    return html_good_response(details)

@flask_blueprint.route(ROUTE_PROCESS_PENDING, methods=['POST'])
def process_pending() -> flask.Response:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    err    = base.ErrorSink()
    limit  = base.json_dict_optional_int(get.json, 'limit', err)
    source = notification_source_from_str(base.json_dict_optional_str(get.json, 'source', err), err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    batch_size = backend.clamp_dispatch_limit(limit)
    with open_db_from_flask_request_context(flask.current_app) as db:
        ctx = context_from_db(db)
        with base.SQLTransaction(db.sql_conn) as tx:
            total = backend.count_notifications_tx(tx, backend.NotificationStatus.Pending, source)

        # NOTE: Work through the backlog that existed when the call was made, notifications that
        # arrive in the meantime are left for the background thread
        results = run_batches(math.ceil(total / batch_size),
                              lambda _: dispatcher.process_batch(ctx, now_unix_ts_ms(), limit=batch_size, source=source))

        with base.SQLTransaction(db.sql_conn) as tx:
            remaining = backend.count_notifications_tx(tx, backend.NotificationStatus.Pending, source)

    result = html_good_response({
        'batches': len(results),
        'results': [it.to_dict() for it in results],
        'summary': {
            'total':     total,
            'processed': sum(it.processed for it in results),
            'failed':    sum(it.failed for it in results),
            'pending':   remaining,
        },
    })
    return result

@flask_blueprint.route(ROUTE_PROCESS_BATCH, methods=['POST'])
def process_batch() -> flask.Response:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    err               = base.ErrorSink()
    limit             = base.json_dict_optional_int(get.json,  'limit',            err)
    notification_type = base.json_dict_optional_str(get.json,  'notificationType', err)
    source            = notification_source_from_str(base.json_dict_optional_str(get.json, 'source', err), err)
    include_failed    = base.json_dict_optional_bool(get.json, 'includeFailed',    False, err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        batch = dispatcher.process_batch(context_from_db(db),
                                         unix_ts_ms        = now_unix_ts_ms(),
                                         limit             = limit,
                                         notification_type = notification_type,
                                         source            = source,
                                         include_failed    = include_failed)
    return html_good_response(batch.to_dict())

@flask_blueprint.route(ROUTE_PROCESS_JOBS, methods=['POST'])
def process_jobs() -> flask.Response:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    err    = base.ErrorSink()
    job_id = base.json_dict_optional_int(get.json, 'jobId', err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        sends = consumption.send_pending_jobs(context_from_db(db), job_id=job_id, unix_ts_ms=now_unix_ts_ms())
    return html_good_response({'jobs': [it.to_dict() for it in sends]})

@flask_blueprint.route(ROUTE_RUN_SWEEP, methods=['POST'])
def run_sweep() -> flask.Response:
    with open_db_from_flask_request_context(flask.current_app) as db:
        ctx   = context_from_db(db)
        sweep = dispatcher.run_notification_sweep(ctx, now_unix_ts_ms())
        sends = consumption.send_pending_jobs(ctx, unix_ts_ms=now_unix_ts_ms())
    return html_good_response({'notifications': sweep.to_dict(), 'jobs': [it.to_dict() for it in sends]})

@flask_blueprint.route(ROUTE_BACKFILL, methods=['POST'])
def backfill() -> flask.Response:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    err               = base.ErrorSink()
    notification_type = base.json_dict_optional_str(get.json,  'notificationType', err)
    environment       = base.json_dict_optional_str(get.json,  'environment',      err)
    process           = base.json_dict_optional_bool(get.json, 'process',          False, err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        ctx    = context_from_db(db)
        filled = platform_apple.backfill_notification_history(ctx               = ctx,
                                                              environment       = environment,
                                                              start             = get.json.get('startDate'),
                                                              end               = get.json.get('endDate'),
                                                              notification_type = notification_type,
                                                              unix_ts_ms        = now_unix_ts_ms(),
                                                              err               = err)
        if err.has() or filled is None:
            return html_bad_response(400, err.msg_list)

        result_dict = filled.to_dict()
        if process:
            ids        = filled.imported.ids
            batch_size = backend.DISPATCH_BATCH_LIMIT
            batches    = run_batches(math.ceil(len(ids) / batch_size),
                                     lambda index: dispatcher.process_notification_ids(ctx, ids[index * batch_size:(index + 1) * batch_size], now_unix_ts_ms()))

            processed = dispatcher.BatchResult()
            for it in batches:
                processed.merge(it)
            result_dict['batches']   = len(batches)
            result_dict['processed'] = processed.to_dict()

    return html_good_response(result_dict)

@flask_blueprint.route(ROUTE_NOTIFICATION_HISTORY, methods=['POST'])
def notification_history() -> flask.Response:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    err               = base.ErrorSink()
    notification_type = base.json_dict_optional_str(get.json, 'notificationType', err)
    environment       = base.json_dict_optional_str(get.json, 'environment',      err)
    date_range        = platform_apple.normalize_date_range(get.json.get('startDate'), get.json.get('endDate'), now_unix_ts_ms(), err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        client  = context_from_db(db).client(environment)
        history = client.get_notification_history(date_range.start_unix_ts_ms, date_range.end_unix_ts_ms, notification_type)

    result = html_good_response({'startDate':           base.iso8601_from_unix_ts_ms(date_range.start_unix_ts_ms),
                                 'endDate':             base.iso8601_from_unix_ts_ms(date_range.end_unix_ts_ms),
                                 'environment':         client.environment,
                                 'pages':               history.pages,
                                 'hasMore':             history.has_more,
                                 'notificationHistory': history.items,
                                 'errorCode':           history.error_code,
                                 'errorMessage':        history.error_message})
    return result

def transaction_lookup(lookup: typing.Callable[[platform_apple_api.Client, str], platform_apple_api.APIResult]) -> flask.Response:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    err            = base.ErrorSink()
    transaction_id = base.json_dict_require_str(get.json,  'transactionId', err)
    environment    = base.json_dict_optional_str(get.json, 'environment',   err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        api = lookup(context_from_db(db).client(environment), transaction_id)

    result = html_good_response(api.data if api.data is not None else {}) if api.success else html_apple_error_response(api)
    return result

@flask_blueprint.route(ROUTE_REFUND_HISTORY, methods=['POST'])
def refund_history() -> flask.Response:
    return transaction_lookup(platform_apple_api.Client.lookup_refund_history)

@flask_blueprint.route(ROUTE_TRANSACTION_HISTORY, methods=['POST'])
def transaction_history() -> flask.Response:
    return transaction_lookup(platform_apple_api.Client.get_transaction_history)

@flask_blueprint.route(ROUTE_TEST_NOTIFICATION, methods=['POST'])
def test_notification() -> flask.Response:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    err         = base.ErrorSink()
    environment = base.json_dict_optional_str(get.json, 'environment', err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        api = context_from_db(db).client(environment).request_test_notification()

    result = html_good_response(api.data if api.data is not None else {}) if api.success else html_apple_error_response(api)
    return result

@flask_blueprint.route(ROUTE_TEST_NOTIFICATION_STATUS, methods=['POST'])
def test_notification_status() -> flask.Response:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    err         = base.ErrorSink()
    token       = base.json_dict_require_str(get.json,  'testNotificationToken', err)
    environment = base.json_dict_optional_str(get.json, 'environment',           err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        api = context_from_db(db).client(environment).get_test_notification_status(token)

    result = html_good_response(api.data if api.data is not None else {}) if api.success else html_apple_error_response(api)
    return result

@flask_blueprint.route(ROUTE_CONFIG, methods=['GET', 'POST'])
def config() -> flask.Response:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        return html_bad_response(400, get.err_msg)

    err               = base.ErrorSink()
    refund_preference = base.json_dict_optional_int(get.json, 'refundPreference', err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    with open_db_from_flask_request_context(flask.current_app) as db:
        if refund_preference is not None:
            with base.SQLTransaction(db.sql_conn) as tx:
                tx.cancel = not backend.set_refund_preference_tx(tx, refund_preference, err)
        runtime = backend.get_runtime(db.sql_conn)

    if err.has():
        return html_bad_response(400, err.msg_list)

    result = html_good_response({'refundPreference':   runtime.refund_preference,
                                 'lastSweepAt':        base.iso8601_from_unix_ts_ms(runtime.last_sweep_unix_ts_ms or None),
                                 'lastBackfillAt':     base.iso8601_from_unix_ts_ms(runtime.last_backfill_unix_ts_ms or None)})
    return result
