'''
The backend is the persistent store of the notification pipeline. It owns the SQLite schema and
every read and write against it. No function in this layer talks to the network, the callers
(dispatcher, consumption sender, HTTP routes) decide when to call into Apple and record the outcome
here.

Every status column is backed by an enum in this file and every status change goes through
`transition_allowed` followed by a conditional UPDATE that re-asserts the previous status in its
WHERE clause. If the row was changed by someone else in between, the UPDATE affects zero rows and
the caller treats it as having lost the race.
'''

import traceback
import sqlite3
import os
import typing
import dataclasses
import logging
import enum
import json

import base

log = logging.Logger("BACKEND")

# NOTE: Retry ceilings and the timings driving the periodic sweeps
MAX_NOTIFICATION_RETRIES:              int = 3
MAX_JOB_RETRIES:                       int = 3
DISPATCH_BATCH_LIMIT:                  int = 50
SEND_JOB_BATCH_LIMIT:                  int = 10
JOB_RETRY_BACKOFF_MS:                  int = 5  * base.MILLISECONDS_IN_MINUTE
STALE_PENDING_NOTIFICATION_MS:         int = 5  * base.MILLISECONDS_IN_MINUTE
FAILED_NOTIFICATION_RETRY_INTERVAL_MS: int = 30 * base.MILLISECONDS_IN_MINUTE
SWEEP_STALE_PENDING_LIMIT:             int = 50
SWEEP_RETRY_FAILED_LIMIT:              int = 20
CONSUMPTION_REQUEST_DEADLINE_MS:       int = 12 * base.MILLISECONDS_IN_HOUR
API_LOG_BODY_MAX_CHARS:                int = 1000

class NotificationStatus(enum.Enum):
    Pending         = 'pending'
    Processed       = 'processed'
    Failed          = 'failed'
    FailedPermanent = 'failed_permanent'

class NotificationSource(enum.Enum):
    Webhook    = 'webhook'
    HistoryAPI = 'history_api'

class ConsumptionRequestStatus(enum.Enum):
    Pending = 'pending'
    Sent    = 'sent'
    Failed  = 'failed'

class JobStatus(enum.Enum):
    Pending    = 'pending'
    Processing = 'processing'
    Sent       = 'sent'
    Failed     = 'failed'

StatusEnum: typing.TypeAlias = NotificationStatus | ConsumptionRequestStatus | JobStatus

# NOTE: Transitions the pipeline performs on its own. Anything not listed here is illegal unless it
# appears in the manual table below and the caller is an explicit admin operation.
AUTOMATIC_TRANSITIONS: dict[StatusEnum, frozenset[StatusEnum]] = {
    NotificationStatus.Pending:       frozenset({NotificationStatus.Processed, NotificationStatus.Failed}),
    NotificationStatus.Failed:        frozenset({NotificationStatus.Pending,   NotificationStatus.FailedPermanent}),

    JobStatus.Pending:                frozenset({JobStatus.Processing}),
    JobStatus.Processing:             frozenset({JobStatus.Sent, JobStatus.Pending, JobStatus.Failed}),

    ConsumptionRequestStatus.Pending: frozenset({ConsumptionRequestStatus.Sent, ConsumptionRequestStatus.Failed}),
    ConsumptionRequestStatus.Failed:  frozenset({ConsumptionRequestStatus.Sent}),
}

MANUAL_TRANSITIONS: dict[StatusEnum, frozenset[StatusEnum]] = {
    NotificationStatus.FailedPermanent: frozenset({NotificationStatus.Pending}),

    JobStatus.Failed:                   frozenset({JobStatus.Pending}),
    JobStatus.Sent:                     frozenset({JobStatus.Pending}),

    ConsumptionRequestStatus.Failed:    frozenset({ConsumptionRequestStatus.Pending}),
    ConsumptionRequestStatus.Sent:      frozenset({ConsumptionRequestStatus.Pending}),
}

@dataclasses.dataclass
class SQLField:
    name: str = ''
    type: str = ''

SQL_TABLE_NOTIFICATIONS_RAW_FIELD: list[SQLField] = [
  SQLField('notification_uuid',        'TEXT NOT NULL UNIQUE'), # Apple assigned, dedups webhook redeliveries and history imports
  SQLField('notification_type',        'TEXT NOT NULL'),
  SQLField('subtype',                  'TEXT'),
  SQLField('signed_payload',           'TEXT NOT NULL'),        # Original JWS retained for auditing
  SQLField('decoded_payload',          'TEXT NOT NULL'),        # JSON, nested signed tokens are already decoded

  # JSON of the decoded `signedTransactionInfo`. The webhook path also keeps this decoded inside
  # `decoded_payload` whereas the history importer only populates this column so the dispatcher
  # must fall back to it.
  SQLField('decoded_transaction_info', 'TEXT'),
  SQLField('environment',              'TEXT NOT NULL'),        # 'Sandbox' or 'Production'
  SQLField('status',                   'TEXT NOT NULL'),        # `NotificationStatus`
  SQLField('source',                   'TEXT NOT NULL'),        # `NotificationSource`

  # Retry bookkeeping, only ever written by the periodic sweep. The dispatcher records the failure
  # but leaves deciding when to try again to the sweep.
  SQLField('retry_count',              'INTEGER NOT NULL DEFAULT 0'),
  SQLField('last_retry_unix_ts_ms',    'INTEGER'),
  SQLField('received_unix_ts_ms',      'INTEGER NOT NULL'),
  SQLField('processed_unix_ts_ms',     'INTEGER'),
  SQLField('error_message',            'TEXT'),
  SQLField('signed_date_unix_ts_ms',   'INTEGER'),              # Apple's claimed signing time
]

SQL_TABLE_TRANSACTIONS_FIELD: list[SQLField] = [
  SQLField('transaction_id',                'TEXT PRIMARY KEY NOT NULL'),
  SQLField('original_transaction_id',       'TEXT NOT NULL'),
  SQLField('product_id',                    'TEXT'),
  SQLField('product_type',                  'TEXT'),
  SQLField('purchase_unix_ts_ms',           'INTEGER'),
  SQLField('original_purchase_unix_ts_ms',  'INTEGER'),
  SQLField('expiration_unix_ts_ms',         'INTEGER'),
  SQLField('price',                         'REAL'),    # Currency units, Apple reports milliunits
  SQLField('currency',                      'TEXT'),
  SQLField('quantity',                      'INTEGER'),
  SQLField('app_account_token',             'TEXT'),    # Groups every purchase made by the same app user
  SQLField('in_app_ownership_type',         'TEXT'),
  SQLField('environment',                   'TEXT NOT NULL'),
  SQLField('created_unix_ts_ms',            'INTEGER NOT NULL'),
  SQLField('updated_unix_ts_ms',            'INTEGER NOT NULL'),
]

NOTIFICATION_COLUMNS:         str = 'id, ' + ', '.join([it.name for it in SQL_TABLE_NOTIFICATIONS_RAW_FIELD])
TRANSACTION_COLUMNS:          str = ', '.join([it.name for it in SQL_TABLE_TRANSACTIONS_FIELD])
REFUND_COLUMNS:               str = 'id, transaction_id, original_transaction_id, refund_unix_ts_ms, refund_amount, refund_reason, environment, created_unix_ts_ms'
CONSUMPTION_REQUEST_COLUMNS:  str = 'id, notification_id, original_transaction_id, consumption_request_reason, request_unix_ts_ms, deadline_unix_ts_ms, status, environment, created_unix_ts_ms'
SEND_JOB_COLUMNS:             str = 'id, consumption_request_id, consumption_data, status, retry_count, max_retries, scheduled_unix_ts_ms, response_status_code, response_data, error_message, sent_unix_ts_ms, created_unix_ts_ms'
APPLE_API_LOG_COLUMNS:        str = 'id, endpoint, method, request_headers, request_body, response_status, response_headers, response_body, duration_ms, environment, notes, created_unix_ts_ms'

@dataclasses.dataclass
class NotificationRow:
    id:                       int                     = 0
    notification_uuid:        str                     = ''
    notification_type:        str                     = ''
    subtype:                  str | None              = None
    signed_payload:           str                     = ''
    decoded_payload:          base.JSONObject         = dataclasses.field(default_factory=dict)
    decoded_transaction_info: base.JSONObject | None  = None
    environment:              str                     = ''
    status:                   NotificationStatus      = NotificationStatus.Pending
    source:                   NotificationSource      = NotificationSource.Webhook
    retry_count:              int                     = 0
    last_retry_unix_ts_ms:    int | None              = None
    received_unix_ts_ms:      int                     = 0
    processed_unix_ts_ms:     int | None              = None
    error_message:            str | None              = None
    signed_date_unix_ts_ms:   int | None              = None

@dataclasses.dataclass
class IngestResult:
    created: bool               = False
    id:      int                = 0
    status:  NotificationStatus = NotificationStatus.Pending

@dataclasses.dataclass
class TransactionRow:
    transaction_id:               str          = ''
    original_transaction_id:      str          = ''
    product_id:                   str | None   = None
    product_type:                 str | None   = None
    purchase_unix_ts_ms:          int | None   = None
    original_purchase_unix_ts_ms: int | None   = None
    expiration_unix_ts_ms:        int | None   = None
    price:                        float | None = None
    currency:                     str | None   = None
    quantity:                     int | None   = None
    app_account_token:            str | None   = None
    in_app_ownership_type:        str | None   = None
    environment:                  str          = ''
    created_unix_ts_ms:           int          = 0
    updated_unix_ts_ms:           int          = 0

@dataclasses.dataclass
class RefundRow:
    id:                      int          = 0
    transaction_id:          str          = ''
    original_transaction_id: str          = ''
    refund_unix_ts_ms:       int          = 0
    refund_amount:           float | None = None
    refund_reason:           str | None   = None
    environment:             str          = ''
    created_unix_ts_ms:      int          = 0

@dataclasses.dataclass
class ConsumptionRequestRow:
    id:                         int                      = 0
    notification_id:            int                      = 0
    original_transaction_id:    str                      = ''
    consumption_request_reason: str | None               = None
    request_unix_ts_ms:         int                      = 0
    deadline_unix_ts_ms:        int                      = 0
    status:                     ConsumptionRequestStatus = ConsumptionRequestStatus.Pending
    environment:                str                      = ''
    created_unix_ts_ms:         int                      = 0

@dataclasses.dataclass
class CreateConsumptionRequestResult:
    created: bool = False
    id:      int  = 0

@dataclasses.dataclass
class SendConsumptionJobRow:
    id:                     int             = 0
    consumption_request_id: int             = 0
    consumption_data:       base.JSONObject = dataclasses.field(default_factory=dict)
    status:                 JobStatus       = JobStatus.Pending
    retry_count:            int             = 0
    max_retries:            int             = MAX_JOB_RETRIES
    scheduled_unix_ts_ms:   int             = 0
    response_status_code:   int | None      = None
    response_data:          str | None      = None
    error_message:          str | None      = None
    sent_unix_ts_ms:        int | None      = None
    created_unix_ts_ms:     int             = 0

@dataclasses.dataclass
class AppleAPILogRow:
    id:                 int        = 0
    endpoint:           str        = ''
    method:             str        = ''
    request_headers:    str | None = None
    request_body:       str | None = None
    response_status:    int | None = None
    response_headers:   str | None = None
    response_body:      str | None = None
    duration_ms:        int | None = None
    environment:        str | None = None
    notes:              str | None = None
    created_unix_ts_ms: int        = 0

@dataclasses.dataclass
class RuntimeRow:
    '''The runtime table stores the single row of settings that operators can change at runtime

    refund_preference - The value declared to Apple in the `refundPreference` field of every
    consumption response (0 undeclared, 1 prefer grant, 2 prefer decline, 3 no preference). Read
    once per invocation and passed down to the consumption calculator rather than looked up from
    inside the handlers.

    last_sweep_unix_ts_ms - Last time the notification sweep ran to completion.

    last_backfill_unix_ts_ms - Last time a history backfill imported notifications into the DB.
    '''
    refund_preference:        int = 0
    last_sweep_unix_ts_ms:    int = 0
    last_backfill_unix_ts_ms: int = 0

@dataclasses.dataclass
class SetupDBResult:
    """
    Class is returned by backend.setup_db() which opens the DB and maintains a connection to the DB
    via `sql_conn`. Caller must close `sql_conn` if they wish to release the connection from the DB.
    The setup function creates the tables required to operate the notification pipeline.

    Normally you would not return the DB connection as it's easy to accidentally leak the DB
    connection in this object however we also use this in tests which use an in-memory transient DB
    If we were to close connection before returning to the user, the DB will be wiped from memory
    making it useless for tests.
    """
    path:     str                       = ''
    success:  bool                      = False
    runtime:  RuntimeRow                = dataclasses.field(default_factory=RuntimeRow)
    sql_conn: sqlite3.Connection | None = None

@dataclasses.dataclass
class OpenDBAtPath:
    """
    Open a pre-existing DB at the specified path. This class should be used in a `with` context to
    ensure that the connection established to the database is closed on scope exit, e.g.:

    with OpenDBAtPath(...) as db:
        # Use db.sql_conn
        pass
    """

    sql_conn: sqlite3.Connection
    runtime:  RuntimeRow
    def __init__(self, db_path: str, uri: bool = False):
        self.sql_conn = sqlite3.connect(db_path, uri=uri)
        self.runtime  = get_runtime(self.sql_conn)

    def __enter__(self):
        return self

    def __exit__(self,
                 exc_type:  object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        self.sql_conn.close()
        return False

def transition_allowed(current: StatusEnum, target: StatusEnum, manual: bool = False) -> bool:
    '''
    Single source of truth for the lifecycle of notifications, consumption requests and send jobs.
    Manual transitions are the resets that only an explicit admin operation may perform (e.g.
    reviving a permanently failed notification).
    '''
    if type(current) is not type(target):
        return False
    result = target in AUTOMATIC_TRANSITIONS.get(current, frozenset())
    if not result and manual:
        result = target in MANUAL_TRANSITIONS.get(current, frozenset())
    return result

def string_from_sql_fields(fields: list[SQLField], schema: bool) -> str:
    result = ''
    if schema:
        result = ',\n'.join([f'{it.name} {it.type}' for it in fields]) # Create '<field0> <type0>,\n<field1> <type1>, ...'
    else:
        result = ', '.join([it.name for it in fields])  # Create '<field0>, <field1>, ...'
    return result

def _json_or_none(value: str | None) -> typing.Any:
    result = None
    if value:
        result = json.loads(value)
    return result

def notification_row_from_tuple(row: tuple[typing.Any, ...]) -> NotificationRow:
    result                          = NotificationRow()
    result.id                       = row[0]
    result.notification_uuid        = row[1]
    result.notification_type        = row[2]
    result.subtype                  = row[3]
    result.signed_payload           = row[4]
    result.decoded_payload          = _json_or_none(row[5]) or {}
    result.decoded_transaction_info = _json_or_none(row[6])
    result.environment              = row[7]
    result.status                   = NotificationStatus(row[8])
    result.source                   = NotificationSource(row[9])
    result.retry_count              = row[10]
    result.last_retry_unix_ts_ms    = row[11]
    result.received_unix_ts_ms      = row[12]
    result.processed_unix_ts_ms     = row[13]
    result.error_message            = row[14]
    result.signed_date_unix_ts_ms   = row[15]
    return result

def transaction_row_from_tuple(row: tuple[typing.Any, ...]) -> TransactionRow:
    result                              = TransactionRow()
    result.transaction_id               = row[0]
    result.original_transaction_id      = row[1]
    result.product_id                   = row[2]
    result.product_type                 = row[3]
    result.purchase_unix_ts_ms          = row[4]
    result.original_purchase_unix_ts_ms = row[5]
    result.expiration_unix_ts_ms        = row[6]
    result.price                        = row[7]
    result.currency                     = row[8]
    result.quantity                     = row[9]
    result.app_account_token            = row[10]
    result.in_app_ownership_type        = row[11]
    result.environment                  = row[12]
    result.created_unix_ts_ms           = row[13]
    result.updated_unix_ts_ms           = row[14]
    return result

def refund_row_from_tuple(row: tuple[typing.Any, ...]) -> RefundRow:
    result = RefundRow(id                      = row[0],
                       transaction_id          = row[1],
                       original_transaction_id = row[2],
                       refund_unix_ts_ms       = row[3],
                       refund_amount           = row[4],
                       refund_reason           = row[5],
                       environment             = row[6],
                       created_unix_ts_ms      = row[7])
    return result

def consumption_request_row_from_tuple(row: tuple[typing.Any, ...]) -> ConsumptionRequestRow:
    result = ConsumptionRequestRow(id                         = row[0],
                                   notification_id            = row[1],
                                   original_transaction_id    = row[2],
                                   consumption_request_reason = row[3],
                                   request_unix_ts_ms         = row[4],
                                   deadline_unix_ts_ms        = row[5],
                                   status                     = ConsumptionRequestStatus(row[6]),
                                   environment                = row[7],
                                   created_unix_ts_ms         = row[8])
    return result

def send_job_row_from_tuple(row: tuple[typing.Any, ...]) -> SendConsumptionJobRow:
    result = SendConsumptionJobRow(id                     = row[0],
                                   consumption_request_id = row[1],
                                   consumption_data       = _json_or_none(row[2]) or {},
                                   status                 = JobStatus(row[3]),
                                   retry_count            = row[4],
                                   max_retries            = row[5],
                                   scheduled_unix_ts_ms   = row[6],
                                   response_status_code   = row[7],
                                   response_data          = row[8],
                                   error_message          = row[9],
                                   sent_unix_ts_ms        = row[10],
                                   created_unix_ts_ms     = row[11])
    return result

def apple_api_log_row_from_tuple(row: tuple[typing.Any, ...]) -> AppleAPILogRow:
    result = AppleAPILogRow(id                 = row[0],
                            endpoint           = row[1],
                            method             = row[2],
                            request_headers    = row[3],
                            request_body       = row[4],
                            response_status    = row[5],
                            response_headers   = row[6],
                            response_body      = row[7],
                            duration_ms        = row[8],
                            environment        = row[9],
                            notes              = row[10],
                            created_unix_ts_ms = row[11])
    return result

def get_runtime_tx(tx: base.SQLTransaction) -> RuntimeRow:
    assert tx.cursor is not None
    _                               = tx.cursor.execute('SELECT refund_preference, last_sweep_unix_ts_ms, last_backfill_unix_ts_ms FROM runtime')
    row                             = typing.cast(tuple[int, int, int], tx.cursor.fetchone())
    result: RuntimeRow              = RuntimeRow()
    result.refund_preference        = row[0]
    result.last_sweep_unix_ts_ms    = row[1]
    result.last_backfill_unix_ts_ms = row[2]
    return result

def get_runtime(sql_conn: sqlite3.Connection) -> RuntimeRow:
    result: RuntimeRow = RuntimeRow()
    with base.SQLTransaction(sql_conn) as tx:
        result = get_runtime_tx(tx)
    return result

def set_refund_preference_tx(tx: base.SQLTransaction, refund_preference: int, err: base.ErrorSink) -> bool:
    # NOTE: Apple accepts 0 (undeclared), 1 (grant), 2 (decline) and 3 (no preference)
    if refund_preference < 0 or refund_preference > 3:
        err.msg_list.append(f'Refund preference must be between 0 and 3, received {refund_preference}')
        return False
    assert tx.cursor is not None
    _ = tx.cursor.execute('UPDATE runtime SET refund_preference = ?', (refund_preference,))
    return True

def set_last_sweep_unix_ts_ms_tx(tx: base.SQLTransaction, unix_ts_ms: int):
    assert tx.cursor is not None
    _ = tx.cursor.execute('UPDATE runtime SET last_sweep_unix_ts_ms = ?', (unix_ts_ms,))

def set_last_backfill_unix_ts_ms_tx(tx: base.SQLTransaction, unix_ts_ms: int):
    assert tx.cursor is not None
    _ = tx.cursor.execute('UPDATE runtime SET last_backfill_unix_ts_ms = ?', (unix_ts_ms,))

def db_info_string(sql_conn: sqlite3.Connection, db_path: str, err: base.ErrorSink) -> str:
    notification_counts: dict[str, int] = {}
    transactions                        = 0
    refunds                             = 0
    consumption_requests                = 0
    jobs                                = 0
    api_logs                            = 0
    db_size                             = 0
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        try:
            _ = tx.cursor.execute('SELECT status, COUNT(*) FROM notifications_raw GROUP BY status')
            for status, count in typing.cast(list[tuple[str, int]], tx.cursor.fetchall()):
                notification_counts[status] = count

            _                    = tx.cursor.execute('SELECT COUNT(*) FROM transactions')
            transactions         = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                    = tx.cursor.execute('SELECT COUNT(*) FROM refunds')
            refunds              = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                    = tx.cursor.execute('SELECT COUNT(*) FROM consumption_requests')
            consumption_requests = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                    = tx.cursor.execute('SELECT COUNT(*) FROM send_consumption_jobs')
            jobs                 = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                    = tx.cursor.execute('SELECT COUNT(*) FROM apple_api_logs')
            api_logs             = typing.cast(tuple[int], tx.cursor.fetchone())[0]
        except Exception as e:
            err.msg_list.append(f"Failed to retrieve DB metadata: {e}")

    result = ''
    if len(err.msg_list) == 0:
        if os.path.exists(db_path):
            db_size = os.stat(db_path).st_size
        runtime: RuntimeRow = get_runtime(sql_conn)
        notif_label = '/'.join([str(notification_counts.get(it.value, 0)) for it in NotificationStatus])
        result = (
            '  DB:                                   {} ({:,} bytes)\n'.format(db_path, db_size) +
            '  Notifs. Pending/Processed/Failed/Perm: {}\n'.format(notif_label) +
            '  Transactions/Refunds:                 {}/{}\n'.format(transactions, refunds) +
            '  Consumption Requests/Jobs:            {}/{}\n'.format(consumption_requests, jobs) +
            '  Apple API Logs:                       {}\n'.format(api_logs) +
            '  Refund Preference:                    {}'.format(runtime.refund_preference)
        )

    return result

def setup_db(path: str, uri: bool, err: base.ErrorSink) -> SetupDBResult:
    result: SetupDBResult = SetupDBResult()
    result.path           = path
    try:
        result.sql_conn = sqlite3.connect(path, uri=uri)
    except Exception as e:
        err.msg_list.append(f'Failed to open/connect to DB at {path}: {e}')
        return result

    with base.SQLTransaction(result.sql_conn) as tx:
        sql_stmt: str = f'''
            -- One row per notification Apple sent us, either pushed to the webhook or pulled from
            -- the notification history API. Apple redelivers notifications it considers
            -- unacknowledged (at 1, 12, 24, 48 and 72 hours) and a history backfill overlaps with
            -- whatever the webhook already received so the UUID is the dedup key for both paths.
            CREATE TABLE IF NOT EXISTS notifications_raw (
                id INTEGER PRIMARY KEY NOT NULL,
                {string_from_sql_fields(fields=SQL_TABLE_NOTIFICATIONS_RAW_FIELD, schema=True)}
            );

            CREATE INDEX IF NOT EXISTS notifications_raw_status_received ON notifications_raw (status, received_unix_ts_ms);

            CREATE TABLE IF NOT EXISTS transactions (
                {string_from_sql_fields(fields=SQL_TABLE_TRANSACTIONS_FIELD, schema=True)}
            );

            CREATE INDEX IF NOT EXISTS transactions_original_transaction_id ON transactions (original_transaction_id, environment);
            CREATE INDEX IF NOT EXISTS transactions_app_account_token       ON transactions (app_account_token, environment);

            -- Refund facts are never revised once recorded, a second REFUND notification for the
            -- same transaction and date is ignored rather than overwriting the first.
            CREATE TABLE IF NOT EXISTS refunds (
                id                      INTEGER PRIMARY KEY NOT NULL,
                transaction_id          TEXT    NOT NULL,
                original_transaction_id TEXT    NOT NULL,
                refund_unix_ts_ms       INTEGER NOT NULL,
                refund_amount           REAL,
                refund_reason           TEXT,
                environment             TEXT    NOT NULL,
                created_unix_ts_ms      INTEGER NOT NULL,
                UNIQUE(transaction_id, refund_unix_ts_ms)
            );

            CREATE TABLE IF NOT EXISTS consumption_requests (
                id                         INTEGER PRIMARY KEY NOT NULL,
                notification_id            INTEGER NOT NULL UNIQUE REFERENCES notifications_raw(id),
                original_transaction_id    TEXT    NOT NULL,
                consumption_request_reason TEXT,
                request_unix_ts_ms         INTEGER NOT NULL,
                -- Apple expects a response within 12 hours of the request
                deadline_unix_ts_ms        INTEGER NOT NULL,
                status                     TEXT    NOT NULL, -- `ConsumptionRequestStatus`
                environment                TEXT    NOT NULL,
                created_unix_ts_ms         INTEGER NOT NULL
            );

            -- Outbound queue of consumption responses to PUT to Apple. The `consumption_data` is
            -- a snapshot taken when the job was created, resending fresher data means creating a
            -- new job.
            CREATE TABLE IF NOT EXISTS send_consumption_jobs (
                id                     INTEGER PRIMARY KEY NOT NULL,
                consumption_request_id INTEGER NOT NULL REFERENCES consumption_requests(id),
                consumption_data       TEXT    NOT NULL,
                status                 TEXT    NOT NULL, -- `JobStatus`
                retry_count            INTEGER NOT NULL DEFAULT 0,
                max_retries            INTEGER NOT NULL,
                scheduled_unix_ts_ms   INTEGER NOT NULL, -- Job is not picked up by the sweep before this time
                response_status_code   INTEGER,
                response_data          TEXT,
                error_message          TEXT,
                sent_unix_ts_ms        INTEGER,
                created_unix_ts_ms     INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS send_consumption_jobs_status_scheduled ON send_consumption_jobs (status, scheduled_unix_ts_ms);

            -- Append-only audit trail of every call made to the App Store Server API. A row is
            -- written before the request goes out and the response columns are filled in once.
            CREATE TABLE IF NOT EXISTS apple_api_logs (
                id                 INTEGER PRIMARY KEY NOT NULL,
                endpoint           TEXT    NOT NULL,
                method             TEXT    NOT NULL,
                request_headers    TEXT,
                request_body       TEXT,
                response_status    INTEGER,
                response_headers   TEXT,
                response_body      TEXT,
                duration_ms        INTEGER,
                environment        TEXT,
                notes              TEXT,
                created_unix_ts_ms INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS runtime (
                refund_preference        INTEGER NOT NULL, -- See `RuntimeRow`
                last_sweep_unix_ts_ms    INTEGER NOT NULL, -- Last time the notification sweep completed
                last_backfill_unix_ts_ms INTEGER NOT NULL  -- Last time the history API was imported
            );
        '''

        assert tx.cursor is not None

        try:
            # NOTE: Bootstrap tables
            _ = tx.cursor.executescript(sql_stmt)
            _ = tx.cursor.execute('''PRAGMA journal_mode=WAL''')

            # NOTE: Version migration
            target_db_version = 1
            if 1:
                db_version: int = tx.cursor.execute('PRAGMA user_version').fetchone()[0]  # pyright: ignore[reportAny]

                # NOTE: v0 is the nil state, it means the DB has never been bootstrapped. All the
                # tables will have been created with the latest schema so we teleport to the target
                # version
                if db_version == 0:
                    db_version = target_db_version
                    _          = tx.cursor.execute(f'PRAGMA user_version = {db_version}')

                # NOTE: Verify that the DB was migrated to the target version
                assert db_version == target_db_version

            # NOTE: Initialise the runtime row (app global settings) with the default values
            if 1:
                _                  = tx.cursor.execute('SELECT EXISTS (SELECT 1 FROM runtime) as row_exists')
                runtime_row_exists = bool(typing.cast(tuple[int], tx.cursor.fetchone())[0])
                if not runtime_row_exists:
                    _ = tx.cursor.execute('INSERT INTO runtime SELECT 0, 0, 0')

            result.success = True
        except Exception:
            err.msg_list.append(f"Failed to bootstrap DB tables: {traceback.format_exc()}")

    if result.success:
        result.runtime = get_runtime(result.sql_conn)
    else:
        result.sql_conn.close()

    return result

def ingest_notification_tx(tx: base.SQLTransaction, row: NotificationRow) -> IngestResult:
    '''
    Store a notification unless one with the same UUID already exists. An existing row is never
    overwritten, whatever its status, so a redelivery can't resurrect work that is already done or
    in-flight.
    '''
    assert tx.cursor is not None
    decoded_tx_json: str | None = json.dumps(row.decoded_transaction_info) if row.decoded_transaction_info is not None else None
    _ = tx.cursor.execute(f'''
        INSERT INTO notifications_raw ({string_from_sql_fields(SQL_TABLE_NOTIFICATIONS_RAW_FIELD, schema=False)})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, NULL, ?, NULL, NULL, ?)
        ON CONFLICT(notification_uuid) DO NOTHING
    ''', (row.notification_uuid,
          row.notification_type,
          row.subtype,
          row.signed_payload,
          json.dumps(row.decoded_payload),
          decoded_tx_json,
          row.environment,
          row.status.value,
          row.source.value,
          row.received_unix_ts_ms,
          row.signed_date_unix_ts_ms))

    result = IngestResult()
    if tx.cursor.rowcount == 1:
        result.created = True
        result.id      = typing.cast(int, tx.cursor.lastrowid)
        result.status  = row.status
        log.info(f'Stored notification {row.notification_uuid} ({row.notification_type}, source={row.source.value}) as #{result.id}')
    else:
        _             = tx.cursor.execute('SELECT id, status FROM notifications_raw WHERE notification_uuid = ?', (row.notification_uuid,))
        existing      = typing.cast(tuple[int, str], tx.cursor.fetchone())
        result.id     = existing[0]
        result.status = NotificationStatus(existing[1])
        log.info(f'Notification {row.notification_uuid} already stored as #{result.id} ({result.status.value}), ignoring duplicate from {row.source.value}')
    return result

def get_notification_tx(tx: base.SQLTransaction, notification_id: int) -> NotificationRow | None:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'SELECT {NOTIFICATION_COLUMNS} FROM notifications_raw WHERE id = ?', (notification_id,))
    row    = typing.cast(tuple[typing.Any, ...] | None, tx.cursor.fetchone())
    result = notification_row_from_tuple(row) if row else None
    return result

def get_notification_by_uuid_tx(tx: base.SQLTransaction, notification_uuid: str) -> NotificationRow | None:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'SELECT {NOTIFICATION_COLUMNS} FROM notifications_raw WHERE notification_uuid = ?', (notification_uuid,))
    row    = typing.cast(tuple[typing.Any, ...] | None, tx.cursor.fetchone())
    result = notification_row_from_tuple(row) if row else None
    return result

def get_notification(sql_conn: sqlite3.Connection, notification_id: int) -> NotificationRow | None:
    result = None
    with base.SQLTransaction(sql_conn) as tx:
        result = get_notification_tx(tx, notification_id)
    return result

def clamp_dispatch_limit(limit: int | None) -> int:
    result = DISPATCH_BATCH_LIMIT if limit is None else max(1, min(limit, DISPATCH_BATCH_LIMIT))
    return result

def get_notifications_for_dispatch_tx(tx:                base.SQLTransaction,
                                      statuses:          typing.Iterable[NotificationStatus],
                                      notification_type: str | None,
                                      source:            NotificationSource | None,
                                      limit:             int | None) -> list[NotificationRow]:
    '''Oldest first, it's for fairness between notifications rather than priority'''
    status_values: list[str] = [it.value for it in statuses]
    assert all(it in (NotificationStatus.Pending.value, NotificationStatus.Failed.value) for it in status_values)
    if len(status_values) == 0:
        return []

    sql    = f'SELECT {NOTIFICATION_COLUMNS} FROM notifications_raw WHERE status IN ({", ".join("?" * len(status_values))})'
    params: list[typing.Any] = list(status_values)
    if notification_type:
        sql += ' AND notification_type = ?'
        params.append(notification_type)
    if source:
        sql += ' AND source = ?'
        params.append(source.value)
    sql += ' ORDER BY received_unix_ts_ms ASC, id ASC LIMIT ?'
    params.append(clamp_dispatch_limit(limit))

    assert tx.cursor is not None
    _      = tx.cursor.execute(sql, params)
    rows   = typing.cast(list[tuple[typing.Any, ...]], tx.cursor.fetchall())
    result = [notification_row_from_tuple(it) for it in rows]
    return result

def count_notifications_tx(tx: base.SQLTransaction, status: NotificationStatus, source: NotificationSource | None) -> int:
    assert tx.cursor is not None
    if source:
        _ = tx.cursor.execute('SELECT COUNT(*) FROM notifications_raw WHERE status = ? AND source = ?', (status.value, source.value))
    else:
        _ = tx.cursor.execute('SELECT COUNT(*) FROM notifications_raw WHERE status = ?', (status.value,))
    result = typing.cast(tuple[int], tx.cursor.fetchone())[0]
    return result

def update_notification_status_tx(tx:            base.SQLTransaction,
                                  notification_id: int,
                                  current:       NotificationStatus,
                                  target:        NotificationStatus,
                                  unix_ts_ms:    int,
                                  error_message: str | None,
                                  err:           base.ErrorSink,
                                  manual:        bool = False) -> bool:
    '''
    Move a notification from `current` to `target`. The update only applies if the row is still in
    `current` when the statement runs, returns false if someone else moved it first.
    '''
    if not transition_allowed(current, target, manual):
        err.msg_list.append(f'Notification #{notification_id} cannot transition from {current.value} to {target.value}')
        return False

    assert tx.cursor is not None
    match target:
        case NotificationStatus.Processed:
            _ = tx.cursor.execute('''
                UPDATE notifications_raw
                SET    status = ?, processed_unix_ts_ms = ?, error_message = NULL
                WHERE  id = ? AND status = ?
            ''', (target.value, unix_ts_ms, notification_id, current.value))
        case NotificationStatus.Failed | NotificationStatus.FailedPermanent:
            _ = tx.cursor.execute('''
                UPDATE notifications_raw
                SET    status = ?, error_message = COALESCE(?, error_message)
                WHERE  id = ? AND status = ?
            ''', (target.value, error_message, notification_id, current.value))
        case NotificationStatus.Pending:
            _ = tx.cursor.execute('''
                UPDATE notifications_raw
                SET    status = ?, processed_unix_ts_ms = NULL, error_message = NULL
                WHERE  id = ? AND status = ?
            ''', (target.value, notification_id, current.value))

    result = tx.cursor.rowcount == 1
    return result

def get_stale_pending_notification_ids_tx(tx: base.SQLTransaction, received_before_unix_ts_ms: int, limit: int) -> list[int]:
    assert tx.cursor is not None
    _      = tx.cursor.execute('''
        SELECT   id
        FROM     notifications_raw
        WHERE    status = ? AND received_unix_ts_ms < ?
        ORDER BY received_unix_ts_ms ASC, id ASC
        LIMIT    ?
    ''', (NotificationStatus.Pending.value, received_before_unix_ts_ms, limit))
    result = [it[0] for it in typing.cast(list[tuple[int]], tx.cursor.fetchall())]
    return result

def get_retry_eligible_failed_notification_ids_tx(tx: base.SQLTransaction, last_retry_before_unix_ts_ms: int, limit: int) -> list[int]:
    assert tx.cursor is not None
    _      = tx.cursor.execute('''
        SELECT   id
        FROM     notifications_raw
        WHERE    status = ? AND retry_count < ? AND (last_retry_unix_ts_ms IS NULL OR last_retry_unix_ts_ms < ?)
        ORDER BY received_unix_ts_ms ASC, id ASC
        LIMIT    ?
    ''', (NotificationStatus.Failed.value, MAX_NOTIFICATION_RETRIES, last_retry_before_unix_ts_ms, limit))
    result = [it[0] for it in typing.cast(list[tuple[int]], tx.cursor.fetchall())]
    return result

def requeue_failed_notification_tx(tx: base.SQLTransaction, notification_id: int, unix_ts_ms: int) -> bool:
    '''Bump the retry bookkeeping and hand a failed notification back to the dispatcher'''
    assert transition_allowed(NotificationStatus.Failed, NotificationStatus.Pending)
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        UPDATE notifications_raw
        SET    status = ?, retry_count = retry_count + 1, last_retry_unix_ts_ms = ?
        WHERE  id = ? AND status = ? AND retry_count < ?
    ''', (NotificationStatus.Pending.value, unix_ts_ms, notification_id, NotificationStatus.Failed.value, MAX_NOTIFICATION_RETRIES))
    result = tx.cursor.rowcount == 1
    return result

def mark_exhausted_notifications_failed_permanent_tx(tx: base.SQLTransaction) -> int:
    assert transition_allowed(NotificationStatus.Failed, NotificationStatus.FailedPermanent)
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        UPDATE notifications_raw
        SET    status = ?
        WHERE  status = ? AND retry_count >= ?
    ''', (NotificationStatus.FailedPermanent.value, NotificationStatus.Failed.value, MAX_NOTIFICATION_RETRIES))
    result = tx.cursor.rowcount
    return result

def upsert_transaction_tx(tx: base.SQLTransaction, row: TransactionRow, unix_ts_ms: int):
    '''Later notifications about the same transaction overwrite earlier ones'''
    assert tx.cursor is not None
    update_fields = [it.name for it in SQL_TABLE_TRANSACTIONS_FIELD if it.name not in ('transaction_id', 'created_unix_ts_ms')]
    _ = tx.cursor.execute(f'''
        INSERT INTO transactions ({TRANSACTION_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(transaction_id) DO UPDATE SET
        {', '.join([f'{it} = excluded.{it}' for it in update_fields])}
    ''', (row.transaction_id,
          row.original_transaction_id,
          row.product_id,
          row.product_type,
          row.purchase_unix_ts_ms,
          row.original_purchase_unix_ts_ms,
          row.expiration_unix_ts_ms,
          row.price,
          row.currency,
          row.quantity,
          row.app_account_token,
          row.in_app_ownership_type,
          row.environment,
          unix_ts_ms,
          unix_ts_ms))

def get_transaction_tx(tx: base.SQLTransaction, transaction_id: str) -> TransactionRow | None:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'SELECT {TRANSACTION_COLUMNS} FROM transactions WHERE transaction_id = ?', (transaction_id,))
    row    = typing.cast(tuple[typing.Any, ...] | None, tx.cursor.fetchone())
    result = transaction_row_from_tuple(row) if row else None
    return result

def get_latest_transaction_for_original_id_tx(tx: base.SQLTransaction, original_transaction_id: str, environment: str) -> TransactionRow | None:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'''
        SELECT   {TRANSACTION_COLUMNS}
        FROM     transactions
        WHERE    original_transaction_id = ? AND environment = ?
        ORDER BY COALESCE(purchase_unix_ts_ms, 0) DESC, updated_unix_ts_ms DESC
        LIMIT    1
    ''', (original_transaction_id, environment))
    row    = typing.cast(tuple[typing.Any, ...] | None, tx.cursor.fetchone())
    result = transaction_row_from_tuple(row) if row else None
    return result

def get_transactions_for_app_account_token_tx(tx: base.SQLTransaction, app_account_token: str, environment: str) -> list[TransactionRow]:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'SELECT {TRANSACTION_COLUMNS} FROM transactions WHERE app_account_token = ? AND environment = ?', (app_account_token, environment))
    rows   = typing.cast(list[tuple[typing.Any, ...]], tx.cursor.fetchall())
    result = [transaction_row_from_tuple(it) for it in rows]
    return result

def touch_transactions_for_original_id_tx(tx: base.SQLTransaction, original_transaction_id: str, unix_ts_ms: int) -> int:
    assert tx.cursor is not None
    _      = tx.cursor.execute('UPDATE transactions SET updated_unix_ts_ms = ? WHERE original_transaction_id = ?', (unix_ts_ms, original_transaction_id))
    result = tx.cursor.rowcount
    return result

def expire_transactions_for_original_id_tx(tx: base.SQLTransaction, original_transaction_id: str, unix_ts_ms: int) -> int:
    assert tx.cursor is not None
    _      = tx.cursor.execute('''
        UPDATE transactions
        SET    expiration_unix_ts_ms = ?, updated_unix_ts_ms = ?
        WHERE  original_transaction_id = ?
    ''', (unix_ts_ms, unix_ts_ms, original_transaction_id))
    result = tx.cursor.rowcount
    return result

def insert_refund_tx(tx: base.SQLTransaction, row: RefundRow, unix_ts_ms: int) -> bool:
    '''Returns true if the refund was new, a refund already on record is left untouched'''
    assert tx.cursor is not None
    _      = tx.cursor.execute('''
        INSERT INTO refunds (transaction_id, original_transaction_id, refund_unix_ts_ms, refund_amount, refund_reason, environment, created_unix_ts_ms)
        VALUES      (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(transaction_id, refund_unix_ts_ms) DO NOTHING
    ''', (row.transaction_id,
          row.original_transaction_id,
          row.refund_unix_ts_ms,
          row.refund_amount,
          row.refund_reason,
          row.environment,
          unix_ts_ms))
    result = tx.cursor.rowcount == 1
    return result

def get_refunds_for_transaction_id_tx(tx: base.SQLTransaction, transaction_id: str) -> list[RefundRow]:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'SELECT {REFUND_COLUMNS} FROM refunds WHERE transaction_id = ? ORDER BY refund_unix_ts_ms ASC', (transaction_id,))
    rows   = typing.cast(list[tuple[typing.Any, ...]], tx.cursor.fetchall())
    result = [refund_row_from_tuple(it) for it in rows]
    return result

def delete_refunds_for_transaction_id_tx(tx: base.SQLTransaction, transaction_id: str) -> int:
    assert tx.cursor is not None
    _      = tx.cursor.execute('DELETE FROM refunds WHERE transaction_id = ?', (transaction_id,))
    result = tx.cursor.rowcount
    return result

def sum_refunds_for_original_ids_tx(tx: base.SQLTransaction, original_transaction_ids: list[str], environment: str) -> float:
    result = 0.0
    if len(original_transaction_ids) == 0:
        return result
    assert tx.cursor is not None
    _   = tx.cursor.execute(f'''
        SELECT COALESCE(SUM(refund_amount), 0)
        FROM   refunds
        WHERE  environment = ? AND original_transaction_id IN ({", ".join("?" * len(original_transaction_ids))})
    ''', (environment, *original_transaction_ids))
    row    = typing.cast(tuple[float], tx.cursor.fetchone())
    result = float(row[0])
    return result

def create_consumption_request_tx(tx: base.SQLTransaction, row: ConsumptionRequestRow) -> CreateConsumptionRequestResult:
    '''One request per notification, a replay of the same notification returns the original row'''
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        INSERT INTO consumption_requests (notification_id, original_transaction_id, consumption_request_reason, request_unix_ts_ms, deadline_unix_ts_ms, status, environment, created_unix_ts_ms)
        VALUES      (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(notification_id) DO NOTHING
    ''', (row.notification_id,
          row.original_transaction_id,
          row.consumption_request_reason,
          row.request_unix_ts_ms,
          row.deadline_unix_ts_ms,
          row.status.value,
          row.environment,
          row.created_unix_ts_ms))

    result = CreateConsumptionRequestResult()
    if tx.cursor.rowcount == 1:
        result.created = True
        result.id      = typing.cast(int, tx.cursor.lastrowid)
    else:
        _         = tx.cursor.execute('SELECT id FROM consumption_requests WHERE notification_id = ?', (row.notification_id,))
        result.id = typing.cast(tuple[int], tx.cursor.fetchone())[0]
    return result

def get_consumption_request_tx(tx: base.SQLTransaction, consumption_request_id: int) -> ConsumptionRequestRow | None:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'SELECT {CONSUMPTION_REQUEST_COLUMNS} FROM consumption_requests WHERE id = ?', (consumption_request_id,))
    row    = typing.cast(tuple[typing.Any, ...] | None, tx.cursor.fetchone())
    result = consumption_request_row_from_tuple(row) if row else None
    return result

def get_consumption_request_for_notification_tx(tx: base.SQLTransaction, notification_id: int) -> ConsumptionRequestRow | None:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'SELECT {CONSUMPTION_REQUEST_COLUMNS} FROM consumption_requests WHERE notification_id = ?', (notification_id,))
    row    = typing.cast(tuple[typing.Any, ...] | None, tx.cursor.fetchone())
    result = consumption_request_row_from_tuple(row) if row else None
    return result

def update_consumption_request_status_tx(tx:                     base.SQLTransaction,
                                         consumption_request_id: int,
                                         target:                 ConsumptionRequestStatus,
                                         err:                    base.ErrorSink,
                                         manual:                 bool = False) -> bool:
    request = get_consumption_request_tx(tx, consumption_request_id)
    if request is None:
        err.msg_list.append(f'Consumption request #{consumption_request_id} does not exist')
        return False

    # NOTE: Already in the target state, e.g. a second job for the same request was also sent
    if request.status == target:
        return True

    if not transition_allowed(request.status, target, manual):
        err.msg_list.append(f'Consumption request #{consumption_request_id} cannot transition from {request.status.value} to {target.value}')
        return False

    assert tx.cursor is not None
    _      = tx.cursor.execute('UPDATE consumption_requests SET status = ? WHERE id = ? AND status = ?',
                               (target.value, consumption_request_id, request.status.value))
    result = tx.cursor.rowcount == 1
    return result

def create_send_consumption_job_tx(tx:                     base.SQLTransaction,
                                   consumption_request_id: int,
                                   consumption_data:       base.JSONObject,
                                   unix_ts_ms:             int) -> int:
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        INSERT INTO send_consumption_jobs (consumption_request_id, consumption_data, status, retry_count, max_retries, scheduled_unix_ts_ms, created_unix_ts_ms)
        VALUES      (?, ?, ?, 0, ?, ?, ?)
    ''', (consumption_request_id, json.dumps(consumption_data), JobStatus.Pending.value, MAX_JOB_RETRIES, unix_ts_ms, unix_ts_ms))
    result = typing.cast(int, tx.cursor.lastrowid)
    return result

def get_send_consumption_job_tx(tx: base.SQLTransaction, job_id: int) -> SendConsumptionJobRow | None:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'SELECT {SEND_JOB_COLUMNS} FROM send_consumption_jobs WHERE id = ?', (job_id,))
    row    = typing.cast(tuple[typing.Any, ...] | None, tx.cursor.fetchone())
    result = send_job_row_from_tuple(row) if row else None
    return result

def get_latest_send_consumption_job_for_request_tx(tx: base.SQLTransaction, consumption_request_id: int) -> SendConsumptionJobRow | None:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'''
        SELECT   {SEND_JOB_COLUMNS}
        FROM     send_consumption_jobs
        WHERE    consumption_request_id = ?
        ORDER BY created_unix_ts_ms DESC, id DESC
        LIMIT    1
    ''', (consumption_request_id,))
    row    = typing.cast(tuple[typing.Any, ...] | None, tx.cursor.fetchone())
    result = send_job_row_from_tuple(row) if row else None
    return result

def get_due_send_consumption_job_ids_tx(tx: base.SQLTransaction, unix_ts_ms: int, limit: int = SEND_JOB_BATCH_LIMIT) -> list[int]:
    assert tx.cursor is not None
    _      = tx.cursor.execute('''
        SELECT   id
        FROM     send_consumption_jobs
        WHERE    status = ? AND scheduled_unix_ts_ms <= ?
        ORDER BY created_unix_ts_ms ASC, id ASC
        LIMIT    ?
    ''', (JobStatus.Pending.value, unix_ts_ms, limit))
    result = [it[0] for it in typing.cast(list[tuple[int]], tx.cursor.fetchall())]
    return result

def claim_send_consumption_job_tx(tx: base.SQLTransaction, job_id: int) -> bool:
    '''pending -> processing, zero rows affected means another invocation already claimed it'''
    assert transition_allowed(JobStatus.Pending, JobStatus.Processing)
    assert tx.cursor is not None
    _      = tx.cursor.execute('UPDATE send_consumption_jobs SET status = ? WHERE id = ? AND status = ?',
                               (JobStatus.Processing.value, job_id, JobStatus.Pending.value))
    result = tx.cursor.rowcount == 1
    return result

def mark_send_consumption_job_sent_tx(tx: base.SQLTransaction, job_id: int, status_code: int, response_data: str | None, unix_ts_ms: int) -> bool:
    assert transition_allowed(JobStatus.Processing, JobStatus.Sent)
    assert tx.cursor is not None
    _      = tx.cursor.execute('''
        UPDATE send_consumption_jobs
        SET    status = ?, response_status_code = ?, response_data = ?, error_message = NULL, sent_unix_ts_ms = ?
        WHERE  id = ? AND status = ?
    ''', (JobStatus.Sent.value, status_code, response_data, unix_ts_ms, job_id, JobStatus.Processing.value))
    result = tx.cursor.rowcount == 1
    return result

def record_send_consumption_job_failure_tx(tx:            base.SQLTransaction,
                                           job_id:        int,
                                           status_code:   int | None,
                                           response_data: str | None,
                                           error_message: str,
                                           unix_ts_ms:    int) -> JobStatus | None:
    '''
    Count a failed delivery attempt against a job that is being processed. The job goes back to
    pending with a fixed backoff until it has used up its retries at which point it fails for good.
    Returns the status the job was moved to or None if the job wasn't in processing.
    '''
    job = get_send_consumption_job_tx(tx, job_id)
    if job is None or job.status != JobStatus.Processing:
        return None

    retry_count = job.retry_count + 1
    target      = JobStatus.Pending if retry_count < job.max_retries else JobStatus.Failed
    assert transition_allowed(JobStatus.Processing, target)

    scheduled_unix_ts_ms = unix_ts_ms + JOB_RETRY_BACKOFF_MS if target == JobStatus.Pending else job.scheduled_unix_ts_ms
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        UPDATE send_consumption_jobs
        SET    status = ?, retry_count = ?, scheduled_unix_ts_ms = ?, response_status_code = ?, response_data = ?, error_message = ?
        WHERE  id = ? AND status = ?
    ''', (target.value, retry_count, scheduled_unix_ts_ms, status_code, response_data, error_message, job_id, JobStatus.Processing.value))

    result = target if tx.cursor.rowcount == 1 else None
    return result

def reset_send_consumption_job_tx(tx: base.SQLTransaction, job_id: int, unix_ts_ms: int, err: base.ErrorSink) -> bool:
    '''Manual resend, the job restarts with a fresh retry budget and is due immediately'''
    job = get_send_consumption_job_tx(tx, job_id)
    if job is None:
        err.msg_list.append(f'Send consumption job #{job_id} does not exist')
        return False

    if job.status != JobStatus.Pending and not transition_allowed(job.status, JobStatus.Pending, manual=True):
        err.msg_list.append(f'Send consumption job #{job_id} cannot be reset while {job.status.value}')
        return False

    assert tx.cursor is not None
    _      = tx.cursor.execute('''
        UPDATE send_consumption_jobs
        SET    status = ?, retry_count = 0, scheduled_unix_ts_ms = ?, error_message = NULL
        WHERE  id = ? AND status = ?
    ''', (JobStatus.Pending.value, unix_ts_ms, job_id, job.status.value))
    result = tx.cursor.rowcount == 1
    return result

def insert_apple_api_log_tx(tx:              base.SQLTransaction,
                            endpoint:        str,
                            method:          str,
                            request_headers: str | None,
                            request_body:    str | None,
                            environment:     str | None,
                            notes:           str | None,
                            unix_ts_ms:      int) -> int:
    assert tx.cursor is not None
    _      = tx.cursor.execute('''
        INSERT INTO apple_api_logs (endpoint, method, request_headers, request_body, environment, notes, created_unix_ts_ms)
        VALUES      (?, ?, ?, ?, ?, ?, ?)
    ''', (endpoint, method, request_headers, request_body, environment, notes, unix_ts_ms))
    result = typing.cast(int, tx.cursor.lastrowid)
    return result

def update_apple_api_log_response_tx(tx:               base.SQLTransaction,
                                     log_id:           int,
                                     response_status:  int | None,
                                     response_headers: str | None,
                                     response_body:    str | None,
                                     duration_ms:      int) -> bool:
    '''Attach the outcome to the audit row, only possible once per row'''
    assert tx.cursor is not None
    _      = tx.cursor.execute('''
        UPDATE apple_api_logs
        SET    response_status = ?, response_headers = ?, response_body = ?, duration_ms = ?
        WHERE  id = ? AND duration_ms IS NULL
    ''', (response_status, response_headers, response_body, duration_ms, log_id))
    result = tx.cursor.rowcount == 1
    return result

def get_apple_api_logs_list(sql_conn: sqlite3.Connection) -> list[AppleAPILogRow]:
    result: list[AppleAPILogRow] = []
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _      = tx.cursor.execute(f'SELECT {APPLE_API_LOG_COLUMNS} FROM apple_api_logs ORDER BY id ASC')
        rows   = typing.cast(list[tuple[typing.Any, ...]], tx.cursor.fetchall())
        result = [apple_api_log_row_from_tuple(it) for it in rows]
    return result
