'''
Answers Apple's CONSUMPTION_REQUEST notifications. When a customer asks Apple for a refund Apple
gives the developer 12 hours to describe how the purchase was used, which Apple then weighs when
deciding the refund.

This file computes that consumption data from the transactions and refunds on record, queues it as
a send job and delivers the jobs to the App Store Server API, retrying on failure.

  https://developer.apple.com/documentation/appstoreserverapi/consumptionrequest
'''

import dataclasses
import logging
import math
import sqlite3
import time

import base
import backend
import platform_apple_api
import platform_apple_types

log = logging.Logger('CONSUMPTION')

# NOTE: Fixed values of the consumption request we can't or don't measure
CUSTOMER_CONSENTED:      bool = True
CONSUMPTION_STATUS:      int  = 0  # Undeclared
PLATFORM:                int  = 1  # Apple platform
SAMPLE_CONTENT_PROVIDED: bool = True
DELIVERY_STATUS:         int  = 0  # Delivered and working properly
ACCOUNT_TENURE:          int  = 0  # Undeclared
PLAY_TIME:               int  = 0  # Undeclared
USER_STATUS:             int  = 0  # Undeclared

# NOTE: Apple only accepts lifetime dollar amounts as one of these ranges, the bucket is the index
# of the first upper bound the amount is below, offset by 2. 0 is reserved for undeclared and 1 for
# exactly zero.
DOLLAR_BUCKET_UPPER_BOUNDS: list[float] = [50.0, 100.0, 500.0, 1000.0, 2000.0]

@dataclasses.dataclass
class Context:
    '''
    What one invocation of the pipeline needs, resolved once by whoever starts the invocation (a
    route or the background thread) and passed down. Handlers never look up configuration
    themselves.
    '''
    sql_conn:   sqlite3.Connection
    api_config: platform_apple_api.Config
    runtime:    backend.RuntimeRow
    clients:    dict[str, platform_apple_api.Client] = dataclasses.field(default_factory=dict)

    def client(self, environment: str | None = None) -> platform_apple_api.Client:
        # NOTE: One client per environment so that its service token is reused across calls
        key = platform_apple_types.normalize_environment(environment or self.api_config.default_environment)
        if key not in self.clients:
            self.clients[key] = platform_apple_api.Client(self.api_config, self.sql_conn, key)
        result = self.clients[key]
        return result

@dataclasses.dataclass
class SendResult:
    job_id:                 int                      = 0
    consumption_request_id: int                      = 0
    status:                 backend.JobStatus | None = None
    response_status_code:   int | None               = None
    sent_unix_ts_ms:        int | None               = None
    error:                  str | None               = None
    skipped:                bool                     = False

    def to_dict(self) -> dict[str, base.JSONValue]:
        result: dict[str, base.JSONValue] = {
            'job_id':                 self.job_id,
            'consumption_request_id': self.consumption_request_id,
            'status':                 self.status.value if self.status else None,
            'response_status_code':   self.response_status_code,
            'sent_at':                base.iso8601_from_unix_ts_ms(self.sent_unix_ts_ms),
            'error':                  self.error,
            'skipped':                self.skipped,
        }
        return result

def bucket_lifetime_dollars(amount: float) -> int:
    '''
    0 undeclared (negative or not a number), 1 zero, 2 under 50, 3 under 100, 4 under 500, 5 under
    1000, 6 under 2000 and 7 for 2000 and over
    '''
    if not math.isfinite(amount) or amount < 0:
        return 0
    if amount == 0:
        return 1
    result = 2 + len(DOLLAR_BUCKET_UPPER_BOUNDS)
    for index, upper_bound in enumerate(DOLLAR_BUCKET_UPPER_BOUNDS):
        if amount < upper_bound:
            result = 2 + index
            break
    return result

def compute_consumption_data_tx(tx:                      base.SQLTransaction,
                                original_transaction_id: str,
                                environment:             str,
                                runtime:                 backend.RuntimeRow) -> base.JSONObject:
    latest_tx: backend.TransactionRow | None = backend.get_latest_transaction_for_original_id_tx(tx, original_transaction_id, environment)

    app_account_token = ''
    purchased_bucket  = 0
    refunded_bucket   = 0
    if latest_tx:
        # NOTE: Lifetime amounts span every lineage the app user has purchased. Without an app
        # account token we can't tell which lineages belong to the same user so both amounts stay
        # undeclared (0).
        if latest_tx.app_account_token:
            app_account_token       = latest_tx.app_account_token
            user_txs                = backend.get_transactions_for_app_account_token_tx(tx, app_account_token, environment)
            purchased               = sum(it.price for it in user_txs if it.price is not None)
            user_original_tx_ids    = sorted(set(it.original_transaction_id for it in user_txs))
            refunded                = backend.sum_refunds_for_original_ids_tx(tx, user_original_tx_ids, environment)
            purchased_bucket        = bucket_lifetime_dollars(purchased)
            refunded_bucket         = bucket_lifetime_dollars(refunded)
        else:
            log.warning(f'{environment} transaction {latest_tx.transaction_id} of {original_transaction_id} has no app account token, lifetime amounts are undeclared')
    else:
        log.warning(f'No {environment} transaction on record for {original_transaction_id}, consumption data is undeclared')

    result: base.JSONObject = {
        'customerConsented':        CUSTOMER_CONSENTED,
        'consumptionStatus':        CONSUMPTION_STATUS,
        'platform':                 PLATFORM,
        'sampleContentProvided':    SAMPLE_CONTENT_PROVIDED,
        'deliveryStatus':           DELIVERY_STATUS,
        'appAccountToken':          app_account_token,
        'accountTenure':            ACCOUNT_TENURE,
        'playTime':                 PLAY_TIME,
        'lifetimeDollarsPurchased': purchased_bucket,
        'lifetimeDollarsRefunded':  refunded_bucket,
        'userStatus':               USER_STATUS,
        'refundPreference':         runtime.refund_preference,
    }
    return result

def send_job(ctx: Context, job_id: int, unix_ts_ms: int) -> SendResult:
    result = SendResult(job_id=job_id)

    # NOTE: Claim the job, if it's no longer pending another invocation got to it first
    request: backend.ConsumptionRequestRow | None = None
    job:     backend.SendConsumptionJobRow | None = None
    with base.SQLTransaction(ctx.sql_conn) as tx:
        job = backend.get_send_consumption_job_tx(tx, job_id)
        if job is None:
            result.error = f'Send consumption job #{job_id} does not exist'
            return result

        result.consumption_request_id = job.consumption_request_id
        if not backend.claim_send_consumption_job_tx(tx, job_id):
            result.status  = job.status
            result.skipped = True
            return result
        request = backend.get_consumption_request_tx(tx, job.consumption_request_id)

    api: platform_apple_api.APIResult | None = None
    if request:
        client = ctx.client(request.environment)
        api    = client.send_consumption_data(original_transaction_id = request.original_transaction_id,
                                              consumption_data        = job.consumption_data,
                                              notes                   = f'Consumption job #{job_id} for request #{request.id}')

    with base.SQLTransaction(ctx.sql_conn) as tx:
        err = base.ErrorSink()
        if api and api.status in (200, 202):
            _                          = backend.mark_send_consumption_job_sent_tx(tx, job_id, api.status, api.body or None, unix_ts_ms)
            result.status              = backend.JobStatus.Sent
            result.sent_unix_ts_ms     = unix_ts_ms
            result.response_status_code = api.status
            _ = backend.update_consumption_request_status_tx(tx, job.consumption_request_id, backend.ConsumptionRequestStatus.Sent, err)
        else:
            if api:
                result.error                = api.error_message or f'HTTP {api.status}'
                result.response_status_code = api.status
            else:
                result.error = f'Consumption request #{job.consumption_request_id} for job #{job_id} does not exist'

            result.status = backend.record_send_consumption_job_failure_tx(tx            = tx,
                                                                           job_id        = job_id,
                                                                           status_code   = result.response_status_code,
                                                                           response_data = (api.body or None) if api else None,
                                                                           error_message = result.error,
                                                                           unix_ts_ms    = unix_ts_ms)
            if result.status == backend.JobStatus.Failed:
                _ = backend.update_consumption_request_status_tx(tx, job.consumption_request_id, backend.ConsumptionRequestStatus.Failed, err)

        if err.has():
            if result.status == backend.JobStatus.Sent:
                log.error(f'Consumption job #{job_id} was delivered but its request could not be marked sent: {err.build()}')
            else:
                log.error(f'Consumption job #{job_id} failed and its request could not be marked failed: {err.build()}')

    if result.status == backend.JobStatus.Sent:
        log.info(f'Consumption job #{job_id} sent (HTTP {result.response_status_code})')
    elif result.status == backend.JobStatus.Failed:
        log.error(f'Consumption job #{job_id} failed permanently: {result.error}')
    else:
        log.warning(f'Consumption job #{job_id} attempt failed, retrying later: {result.error}')
    return result

def send_pending_jobs(ctx: Context, job_id: int | None = None, unix_ts_ms: int | None = None) -> list[SendResult]:
    '''
    Deliver a specific job or otherwise every pending job that is due, oldest first. A job is only
    attempted if it can be claimed so concurrent invocations don't send the same job twice.
    '''
    now = unix_ts_ms if unix_ts_ms is not None else int(time.time() * 1000)
    job_ids: list[int] = []
    if job_id is not None:
        job_ids = [job_id]
    else:
        with base.SQLTransaction(ctx.sql_conn) as tx:
            job_ids = backend.get_due_send_consumption_job_ids_tx(tx, now, backend.SEND_JOB_BATCH_LIMIT)

    result: list[SendResult] = []
    for it in job_ids:
        result.append(send_job(ctx, it, now))
    return result

def create_job_for_request_tx(tx: base.SQLTransaction, request: backend.ConsumptionRequestRow, runtime: backend.RuntimeRow, unix_ts_ms: int) -> int:
    '''Snapshot freshly computed consumption data into a new job'''
    data   = compute_consumption_data_tx(tx, request.original_transaction_id, request.environment, runtime)
    result = backend.create_send_consumption_job_tx(tx, request.id, data, unix_ts_ms)
    log.info(f'Queued consumption job #{result} for request #{request.id} ({request.original_transaction_id})')
    return result

def resend(ctx: Context, job_id: int | None, consumption_request_id: int | None, unix_ts_ms: int, err: base.ErrorSink) -> SendResult | None:
    '''
    Manually re-deliver consumption data. Given a job, that job is reset and sent. Given a request,
    its latest job is reset and sent or a job is created if the request never had one. Either way
    the request goes back to pending until the send completes.
    '''
    if (job_id is None) == (consumption_request_id is None):
        err.msg_list.append('Exactly one of a job ID or a consumption request ID must be given')
        return None

    target_job_id = 0
    with base.SQLTransaction(ctx.sql_conn) as tx:
        if job_id is not None:
            job = backend.get_send_consumption_job_tx(tx, job_id)
            if job is None:
                err.msg_list.append(f'Send consumption job #{job_id} does not exist')
            else:
                consumption_request_id = job.consumption_request_id
                if backend.reset_send_consumption_job_tx(tx, job_id, unix_ts_ms, err):
                    target_job_id = job_id
        else:
            assert consumption_request_id is not None
            request = backend.get_consumption_request_tx(tx, consumption_request_id)
            if request is None:
                err.msg_list.append(f'Consumption request #{consumption_request_id} does not exist')
            else:
                latest_job = backend.get_latest_send_consumption_job_for_request_tx(tx, consumption_request_id)
                if latest_job is None:
                    target_job_id = create_job_for_request_tx(tx, request, ctx.runtime, unix_ts_ms)
                elif backend.reset_send_consumption_job_tx(tx, latest_job.id, unix_ts_ms, err):
                    target_job_id = latest_job.id

        if not err.has():
            assert consumption_request_id is not None
            _ = backend.update_consumption_request_status_tx(tx, consumption_request_id, backend.ConsumptionRequestStatus.Pending, err, manual=True)

        tx.cancel = err.has()

    if err.has():
        return None

    log.info(f'Resending consumption job #{target_job_id} for request #{consumption_request_id}')
    result = send_job(ctx, target_job_id, unix_ts_ms)
    return result
