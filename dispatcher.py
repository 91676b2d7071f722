'''
The dispatcher moves stored notifications through their lifecycle. It reads pending notifications
from the store, routes each to its type handler and records the outcome with a conditional status
update so two invocations racing on the same notification only count it once.

Notifications reach the dispatcher in three ways:

  1. The webhook enqueues the ID of every newly stored notification onto the in-process
     `DispatchQueue` which the background thread drains.
  2. The periodic sweep picks up pending notifications that have been waiting too long (e.g. the
     queue was full or the process restarted) and gives failed notifications another attempt.
  3. Admin routes process batches, single notifications and reprocess consumption requests on
     demand.
'''

import dataclasses
import enum
import logging
import queue
import threading
import traceback

from appstoreserverlibrary.models.NotificationTypeV2 import NotificationTypeV2 as AppleNotificationV2

import base
import backend
import consumption
import platform_apple
import platform_apple_types

log = logging.Logger('DISPATCH')

DISPATCH_QUEUE_MAX_SIZE: int = 1024

class Outcome(enum.Enum):
    Processed = 0
    Failed    = 1
    Skipped   = 2  # Not in a dispatchable state or another invocation moved it first

@dataclasses.dataclass
class ProcessResult:
    notification_id: int        = 0
    outcome:         Outcome    = Outcome.Skipped
    error:           str | None = None

@dataclasses.dataclass
class BatchResult:
    processed: int       = 0
    failed:    int       = 0
    skipped:   int       = 0
    errors:    list[str] = dataclasses.field(default_factory=list)

    def add(self, item: ProcessResult):
        match item.outcome:
            case Outcome.Processed:
                self.processed += 1
            case Outcome.Failed:
                self.failed += 1
                self.errors.append(f'#{item.notification_id}: {item.error}')
            case Outcome.Skipped:
                self.skipped += 1

    def merge(self, other: 'BatchResult'):
        self.processed += other.processed
        self.failed    += other.failed
        self.skipped   += other.skipped
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, base.JSONValue]:
        result: dict[str, base.JSONValue] = {
            'processed': self.processed,
            'failed':    self.failed,
            'skipped':   self.skipped,
            'errors':    list(self.errors),
        }
        return result

@dataclasses.dataclass
class SweepResult:
    stale_pending:    int         = 0
    requeued_failed:  int         = 0
    failed_permanent: int         = 0
    batch:            BatchResult = dataclasses.field(default_factory=BatchResult)

    def to_dict(self) -> dict[str, base.JSONValue]:
        result: dict[str, base.JSONValue] = {
            'stalePending':    self.stale_pending,
            'requeuedFailed':  self.requeued_failed,
            'failedPermanent': self.failed_permanent,
            'batch':           self.batch.to_dict(),
        }
        return result

class DispatchQueue:
    '''
    IDs of notifications the webhook stored and wants processed promptly. The queue is only a hint,
    the pending row in the store is the source of truth so losing the queue loses no work.
    '''
    queue: queue.Queue[int]
    event: threading.Event

    def __init__(self, max_size: int = DISPATCH_QUEUE_MAX_SIZE):
        self.queue = queue.Queue(maxsize=max_size)
        self.event = threading.Event()

    def enqueue(self, notification_id: int) -> bool:
        result = True
        try:
            self.queue.put_nowait(notification_id)
            self.event.set()
        except queue.Full:
            result = False
        return result

    def drain(self, limit: int = backend.DISPATCH_BATCH_LIMIT) -> list[int]:
        result: list[int] = []
        while len(result) < limit:
            try:
                result.append(self.queue.get_nowait())
            except queue.Empty:
                break
        if self.queue.empty():
            self.event.clear()
        return result

def process_notification(ctx: consumption.Context, notification_id: int, unix_ts_ms: int, include_failed: bool = False) -> ProcessResult:
    result = ProcessResult(notification_id=notification_id)

    with base.SQLTransaction(ctx.sql_conn) as tx:
        row = backend.get_notification_tx(tx, notification_id)
        if row is None:
            result.error = f'Notification #{notification_id} does not exist'
            return result

        # NOTE: Failed notifications have to pass back through pending, they are never marked
        # processed directly
        if row.status == backend.NotificationStatus.Failed and include_failed:
            if backend.update_notification_status_tx(tx, notification_id, row.status, backend.NotificationStatus.Pending, unix_ts_ms, None, base.ErrorSink()):
                row.status = backend.NotificationStatus.Pending

    if row.status != backend.NotificationStatus.Pending:
        return result

    err = base.ErrorSink()
    try:
        notification = platform_apple_types.parse_notification(row, err)
        if not err.has():
            platform_apple.handle_notification(ctx, notification, unix_ts_ms, err)
    except Exception:
        # NOTE: A handler crashing must not take the rest of the batch down with it, the failure
        # is recorded on the notification and the sweep retries it
        err.msg_list.append(f'Unhandled exception while processing {row.notification_type}: {traceback.format_exc()}')

    target = backend.NotificationStatus.Failed if err.has() else backend.NotificationStatus.Processed
    with base.SQLTransaction(ctx.sql_conn) as tx:
        moved = backend.update_notification_status_tx(tx              = tx,
                                                      notification_id = notification_id,
                                                      current         = backend.NotificationStatus.Pending,
                                                      target          = target,
                                                      unix_ts_ms      = unix_ts_ms,
                                                      error_message   = err.build() if err.has() else None,
                                                      err             = base.ErrorSink())

    if not moved:
        log.info(f'Notification #{notification_id} was already moved out of pending by another invocation')
        return result

    if target == backend.NotificationStatus.Processed:
        result.outcome = Outcome.Processed
        log.info(f'Processed {row.notification_type} notification #{notification_id} ({row.notification_uuid})')
    else:
        result.outcome = Outcome.Failed
        result.error   = err.build()
        log.error(f'Failed to process {row.notification_type} notification #{notification_id} ({row.notification_uuid}): {result.error}')
    return result

def process_notification_ids(ctx: consumption.Context, notification_ids: list[int], unix_ts_ms: int) -> BatchResult:
    result = BatchResult()
    for notification_id in notification_ids:
        result.add(process_notification(ctx, notification_id, unix_ts_ms))
    return result

def process_batch(ctx:               consumption.Context,
                  unix_ts_ms:        int,
                  limit:             int | None                        = None,
                  notification_type: str | None                        = None,
                  source:            backend.NotificationSource | None = None,
                  include_failed:    bool                              = False) -> BatchResult:
    '''
    Process the oldest dispatchable notifications one after the other. Failed notifications are
    only picked up when explicitly asked for, the sweep is what normally decides when they are
    retried.
    '''
    statuses = [backend.NotificationStatus.Pending]
    if include_failed:
        statuses.append(backend.NotificationStatus.Failed)

    with base.SQLTransaction(ctx.sql_conn) as tx:
        rows = backend.get_notifications_for_dispatch_tx(tx, statuses, notification_type, source, limit)

    result = BatchResult()
    for row in rows:
        result.add(process_notification(ctx, row.id, unix_ts_ms, include_failed=include_failed))

    if len(rows):
        log.info(f'Batch of {len(rows)} notification(s): {result.processed} processed, {result.failed} failed, {result.skipped} skipped')
    return result

def process_queued_notifications(ctx: consumption.Context, dispatch_queue: DispatchQueue, unix_ts_ms: int) -> BatchResult:
    notification_ids = dispatch_queue.drain()
    result           = process_notification_ids(ctx, notification_ids, unix_ts_ms)
    return result

def retry_notification(ctx: consumption.Context, notification_id: int, unix_ts_ms: int, err: base.ErrorSink) -> ProcessResult | None:
    '''
    Manually retry a failed or permanently failed notification. Processed notifications are
    rejected, consumption requests that need answering again go through
    `reprocess_notification`.
    '''
    with base.SQLTransaction(ctx.sql_conn) as tx:
        row = backend.get_notification_tx(tx, notification_id)
        if row is None:
            err.msg_list.append(f'Notification #{notification_id} does not exist')
            return None

        match row.status:
            case backend.NotificationStatus.Processed:
                err.msg_list.append(f'Notification #{notification_id} was already processed, reprocess it instead')
            case backend.NotificationStatus.Failed | backend.NotificationStatus.FailedPermanent:
                if not backend.update_notification_status_tx(tx, notification_id, row.status, backend.NotificationStatus.Pending, unix_ts_ms, None, err, manual=True):
                    err.msg_list.append(f'Notification #{notification_id} changed state while being reset, try again')
            case backend.NotificationStatus.Pending:
                pass

    if err.has():
        return None

    log.info(f'Retrying notification #{notification_id} (was {row.status.value})')
    result = process_notification(ctx, notification_id, unix_ts_ms)
    return result

def reprocess_notification(ctx: consumption.Context, notification_uuid: str, unix_ts_ms: int, err: base.ErrorSink) -> dict[str, base.JSONValue] | None:
    '''
    Answer a consumption request again with freshly computed data, e.g. after transactions that
    were missing the first time have since arrived. A new job is always created, the earlier ones
    are kept for the audit trail.
    '''
    job_id                  = 0
    original_transaction_id = ''
    with base.SQLTransaction(ctx.sql_conn) as tx:
        row     = backend.get_notification_by_uuid_tx(tx, notification_uuid)
        request = None
        if row and platform_apple_types.apple_notification_type_from_str(row.notification_type) == AppleNotificationV2.CONSUMPTION_REQUEST:
            request = backend.get_consumption_request_for_notification_tx(tx, row.id)

        if row is None or request is None:
            err.msg_list.append('This notification is not a CONSUMPTION_REQUEST or was not found')
            return None

        original_transaction_id = request.original_transaction_id
        if not original_transaction_id:
            info = platform_apple_types.extract_transaction_info_json(row)
            if info:
                original_transaction_id = platform_apple_types.transaction_info_from_json(info, base.ErrorSink()).original_transaction_id
            request.original_transaction_id = original_transaction_id

        job_id = consumption.create_job_for_request_tx(tx, request, ctx.runtime, unix_ts_ms)
        _      = backend.update_consumption_request_status_tx(tx, request.id, backend.ConsumptionRequestStatus.Pending, err, manual=True)
        tx.cancel = err.has()

    if err.has():
        return None

    send: consumption.SendResult = consumption.send_job(ctx, job_id, unix_ts_ms)
    result: dict[str, base.JSONValue] = {
        'notification_uuid':       notification_uuid,
        'original_transaction_id': original_transaction_id,
        'job_id':                  job_id,
        'job_status':              send.status.value if send.status else None,
        'response_code':           send.response_status_code,
        'sent_at':                 base.iso8601_from_unix_ts_ms(send.sent_unix_ts_ms),
    }
    return result

def run_notification_sweep(ctx: consumption.Context, unix_ts_ms: int) -> SweepResult:
    '''
    Periodic recovery of notifications the dispatcher didn't finish:

      1. Pending notifications received more than 5 minutes ago are dispatched again.
      2. Failed notifications under the retry ceiling whose last retry was over 30 minutes ago go
         back to pending with their retry count bumped and are dispatched.
      3. Failed notifications that have used up their retries become permanently failed.
    '''
    result = SweepResult()
    with base.SQLTransaction(ctx.sql_conn) as tx:
        stale_ids  = backend.get_stale_pending_notification_ids_tx(tx,
                                                                   received_before_unix_ts_ms = unix_ts_ms - backend.STALE_PENDING_NOTIFICATION_MS,
                                                                   limit                      = backend.SWEEP_STALE_PENDING_LIMIT)
        failed_ids = backend.get_retry_eligible_failed_notification_ids_tx(tx,
                                                                           last_retry_before_unix_ts_ms = unix_ts_ms - backend.FAILED_NOTIFICATION_RETRY_INTERVAL_MS,
                                                                           limit                        = backend.SWEEP_RETRY_FAILED_LIMIT)
        requeued_ids = [it for it in failed_ids if backend.requeue_failed_notification_tx(tx, it, unix_ts_ms)]

    result.stale_pending   = len(stale_ids)
    result.requeued_failed = len(requeued_ids)
    result.batch           = process_notification_ids(ctx, stale_ids + requeued_ids, unix_ts_ms)

    with base.SQLTransaction(ctx.sql_conn) as tx:
        result.failed_permanent = backend.mark_exhausted_notifications_failed_permanent_tx(tx)
        backend.set_last_sweep_unix_ts_ms_tx(tx, unix_ts_ms)

    if result.stale_pending or result.requeued_failed or result.failed_permanent:
        log.info(f'Sweep dispatched {result.stale_pending} stale and {result.requeued_failed} retried notification(s), {result.failed_permanent} became permanently failed')
    if result.failed_permanent:
        log.warning(f'{result.failed_permanent} notification(s) exhausted their {backend.MAX_NOTIFICATION_RETRIES} retries and need manual attention')
    return result
