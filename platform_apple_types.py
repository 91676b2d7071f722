'''
Type definitions for the App Store Server Notifications V2 payloads once they have been verified
and decoded. Each notification type Apple sends is mapped onto one of a handful of typed variants
so that the dispatcher can route on the variant rather than poking at the raw JSON.
'''

import dataclasses
import typing

from appstoreserverlibrary.models.Environment        import Environment        as AppleEnvironment
from appstoreserverlibrary.models.NotificationTypeV2 import NotificationTypeV2 as AppleNotificationV2

import base
import backend

@dataclasses.dataclass
class TransactionInfo:
    '''
    Subset of the decoded `JWSTransactionDecodedPayload` the pipeline stores. Dates are unix
    milliseconds as Apple sends them.

      https://developer.apple.com/documentation/appstoreserverapi/jwstransactiondecodedpayload
    '''
    transaction_id:                str        = ''
    original_transaction_id:       str        = ''
    product_id:                    str | None = None
    product_type:                  str | None = None  # `type`, e.g. Auto-Renewable Subscription, Consumable
    purchase_date:                 int | None = None
    original_purchase_date:        int | None = None
    expires_date:                  int | None = None
    price_milliunits:              int | None = None  # Price * 1000, e.g. 9990 is 9.99 in `currency`
    currency:                      str | None = None
    quantity:                      int | None = None
    app_account_token:             str | None = None
    in_app_ownership_type:         str | None = None
    revocation_date:               int | None = None
    revocation_reason:             str | None = None

@dataclasses.dataclass
class NotificationBase:
    notification_id:   int                    = 0   # Row in `notifications_raw`
    notification_uuid: str                    = ''
    notification_type: str                    = ''
    subtype:           str | None             = None
    environment:       str                    = AppleEnvironment.PRODUCTION.value
    signed_date:       int | None             = None
    data:              base.JSONObject        = dataclasses.field(default_factory=dict)
    tx_info:           TransactionInfo | None = None

# NOTE: SUBSCRIBED, DID_RENEW, ONE_TIME_CHARGE and OFFER_REDEEMED, a (re)purchase recorded as a
# transaction
@dataclasses.dataclass
class PurchaseNotification(NotificationBase):
    pass

@dataclasses.dataclass
class RefundNotification(NotificationBase):
    pass

@dataclasses.dataclass
class RefundReversedNotification(NotificationBase):
    pass

@dataclasses.dataclass
class ConsumptionRequestNotification(NotificationBase):
    consumption_request_reason: str | None = None
    deadline_unix_ts_ms:        int | None = None  # Answer-by time when Apple supplies one

@dataclasses.dataclass
class RenewalStatusNotification(NotificationBase):
    pass

@dataclasses.dataclass
class ExpiredNotification(NotificationBase):
    pass

# NOTE: Notification types we recognise but only record, e.g. DID_FAIL_TO_RENEW or TEST
@dataclasses.dataclass
class InformationalNotification(NotificationBase):
    pass

# NOTE: Types Apple added after the library we depend on was released
@dataclasses.dataclass
class UnknownNotification(NotificationBase):
    pass

TypedNotification: typing.TypeAlias = (PurchaseNotification           |
                                       RefundNotification             |
                                       RefundReversedNotification     |
                                       ConsumptionRequestNotification |
                                       RenewalStatusNotification      |
                                       ExpiredNotification            |
                                       InformationalNotification      |
                                       UnknownNotification)

PURCHASE_NOTIFICATION_TYPES: frozenset[AppleNotificationV2] = frozenset({
    AppleNotificationV2.SUBSCRIBED,
    AppleNotificationV2.DID_RENEW,
    AppleNotificationV2.ONE_TIME_CHARGE,
    AppleNotificationV2.OFFER_REDEEMED,
})

def normalize_environment(value: str | None) -> str:
    '''Anything that isn't recognisably the sandbox is treated as production'''
    result = AppleEnvironment.PRODUCTION.value
    if value and value.strip().lower() == 'sandbox':
        result = AppleEnvironment.SANDBOX.value
    return result

def apple_notification_type_from_str(value: str) -> AppleNotificationV2 | None:
    result: AppleNotificationV2 | None = None
    try:
        result = AppleNotificationV2(value)
    except ValueError:
        result = None
    return result

def transaction_info_from_json(d: base.JSONObject, err: base.ErrorSink) -> TransactionInfo:
    result                        = TransactionInfo()
    transaction_id                = base.json_dict_optional_str(d, 'transactionId', err)
    original_transaction_id       = base.json_dict_optional_str(d, 'originalTransactionId', err)
    result.transaction_id         = transaction_id or ''

    # NOTE: The first purchase of a lineage is its own original transaction, Apple omits the field
    # on some one-time purchases
    result.original_transaction_id = original_transaction_id or result.transaction_id

    result.product_id             = base.json_dict_optional_str(d, 'productId', err)
    result.product_type           = base.json_dict_optional_str(d, 'type', err)
    result.purchase_date          = base.json_dict_optional_int(d, 'purchaseDate', err)
    result.original_purchase_date = base.json_dict_optional_int(d, 'originalPurchaseDate', err)
    result.expires_date           = base.json_dict_optional_int(d, 'expiresDate', err)
    result.price_milliunits       = base.json_dict_optional_int(d, 'price', err)
    result.currency               = base.json_dict_optional_str(d, 'currency', err)
    result.quantity               = base.json_dict_optional_int(d, 'quantity', err)
    result.app_account_token      = base.json_dict_optional_str(d, 'appAccountToken', err)
    result.in_app_ownership_type  = base.json_dict_optional_str(d, 'inAppOwnershipType', err)
    result.revocation_date        = base.json_dict_optional_int(d, 'revocationDate', err)

    revocation_reason = base.json_dict_optional_int(d, 'revocationReason', err)
    if revocation_reason is not None:
        result.revocation_reason = str(revocation_reason)
    return result

def consumption_request_from_data(data: base.JSONObject, err: base.ErrorSink) -> ConsumptionRequestNotification:
    '''
    `consumptionRequestReason` is normally the bare reason string. Apple may also send it as an
    object carrying the reason and the deadline to answer by, unix milliseconds or an ISO 8601 date.
    '''
    result                         = ConsumptionRequestNotification()
    raw_reason                     = data.get('consumptionRequestReason')
    deadline: base.JSONValue       = data.get('deadline')
    if isinstance(raw_reason, dict):
        reason_dict                       = typing.cast(base.JSONObject, raw_reason)
        result.consumption_request_reason = base.json_dict_optional_str(reason_dict, 'reason', err)
        if reason_dict.get('deadline') is not None:
            deadline = reason_dict.get('deadline')
    else:
        result.consumption_request_reason = base.json_dict_optional_str(data, 'consumptionRequestReason', err)

    if isinstance(deadline, int) and not isinstance(deadline, bool):
        result.deadline_unix_ts_ms = deadline
    elif isinstance(deadline, str) and len(deadline):
        result.deadline_unix_ts_ms = base.unix_ts_ms_from_iso8601(deadline, 'Consumption request deadline', err)
    elif deadline is not None:
        err.msg_list.append(f'Consumption request deadline must be unix milliseconds or an ISO 8601 date: {base.safe_dump_arbitrary_value_or_type(deadline)}')
    return result

def extract_transaction_info_json(row: backend.NotificationRow) -> base.JSONObject | None:
    '''
    Prefer the transaction decoded into the payload by the webhook and fall back to the column the
    history importer fills in
    '''
    result: base.JSONObject | None = None
    data = row.decoded_payload.get('data')
    if isinstance(data, dict):
        signed_tx_info = data.get('signedTransactionInfo')
        if isinstance(signed_tx_info, dict):
            result = typing.cast(base.JSONObject, signed_tx_info)
    if result is None and row.decoded_transaction_info:
        result = row.decoded_transaction_info
    return result

def parse_notification(row: backend.NotificationRow, err: base.ErrorSink) -> TypedNotification:
    '''
    Map a stored notification onto its typed variant. Routing is a pure function of the
    notification type, the payload is not inspected to pick a variant.
    '''
    data: base.JSONObject = {}
    raw_data              = row.decoded_payload.get('data')
    if isinstance(raw_data, dict):
        data = typing.cast(base.JSONObject, raw_data)

    tx_info: TransactionInfo | None = None
    tx_json                         = extract_transaction_info_json(row)
    if tx_json is not None:
        tx_info = transaction_info_from_json(tx_json, err)

    apple_type = apple_notification_type_from_str(row.notification_type)
    result: TypedNotification
    if apple_type is None:
        result = UnknownNotification()
    elif apple_type in PURCHASE_NOTIFICATION_TYPES:
        result = PurchaseNotification()
    else:
        match apple_type:
            case AppleNotificationV2.REFUND:
                result = RefundNotification()
            case AppleNotificationV2.REFUND_REVERSED:
                result = RefundReversedNotification()
            case AppleNotificationV2.CONSUMPTION_REQUEST:
                result = consumption_request_from_data(data, err)
            case AppleNotificationV2.DID_CHANGE_RENEWAL_STATUS:
                result = RenewalStatusNotification()
            case AppleNotificationV2.EXPIRED:
                result = ExpiredNotification()
            case _:
                result = InformationalNotification()

    result.notification_id   = row.id
    result.notification_uuid = row.notification_uuid
    result.notification_type = row.notification_type
    result.subtype           = row.subtype
    result.environment       = normalize_environment(row.environment)
    result.signed_date       = row.signed_date_unix_ts_ms
    result.data              = data
    result.tx_info           = tx_info
    return result
