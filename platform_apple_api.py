'''
Thin client over the App Store Server API. Every outbound call is recorded in the `apple_api_logs`
table: the row is inserted before the request goes out and filled in with the response once it
comes back, so a hung or crashed call still leaves a trace of what was attempted.

The module level `http_request` and `sleep_s` functions are the only places that touch the network
and the clock's sleep so that the test suite can monkeypatch them.

  https://developer.apple.com/documentation/appstoreserverapi
'''

import dataclasses
import json
import logging
import sqlite3
import time
import typing
import urllib.parse

import jwt
import urllib3

from appstoreserverlibrary.api_client  import APIError           as AppleAPIError
from appstoreserverlibrary.models.Environment import Environment as AppleEnvironment

import base
import backend
import platform_apple_types

log = logging.Logger('APPLE_API')

PRODUCTION_BASE_URL:                    str   = 'https://api.storekit.itunes.apple.com/inApps/v1'
SANDBOX_BASE_URL:                       str   = 'https://api.storekit-sandbox.itunes.apple.com/inApps/v1'
TOKEN_AUDIENCE:                         str   = 'appstoreconnect-v1'
TOKEN_LIFETIME_S:                       int   = 60 * 60  # Apple rejects tokens valid for longer than an hour
TOKEN_REFRESH_MARGIN_S:                 int   = 60
REQUEST_TIMEOUT_S:                      float = 30.0
HISTORY_MAX_PAGES:                      int   = 100
HISTORY_PAGE_DELAY_S:                   float = 0.1
TEST_NOTIFICATION_STATUS_MAX_RETRIES:   int   = 3
TEST_NOTIFICATION_STATUS_RETRY_DELAY_S: float = 2.0

@dataclasses.dataclass
class Config:
    '''
    Credentials for the App Store Server API, created from the in-app purchase key generated in App
    Store Connect (Users and Access > Integrations > In-App Purchase)
    '''
    key_id:              str   = ''
    issuer_id:           str   = ''
    bundle_id:           str   = ''
    private_key:         bytes = b''  # Contents of the .p8 file
    default_environment: str   = AppleEnvironment.PRODUCTION.value

    def is_configured(self) -> bool:
        result = len(self.key_id) > 0 and len(self.issuer_id) > 0 and len(self.bundle_id) > 0 and len(self.private_key) > 0
        return result

@dataclasses.dataclass
class HTTPResponse:
    status:  int            = 0
    headers: dict[str, str] = dataclasses.field(default_factory=dict)
    body:    str            = ''

@dataclasses.dataclass
class APIResult:
    success:       bool                   = False
    status:        int | None             = None  # None if the request never produced a response
    data:          base.JSONObject | None = None  # Response body if it was a JSON object
    body:          str                    = ''
    error_code:    int | None             = None  # Apple's `errorCode`
    error_message: str | None             = None
    log_id:        int                    = 0

@dataclasses.dataclass
class NotificationHistoryResult:
    items:         list[base.JSONObject] = dataclasses.field(default_factory=list)
    pages:         int                   = 0
    has_more:      bool                  = False
    error_code:    int | None            = None
    error_message: str | None            = None

def http_request(pool: urllib3.PoolManager, method: str, url: str, headers: dict[str, str], body: bytes | None, timeout_s: float) -> HTTPResponse:
    response = pool.request(method   = method,
                            url      = url,
                            body     = body,
                            headers  = headers,
                            timeout  = urllib3.Timeout(total=timeout_s),
                            retries  = False,
                            redirect = False)
    result = HTTPResponse(status  = response.status,
                          headers = dict(response.headers),
                          body    = response.data.decode('utf-8', errors='replace'))
    return result

def sleep_s(seconds: float):
    time.sleep(seconds)

def base_url_for_environment(environment: str) -> str:
    result = SANDBOX_BASE_URL if platform_apple_types.normalize_environment(environment) == AppleEnvironment.SANDBOX.value else PRODUCTION_BASE_URL
    return result

def mint_service_token(config: Config, unix_ts_s: int) -> str:
    '''
    Generate the bearer token that authorises calls to the App Store Server API

      https://developer.apple.com/documentation/appstoreserverapi/generating-json-web-tokens-for-api-requests
    '''
    payload = {
        'iss': config.issuer_id,
        'iat': unix_ts_s,
        'exp': unix_ts_s + TOKEN_LIFETIME_S,
        'aud': TOKEN_AUDIENCE,
        'bid': config.bundle_id,
    }
    result = jwt.encode(payload, config.private_key, algorithm='ES256', headers={'kid': config.key_id, 'typ': 'JWT'})
    return result

def api_log_body_from_response(body: str) -> str | None:
    '''JSON bodies are logged in full, anything else is clipped'''
    result: str | None = None
    if body:
        try:
            result = json.dumps(json.loads(body))
        except ValueError:
            result = body[:backend.API_LOG_BODY_MAX_CHARS]
    return result

class Client:
    config:                  Config
    environment:             str
    sql_conn:                sqlite3.Connection
    pool:                    urllib3.PoolManager
    token:                   str
    token_expiry_unix_ts_s:  int

    def __init__(self, config: Config, sql_conn: sqlite3.Connection, environment: str | None = None):
        self.config                 = config
        self.environment            = platform_apple_types.normalize_environment(environment or config.default_environment)
        self.sql_conn               = sql_conn
        self.pool                   = urllib3.PoolManager()
        self.token                  = ''
        self.token_expiry_unix_ts_s = 0

    def base_url(self) -> str:
        result = base_url_for_environment(self.environment)
        return result

    def service_token(self) -> str:
        # NOTE: Reuse the token until shortly before it expires
        now = int(time.time())
        if not self.token or now >= self.token_expiry_unix_ts_s - TOKEN_REFRESH_MARGIN_S:
            self.token                  = mint_service_token(self.config, now)
            self.token_expiry_unix_ts_s = now + TOKEN_LIFETIME_S
        return self.token

    def request(self, method: str, path: str, body: base.JSONObject | None, notes: str | None = None) -> APIResult:
        result = APIResult()
        if not self.config.is_configured():
            result.error_message = 'App Store Server API credentials are not configured'
            log.error(f'{method} {path} not sent: {result.error_message}')
            return result

        try:
            token = self.service_token()
        except Exception as e:
            result.error_message = f'Failed to mint App Store Server API token: {e}'
            log.error(result.error_message)
            return result

        url                         = f'{self.base_url()}{path}'
        headers: dict[str, str]     = {'Authorization': f'Bearer {token}', 'Content-Type': 'application/json'}
        logged_headers              = dict(headers, Authorization=f'Bearer {base.obfuscate(token)}')
        body_str: str | None        = json.dumps(body) if body is not None else None

        with base.SQLTransaction(self.sql_conn) as tx:
            result.log_id = backend.insert_apple_api_log_tx(tx              = tx,
                                                            endpoint        = url,
                                                            method          = method,
                                                            request_headers = json.dumps(logged_headers),
                                                            request_body    = body_str,
                                                            environment     = self.environment,
                                                            notes           = notes,
                                                            unix_ts_ms      = int(time.time() * 1000))

        start_s                           = time.perf_counter()
        response: HTTPResponse | None     = None
        try:
            response = http_request(pool      = self.pool,
                                    method    = method,
                                    url       = url,
                                    headers   = headers,
                                    body      = body_str.encode('utf-8') if body_str is not None else None,
                                    timeout_s = REQUEST_TIMEOUT_S)
        except urllib3.exceptions.HTTPError as e:
            result.error_message = f'Request failed: {e}'
        duration_ms = int((time.perf_counter() - start_s) * 1000)

        if response:
            result.status  = response.status
            result.body    = response.body
            result.success = 200 <= response.status < 300
            if response.body:
                try:
                    parsed = json.loads(response.body)
                    if isinstance(parsed, dict):
                        result.data = typing.cast(base.JSONObject, parsed)
                except ValueError:
                    result.data = None

            if not result.success:
                if result.data:
                    error_code          = result.data.get('errorCode')
                    error_message       = result.data.get('errorMessage')
                    result.error_code    = error_code    if isinstance(error_code, int)    else None
                    result.error_message = error_message if isinstance(error_message, str) else None
                if result.error_message is None:
                    result.error_message = f'HTTP {response.status}'

        with base.SQLTransaction(self.sql_conn) as tx:
            _ = backend.update_apple_api_log_response_tx(tx               = tx,
                                                         log_id           = result.log_id,
                                                         response_status  = response.status if response else None,
                                                         response_headers = json.dumps(response.headers) if response else None,
                                                         response_body    = api_log_body_from_response(response.body) if response else result.error_message,
                                                         duration_ms      = duration_ms)

        if result.success:
            log.info(f'{method} {path} ({self.environment}) -> {result.status} in {duration_ms}ms')
        else:
            log.warning(f'{method} {path} ({self.environment}) failed in {duration_ms}ms: {result.error_message} (status={result.status}, code={result.error_code})')
        return result

    def get_notification_history(self, start_unix_ts_ms: int, end_unix_ts_ms: int, notification_type: str | None) -> NotificationHistoryResult:
        '''
        Page through the notification history. A failed page ends the paging, the notifications
        collected from the earlier pages are still returned.

          https://developer.apple.com/documentation/appstoreserverapi/get-notification-history
        '''
        result                  = NotificationHistoryResult()
        pagination_token: str | None = None
        body: base.JSONObject   = {'startDate': start_unix_ts_ms, 'endDate': end_unix_ts_ms}
        if notification_type:
            body['notificationType'] = notification_type

        while result.pages < HISTORY_MAX_PAGES:
            path = '/notifications/history'
            if pagination_token:
                path += f'?paginationToken={urllib.parse.quote(pagination_token)}'

            page          = self.request('POST', path, body, notes=f'Notification history page {result.pages + 1}')
            result.pages += 1
            if not page.success or page.data is None:
                result.error_code    = page.error_code
                result.error_message = page.error_message or 'Notification history response was not a JSON object'
                log.error(f'Notification history stopped at page {result.pages}: {result.error_message}')
                break

            history = page.data.get('notificationHistory')
            if isinstance(history, list):
                result.items.extend([typing.cast(base.JSONObject, it) for it in history if isinstance(it, dict)])

            has_more         = page.data.get('hasMore')
            next_token       = page.data.get('paginationToken')
            result.has_more  = has_more is True
            pagination_token = next_token if isinstance(next_token, str) and next_token else None
            if not result.has_more or pagination_token is None:
                break
            sleep_s(HISTORY_PAGE_DELAY_S)

        if result.pages >= HISTORY_MAX_PAGES and result.has_more:
            log.warning(f'Notification history reached the {HISTORY_MAX_PAGES} page limit, later notifications were not fetched')
        return result

    def lookup_refund_history(self, transaction_id: str) -> APIResult:
        result = self.request('GET', f'/refund/lookup/{urllib.parse.quote(transaction_id)}', None, notes='Refund history')
        return result

    def get_transaction_history(self, transaction_id: str) -> APIResult:
        result = self.request('GET', f'/history/{urllib.parse.quote(transaction_id)}', None, notes='Transaction history')
        return result

    def send_consumption_data(self, original_transaction_id: str, consumption_data: base.JSONObject, notes: str | None = None) -> APIResult:
        '''https://developer.apple.com/documentation/appstoreserverapi/send-consumption-information'''
        result = self.request('PUT', f'/transactions/consumption/{urllib.parse.quote(original_transaction_id)}', consumption_data, notes=notes)
        return result

    def request_test_notification(self) -> APIResult:
        result = self.request('POST', '/notifications/test', None, notes='Request test notification')
        return result

    def get_test_notification_status(self, test_notification_token: str) -> APIResult:
        '''
        Apple takes a moment to attempt delivery of a test notification, until then the status
        lookup answers with TEST_NOTIFICATION_NOT_FOUND which is the only error worth waiting out
        '''
        attempt = 0
        while True:
            result = self.request('GET', f'/notifications/test/{urllib.parse.quote(test_notification_token)}', None, notes=f'Test notification status, attempt {attempt + 1}')
            if result.success or result.error_code != AppleAPIError.TEST_NOTIFICATION_NOT_FOUND.value or attempt >= TEST_NOTIFICATION_STATUS_MAX_RETRIES:
                break
            attempt += 1
            log.info(f'Test notification {base.obfuscate(test_notification_token)} not found yet, retrying in {TEST_NOTIFICATION_STATUS_RETRY_DELAY_S}s')
            sleep_s(TEST_NOTIFICATION_STATUS_RETRY_DELAY_S)
        return result
