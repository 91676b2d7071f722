'''
The base layer contains common utilities that is useful to other files in the project and should
have no dependency on any project files, only, native Python packages and the handful of third
party libraries the project already depends on. Typically useful to share functionality from the
testing suite and the project but not limited to.
'''
import json
import traceback
import sqlite3
import datetime
import typing
import enum
import dataclasses
import logging
import math
import typing_extensions
import os
import sys
import time
import urllib3
import queue
import threading

# NOTE: Constants
MILLISECONDS_IN_MINUTE: int = 60 * 1000
MILLISECONDS_IN_HOUR:   int = 60 * 60 * 1000
MILLISECONDS_IN_DAY:    int = 60 * 60 * 24 * 1000

# NOTE: Global variables
UNSAFE_LOGGING         = False

# NOTE: Restricted type-set, JSON obviously supports much more than this, but
# our use-case only needs a small subset of it as of current so KISS.
JSONPrimitive: typing.TypeAlias = str | int | float | bool | None
JSONValue:     typing.TypeAlias = JSONPrimitive | dict[str, 'JSONValue'] | list['JSONValue']
JSONObject:    typing.TypeAlias = dict[str, JSONValue]
JSONArray:     typing.TypeAlias = list[JSONValue]

class LogFormatter(logging.Formatter):
    @typing_extensions.override
    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None):
        dt     = datetime.datetime.fromtimestamp(record.created)
        result = dt.strftime('%y-%m-%d %H:%M:%S.%f')[:-3]
        return result

@dataclasses.dataclass
class ErrorSink:
    '''
    Helper class to pass to functions that want to return error messages without unwinding the stack
    by using throwing exceptions.

    The typical pattern in that this construct is used is calling a sequence of functions that can
    error but have no dependency on each other. Errors are accumulated into the sink and checked at
    the end where it reports the error from the sink and returns a failure if there is one.

    See the parsing code in server.py for an example of where this is useful.
    '''
    msg_list: list[str] = dataclasses.field(default_factory=list)

    def has(self) -> bool:
        result = len(self.msg_list) > 0
        return result

    def build(self) -> str:
        result = '\n  '.join(self.msg_list)
        return result

class SQLTransactionMode(enum.IntEnum):
    Default   = 0 # Acquires requisite r/w DB lock on first query
    Immediate = 1 # Acquires write lock and allows concurrent reads
    Exclusive = 2 # Acquires lock and blocks concurrent reads (and by definition, writes)

@dataclasses.dataclass
class SQLTransaction:
    conn:   sqlite3.Connection
    cursor: sqlite3.Cursor | None = None
    cancel: bool                  = False
    mode:   SQLTransactionMode    = SQLTransactionMode.Default
    def __init__(self, conn: sqlite3.Connection, mode: SQLTransactionMode = SQLTransactionMode.Default):
        self.conn = conn
        self.mode = mode

    def __enter__(self):
        mode_label = ''
        match self.mode:
            case SQLTransactionMode.Default:
                mode_label = 'DEFERRED '
            case SQLTransactionMode.Immediate:
                mode_label = 'IMMEDIATE '
            case SQLTransactionMode.Exclusive:
                mode_label = 'EXCLUSIVE '
        self.cursor = self.conn.execute(f'BEGIN {mode_label} TRANSACTION')
        return self

    def __exit__(self,
                 exc_type: object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        if self.cursor:
            self.cursor.close()
        if exc_type is not None or self.cancel:
            self.conn.rollback()
        else:
            self.conn.commit()
        return False

class AsyncWebhookLogHandler(logging.Handler):
    '''
    Forwards WARNING and above log records to a chat webhook (e.g. a Mattermost/Slack compatible
    incoming webhook) from a background thread so that logging never blocks the request path.
    '''
    webhook_url:    str
    display_name:   str
    timeout:        int
    flush_interval: float
    queue:          queue.Queue
    _thread:        threading.Thread
    _stop_event:    threading.Event
    http:           urllib3.PoolManager

    def __init__(self, webhook_url: str, display_name: str, timeout: int = 5, queue_size: int = 100, flush_interval: float = 1.0):
        super().__init__()
        self.webhook_url  = webhook_url
        self.display_name = display_name
        self.timeout      = timeout

        # Queue for log records
        self.queue          = queue.Queue(maxsize=queue_size)
        self.flush_interval = flush_interval

        # Background thread
        self._thread     = threading.Thread(target=self._worker, daemon=True)
        self._stop_event = threading.Event()
        self._thread.start()

        # HTTP pool (thread-safe)
        self.http = urllib3.PoolManager(
            timeout=urllib3.Timeout(connect=timeout, read=timeout),
            maxsize=10,
            retries=urllib3.Retry(total=1, backoff_factor=0.1)
        )

    @typing_extensions.override
    def emit(self, record: logging.LogRecord):
        if record.levelno < logging.WARNING:
            return
        try:
            log_entry = self.format(record)[:2000]
            payload = { "text": "```\n" + log_entry + "\n```", "display_name": self.display_name }
            self.queue.put_nowait(payload)
        except queue.Full:
            print(f"[AsyncWebhook] Queue full, dropped record from {record.name}", file=sys.stderr)
        except Exception:
            self.handleError(record)

    def emit_text(self, text: str):
        text    = text[:2000]
        payload = { "text": "```\n" + text + "\n```", "display_name": self.display_name }
        try:
            self.queue.put_nowait(payload)
        except queue.Full:
            print(f"[AsyncWebhook] Queue full, dropped text: {text[:64]}", file=sys.stderr)

    def _worker(self):
        while not self._stop_event.is_set():
            try:
                # Collect all pending logs
                payloads = []
                while len(payloads) < 10:  # Batch up to 10
                    try:
                        payloads.append(self.queue.get_nowait())
                    except queue.Empty:
                        break

                for payload in payloads:
                    try:
                        self.http.request(method  = 'POST',
                                          url     = self.webhook_url,
                                          body    = json.dumps(payload).encode('utf-8'),
                                          headers = {'Content-Type': 'application/json'})
                    except Exception as e:
                        print(f"[AsyncWebhook] Send failed: {e}", file=sys.stderr)
                    finally:
                        self.queue.task_done()

                # Wait before next batch
                self._stop_event.wait(self.flush_interval)
            except Exception as e:
                print(f"[AsyncWebhook] Worker error: {e}", file=sys.stderr)
                time.sleep(1)

    @typing_extensions.override
    def close(self):
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=2)
        super().close()

def readable_unix_ts_ms(unix_ts_ms: int) -> str:
    date_str = datetime.datetime.fromtimestamp(unix_ts_ms/1000.0, tz=datetime.timezone.utc).strftime('%y-%m-%d %H:%M:%S.%f')[:-3]
    result   = f'{unix_ts_ms} ({date_str})'
    return result

def iso8601_from_unix_ts_ms(unix_ts_ms: int | None) -> str | None:
    result = None
    if unix_ts_ms is not None:
        dt     = datetime.datetime.fromtimestamp(unix_ts_ms / 1000.0, tz=datetime.timezone.utc)
        result = dt.isoformat(timespec='milliseconds').replace('+00:00', 'Z')
    return result

def unix_ts_ms_from_iso8601(value: str, label: str, err: ErrorSink) -> int:
    '''
    Parse an ISO 8601 date (YYYY-MM-DD) or datetime string into a UTC unix timestamp in
    milliseconds. Naive datetimes are treated as UTC.
    '''
    result = 0
    try:
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        dt = datetime.datetime.fromisoformat(text)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=datetime.timezone.utc)
        result = int(dt.timestamp() * 1000)
    except ValueError as e:
        err.msg_list.append(f'{label} "{value}" is not a valid ISO 8601 date: {e}')
    return result

def round_unix_ts_ms_to_start_of_day(unix_ts_ms: int) -> int:
    result: int = unix_ts_ms // MILLISECONDS_IN_DAY * MILLISECONDS_IN_DAY
    return result

def round_unix_ts_ms_to_end_of_day(unix_ts_ms: int) -> int:
    '''Returns the last millisecond (23:59:59.999 UTC) of the day the timestamp falls on'''
    result: int = round_unix_ts_ms_to_start_of_day(unix_ts_ms) + MILLISECONDS_IN_DAY - 1
    return result

def format_seconds(duration_s: float) -> str:
    hours = int(duration_s // 3600)
    minutes = int((duration_s % 3600) // 60)
    seconds = duration_s % 60
    result = ''
    if hours > 0:
        result += f"{hours}h"
    if minutes > 0:
        result += f"{' ' if result else ''}{minutes}m"
    # For seconds: show decimals only if there's a fractional part
    if seconds >= 1 or result == '':  # Always show seconds if no higher units
        if seconds == int(seconds):
            sec_str = str(int(seconds))
        else:
            # Show up to 3 decimal places, strip trailing zeros
            sec_str = f"{seconds:.3f}".rstrip('0').rstrip('.')
        result += f"{' ' if result else ''}{sec_str}s"
    return result if result else '0s'

def obfuscate(val: str) -> str:
    """
    Obfuscate a string by masking the contents preserving the prefix and suffix. If the string is
    less than 3 characters, the original string is retuned.
    """
    if len(val) < 3:
        return val
    n_ends = max(math.floor(len(val) * 0.1), 1)
    n_ends = min(n_ends, 8)
    return f"{val[:n_ends]}…{val[-n_ends:]}"

def _extract_keys_format_value(value):
    """
    Internal helper function to format dictionary values,
    it's better to define this outside the function.
    """
    if isinstance(value, dict):
        # Get all keys from the dictionary
        keys = []
        for k, v in value.items():
            if isinstance(v, dict):
                # If the value is a dict, recursively format it
                keys.append(f"{k}: {_extract_keys_format_value(v)}")
            else:
                keys.append(k)
        return "{" + ', '.join(keys) + "}"
    else:
        return str(value)

def extract_keys_recursive(d: dict[str, typing.Any]) -> str:
    """
    Recursively extract keys from a nested dictionary and format them.

    Args:
        d: Dictionary to extract keys from

    Returns:
        String representation of keys in the format:
        "{key1, key2: {subkey1, subkey2}, key3: {subkey: {subsubkey}}}"
    """
    result = []
    for key, value in d.items():
        if isinstance(value, dict):
            result.append(f"{key}: {_extract_keys_format_value(value)}")
        else:
            result.append(key)
    return ', '.join(result)

def safe_dump_dict_keys_or_data(d: dict[str, typing.Any] | None) -> str:
    """Dump the dict or just the keys if UNSAFE_LOGGING is set"""
    if d is None:
        return "None"
    if UNSAFE_LOGGING:
        return json.dumps(d)
    return "dictionary w/ keys: {" + extract_keys_recursive(d) + "}"

def safe_dump_arbitrary_value_or_type(v: typing.Any) -> str:  # pyright: ignore[reportAny]
    """Dump the value or just its type if UNSAFE_LOGGING is set"""
    result = f'({type(v)}) {v}' if UNSAFE_LOGGING else f'{type(v)}'
    return result

def safe_get_dict_value_type(d: dict[str, typing.Any], key: str) -> str:
    v = d.get(key)
    return safe_dump_arbitrary_value_or_type(v)

def json_dict_require_str(d: JSONObject, key: str, err: ErrorSink) -> str:
    result = ''
    if key in d:
        if isinstance(d[key], str):
            result = typing.cast(str, d[key])
        else:
            err.msg_list.append(f'Key "{key}" value was not a string: "{safe_get_dict_value_type(d, key)}"')
    else:
        err.msg_list.append(f'Required key "{key}" is missing from JSON: {safe_dump_dict_keys_or_data(d)}')
    return result

def json_dict_optional_bool(d: JSONObject, key: str, default: bool, err: ErrorSink) -> bool:
    result = default
    if key in d and d[key] is not None:
        if isinstance(d[key], bool):
            result = typing.cast(bool, d[key])
        else:
            err.msg_list.append(f'Key "{key}" value was not a bool: "{safe_get_dict_value_type(d, key)}"')
    return result

def json_dict_optional_str(d: JSONObject, key: str, err: ErrorSink) -> str | None:
    result = None
    if key in d and d[key] is not None:
        if isinstance(d[key], str):
            result = typing.cast(str, d[key])
        else:
            err.msg_list.append(f'Key "{key}" value was not a string: "{safe_get_dict_value_type(d, key)}"')
    return result

def json_dict_optional_int(d: JSONObject, key: str, err: ErrorSink) -> int | None:
    result = None
    if key in d and d[key] is not None:
        # NOTE: bool is a subclass of int in Python, reject it explicitly
        if isinstance(d[key], int) and not isinstance(d[key], bool):
            result = typing.cast(int, d[key])
        else:
            err.msg_list.append(f'Key "{key}" value was not an integer: "{safe_get_dict_value_type(d, key)}"')
    return result

def os_get_boolean_env(var_name: str, default: bool = False):
    value = os.getenv(var_name, str(int(default)))  # Default to 0 or 1
    if value == '1':
        return True
    elif value == '0':
        return False
    else:
        raise ValueError(f"Invalid value for environment variable '{var_name}': {value}. Allowed values are 0 or 1.")
