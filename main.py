'''
Entry point of the App Store notification backend. Parses the configuration, opens (and if needed
creates) the DB, equips the Flask application with the Apple webhook and the admin routes and
launches the background thread that drives the notification dispatcher.

The configuration is read from the .INI file at $STOREKIT_BACKEND_INI_PATH if set, environment
variables prefixed with STOREKIT_BACKEND_ override the values from the .INI file, e.g.:

  [base]
  db_path          = storekit-backend.db
  log_path         = storekit-backend.log
  sweep_interval_s = 60

  [apple]
  key_id              = ABCDEF1234
  issuer_id           = 00000000-0000-0000-0000-000000000000
  bundle_id           = com.example.app
  key_path            = SubscriptionKey_ABCDEF1234.p8
  root_cert_paths     = AppleRootCA-G3.cer,AppleIncRootCertificate.cer
  default_environment = Production

  [log_webhook.0]
  enabled = true
  url     = https://chat.example.com/hooks/...
  name    = StoreKit Backend
'''

import configparser
import dataclasses
import flask
import logging
import logging.handlers
import os
import pathlib
import signal
import sys
import threading
import time
import types

import base
import backend
import consumption
import dispatcher
import platform_apple
import platform_apple_api
import platform_apple_types
import server

log = logging.Logger('MAIN')

DEFAULT_SWEEP_INTERVAL_S: int = 60

@dataclasses.dataclass
class LogWebhook:
    enabled: bool = False
    url:     str  = ''
    name:    str  = ''

@dataclasses.dataclass
class ParsedArgs:
    ini_path:                  str                  = ''
    db_path:                   str                  = ''
    db_path_is_uri:            bool                 = False
    log_path:                  str                  = ''
    unsafe_logging:            bool                 = False
    sweep_interval_s:          int                  = DEFAULT_SWEEP_INTERVAL_S

    log_webhooks:              list[LogWebhook]     = dataclasses.field(default_factory=list)

    apple_key_id:              str                  = ''
    apple_issuer_id:           str                  = ''
    apple_bundle_id:           str                  = ''
    apple_key_path:            str                  = ''
    apple_root_cert_paths:     str                  = ''
    apple_default_environment: str                  = platform_apple_types.AppleEnvironment.PRODUCTION.value
    apple_key:                 bytes                = b''
    apple_root_certs:          list[bytes]          = dataclasses.field(default_factory=list)

def signal_handler(sig: int, _frame: types.FrameType | None):
    global stop_dispatch_thread

    # NOTE: Wake up the thread and set the flag to terminate it
    stop_dispatch_thread = True
    dispatch_queue.event.set()

    # NOTE: Unregister handler and resume the default handler by re-raising it
    _ = signal.signal(sig, signal.SIG_DFL)
    signal.raise_signal(sig)

def dispatch_thread_entry_point(db_path: str, db_path_is_uri: bool, api_config: platform_apple_api.Config, sweep_interval_s: int):
    '''
    Processes the notifications the webhook queued as soon as they arrive and every
    `sweep_interval_s` runs the sweep which recovers stale and failed notifications and delivers
    consumption jobs that are due.
    '''
    global stop_dispatch_thread
    next_sweep_unix_ts_s: float = time.time()
    while not stop_dispatch_thread:
        # NOTE: Sleep until the next sweep is due, or, we get woken up by the webhook queueing a
        # notification or the SIG handler.
        sleep_time_s: float = next_sweep_unix_ts_s - time.time()
        if sleep_time_s > 0 and dispatch_queue.queue.empty():
            _ = dispatch_queue.event.wait(timeout=sleep_time_s)

        if stop_dispatch_thread:
            break

        unix_ts_ms: int = int(time.time() * 1000)
        try:
            with backend.OpenDBAtPath(db_path=db_path, uri=db_path_is_uri) as db:
                ctx = consumption.Context(sql_conn=db.sql_conn, api_config=api_config, runtime=db.runtime)
                if not dispatch_queue.queue.empty():
                    _ = dispatcher.process_queued_notifications(ctx, dispatch_queue, unix_ts_ms)

                if time.time() >= next_sweep_unix_ts_s:
                    next_sweep_unix_ts_s = time.time() + sweep_interval_s
                    _                    = dispatcher.run_notification_sweep(ctx, unix_ts_ms)
                    jobs                 = consumption.send_pending_jobs(ctx, unix_ts_ms=unix_ts_ms)
                    if len(jobs):
                        sent = sum(1 for it in jobs if it.status == backend.JobStatus.Sent)
                        log.info(f'Job sweep delivered {sent}/{len(jobs)} consumption job(s)')
        except Exception as e:
            # NOTE: Keep the thread alive, the work stays pending in the DB and is picked up again
            # by the next sweep.
            log.exception(f'Dispatch thread iteration failed: {e}')
            next_sweep_unix_ts_s = time.time() + sweep_interval_s

def parse_args(err: base.ErrorSink) -> ParsedArgs:
    # NOTE: Parse .INI file if present and get arguments for it
    result          = ParsedArgs()
    result.ini_path = os.getenv('STOREKIT_BACKEND_INI_PATH', '')
    if len(result.ini_path) > 0:
        if not pathlib.Path(result.ini_path).exists():
            log.error(f'.INI config file "{result.ini_path}", was specified but does not exist/is not readable')
            sys.exit(1)

        ini_parser                              = configparser.ConfigParser()
        _                                       = ini_parser.read(filenames=result.ini_path)

        if 'base' in ini_parser:
            base_section: configparser.SectionProxy = ini_parser['base']
            result.db_path                          = base_section.get(option='db_path',               fallback='')
            result.db_path_is_uri                   = base_section.getboolean(option='db_path_is_uri', fallback=False)
            result.log_path                         = base_section.get(option='log_path',              fallback='')
            result.unsafe_logging                   = base_section.getboolean(option='unsafe_logging', fallback=False)
            result.sweep_interval_s                 = base_section.getint(option='sweep_interval_s',   fallback=DEFAULT_SWEEP_INTERVAL_S)

        webhook_index = 0
        while True:
            webhook_label: str = f'log_webhook.{webhook_index}'
            if not ini_parser.has_section(webhook_label):
                break

            webhook_section: configparser.SectionProxy = ini_parser[webhook_label]
            webhook_enabled: bool | None               = webhook_section.getboolean('enabled')
            webhook_url:     str | None                = webhook_section.get('url')
            webhook_name:    str | None                = webhook_section.get('name')

            if webhook_name is None:
                log.error(f"Failed to parse webhook section {webhook_label}, missing 'name'")
                sys.exit(1)

            if webhook_url is None:
                log.error(f"Failed to parse webhook section {webhook_label}, missing 'url'")
                sys.exit(1)

            if webhook_enabled is None:
                log.error(f"Failed to parse webhook section {webhook_label}, missing 'enabled'")
                sys.exit(1)

            webhook_index += 1
            result.log_webhooks.append(LogWebhook(name=webhook_name, url=webhook_url, enabled=webhook_enabled))

        if 'apple' in ini_parser:
            apple_section: configparser.SectionProxy = ini_parser['apple']
            result.apple_key_id                      = apple_section.get(option='key_id',              fallback='')
            result.apple_issuer_id                   = apple_section.get(option='issuer_id',           fallback='')
            result.apple_bundle_id                   = apple_section.get(option='bundle_id',           fallback='')
            result.apple_key_path                    = apple_section.get(option='key_path',            fallback='')
            result.apple_root_cert_paths             = apple_section.get(option='root_cert_paths',     fallback='')
            result.apple_default_environment         = apple_section.get(option='default_environment', fallback=result.apple_default_environment)

    # NOTE: Get arguments from environment, they override .INI values if specified
    result.db_path                   = os.getenv('STOREKIT_BACKEND_DB_PATH',                            result.db_path)
    result.db_path_is_uri            = base.os_get_boolean_env('STOREKIT_BACKEND_DB_PATH_IS_URI',       result.db_path_is_uri)
    result.log_path                  = os.getenv('STOREKIT_BACKEND_LOG_PATH',                           result.log_path)
    result.unsafe_logging            = base.os_get_boolean_env('STOREKIT_BACKEND_UNSAFE_LOGGING',       result.unsafe_logging)
    result.apple_key_id              = os.getenv('STOREKIT_BACKEND_APPLE_KEY_ID',                       result.apple_key_id)
    result.apple_issuer_id           = os.getenv('STOREKIT_BACKEND_APPLE_ISSUER_ID',                    result.apple_issuer_id)
    result.apple_bundle_id           = os.getenv('STOREKIT_BACKEND_APPLE_BUNDLE_ID',                    result.apple_bundle_id)
    result.apple_key_path            = os.getenv('STOREKIT_BACKEND_APPLE_KEY_PATH',                     result.apple_key_path)
    result.apple_root_cert_paths     = os.getenv('STOREKIT_BACKEND_APPLE_ROOT_CERT_PATHS',              result.apple_root_cert_paths)
    result.apple_default_environment = os.getenv('STOREKIT_BACKEND_APPLE_DEFAULT_ENVIRONMENT',          result.apple_default_environment)

    sweep_interval_env: str = os.getenv('STOREKIT_BACKEND_SWEEP_INTERVAL_S', '')
    if len(sweep_interval_env):
        try:
            result.sweep_interval_s = int(sweep_interval_env)
        except ValueError:
            err.msg_list.append(f'STOREKIT_BACKEND_SWEEP_INTERVAL_S must be an integer, received "{sweep_interval_env}"')

    if result.sweep_interval_s <= 0:
        err.msg_list.append(f'sweep_interval_s must be a positive number of seconds, received {result.sweep_interval_s}')

    if len(result.db_path) == 0:
        result.db_path = 'storekit-backend.db'

    if len(result.log_path) == 0:
        result.log_path = 'storekit-backend.log'

    if result.apple_default_environment not in (platform_apple_types.AppleEnvironment.PRODUCTION.value,
                                                platform_apple_types.AppleEnvironment.SANDBOX.value):
        err.msg_list.append(f'default_environment must be Production or Sandbox, received "{result.apple_default_environment}"')

    # NOTE: The API credentials are optional, without them the webhook still stores and dispatches
    # notifications but calls to the App Store Server API (consumption data, backfills, lookups)
    # fail. If any part of the credential is given then all of it must be.
    credentials = [result.apple_key_id, result.apple_issuer_id, result.apple_bundle_id, result.apple_key_path]
    if any(len(it) for it in credentials):
        if len(result.apple_key_id) == 0:
            err.msg_list.append('Apple API credentials were given but key_id was not specified')
        if len(result.apple_issuer_id) == 0:
            err.msg_list.append('Apple API credentials were given but issuer_id was not specified')
        if len(result.apple_bundle_id) == 0:
            err.msg_list.append('Apple API credentials were given but bundle_id was not specified')
        if len(result.apple_key_path) == 0:
            err.msg_list.append('Apple API credentials were given but key_path was not specified')

    if not err.has():
        try:
            if len(result.apple_key_path):
                result.apple_key = pathlib.Path(result.apple_key_path).read_bytes()
            for it in result.apple_root_cert_paths.split(','):
                if len(it.strip()):
                    result.apple_root_certs.append(pathlib.Path(it.strip()).read_bytes())
        except OSError as e:
            err.msg_list.append(f'Unable to read the Apple key or root certificates: {e}')

    return result

def entry_point() -> flask.Flask:
    log_formatter  = base.LogFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    console_logger = logging.StreamHandler()
    console_logger.setFormatter(log_formatter)
    loggers: list[logging.Logger] = [log,
                                     backend.log,
                                     consumption.log,
                                     dispatcher.log,
                                     platform_apple.log,
                                     platform_apple_api.log,
                                     server.log]

    # NOTE: Setup console logger
    for it in loggers:
        it.addHandler(console_logger)

    # NOTE: Parse arguments from .INI if present and environment variables, then setup global variables
    err                         = base.ErrorSink()
    parsed_args: ParsedArgs     = parse_args(err)
    base.UNSAFE_LOGGING         = parsed_args.unsafe_logging
    if err.has():
        log.error('Failed to startup, invalid configuration options:\n  ' + err.build())
        sys.exit(1)

    # NOTE: Setup file logger
    file_logger = logging.handlers.RotatingFileHandler(filename=parsed_args.log_path, maxBytes=64 * 1024 * 1024, backupCount=2, encoding='utf-8')
    file_logger.setFormatter(log_formatter)
    for it in loggers:
        it.addHandler(file_logger)

    # NOTE: Equip the chat webhooks that receive warnings and errors
    for webhook in parsed_args.log_webhooks:
        if webhook.enabled:
            webhook_logger = base.AsyncWebhookLogHandler(webhook_url=webhook.url, display_name=webhook.name)
            webhook_logger.setLevel(logging.WARNING)
            webhook_logger.setFormatter(log_formatter)
            webhook_loggers.append(webhook_logger)
            for it in loggers:
                it.addHandler(webhook_logger)

    # NOTE: Ensure the path is setup for writing the database
    if not parsed_args.db_path_is_uri:
        try:
            pathlib.Path(parsed_args.db_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.error(f'Failed to create directory for {parsed_args.db_path}: {e}')
            sys.exit(1)

    # NOTE: Open the DB (create tables if necessary)
    db: backend.SetupDBResult = backend.setup_db(path=parsed_args.db_path, uri=parsed_args.db_path_is_uri, err=err)
    if err.has():
        log.error(err.build())
        sys.exit(1)

    assert db.sql_conn is not None

    # NOTE: Dump some startup diagnostics
    info_string: str = backend.db_info_string(sql_conn=db.sql_conn, db_path=db.path, err=err)
    if err.has():
        log.error(err.build())
        sys.exit(1)

    api_config = platform_apple_api.Config(key_id              = parsed_args.apple_key_id,
                                           issuer_id           = parsed_args.apple_issuer_id,
                                           bundle_id           = parsed_args.apple_bundle_id,
                                           private_key         = parsed_args.apple_key,
                                           default_environment = parsed_args.apple_default_environment)

    core: platform_apple.Core = platform_apple.init(api_config      = api_config,
                                                    root_cert_bytes = parsed_args.apple_root_certs,
                                                    db_path         = db.path,
                                                    db_path_is_uri  = parsed_args.db_path_is_uri,
                                                    err             = err)
    if err.has():
        log.error('Failed to startup, invalid Apple root certificates:\n  ' + err.build())
        sys.exit(1)

    startup_log = '\n'
    startup_log += f'StoreKit Notification Backend\n{info_string}\n'
    startup_log += f'  Features:\n'
    if len(parsed_args.ini_path) > 0:
        startup_log += f'    Config .INI file loaded: {parsed_args.ini_path}\n'
    if 1:
        label = ' (URI)' if parsed_args.db_path_is_uri else ''
        startup_log += f'    DB loaded from: {db.path}{label}\n'
        startup_log += f'    Logging to: {parsed_args.log_path}\n'
        startup_log += f'    Sweep interval: {base.format_seconds(parsed_args.sweep_interval_s)}\n'
    if parsed_args.unsafe_logging:
        startup_log += f'    Unsafe logging enabled (this must NOT be used in production)\n'
    if api_config.is_configured():
        startup_log += f'    App Store Server API: {api_config.bundle_id} (key {api_config.key_id}, default environment {api_config.default_environment})\n'
    else:
        startup_log += f'    App Store Server API: Not configured, consumption data and history lookups are unavailable\n'
    startup_log += f'    Apple root certificates: {len(core.root_certs)}\n'
    for it in parsed_args.log_webhooks:
        if it.enabled:
            startup_log += f'    Webhook Logger: Enabled (display name: {it.name})\n'

    log.info(startup_log)
    for it in webhook_loggers:
        it.emit_text(f'Starting up instance: {startup_log}')

    # NOTE: Running the application just in Flask (e.g. local development) we need a way to signal
    # to the long-running dispatch thread to terminate itself otherwise the application hangs on
    # exit. Under UWSGI pass `py-call-osafterfork` so that the process respects these handlers.
    _ = signal.signal(signal.SIGINT, signal_handler)  # Ctrl+C
    _ = signal.signal(signal.SIGTERM, signal_handler) # Terminate
    _ = signal.signal(signal.SIGQUIT, signal_handler) # Quit

    # NOTE: The webhook hands stored notifications to the dispatch thread through the queue. Under
    # UWSGI with multiple processes each process has its own thread and queue, they only ever
    # process the notifications their own webhook received. The sweep in every process races to
    # recover everything else, which is safe as every status change is a conditional update.
    core.enqueue = dispatch_queue.enqueue
    thread = threading.Thread(target = dispatch_thread_entry_point,
                              args   = (db.path, parsed_args.db_path_is_uri, api_config, parsed_args.sweep_interval_s),
                              daemon = True)
    thread.start()

    result: flask.Flask = server.init(testing_mode=False, db_path=db.path, db_path_is_uri=parsed_args.db_path_is_uri)
    platform_apple.equip_flask_routes(core, result)

    # NOTE: Add flask to our global logger
    if 1:
        result.logger.addHandler(console_logger)
        result.logger.addHandler(file_logger)
        for it in webhook_loggers:
            result.logger.addHandler(it)

    # The flask runner/UWSGI takes over from here and runs the application for us across multiple
    # processes if necessary. We'll close our db connection here. Each request we receive will open
    # their own connection the DB.
    db.sql_conn.close()

    return result

# Flask entry point
stop_dispatch_thread                                 = False
dispatch_queue                                       = dispatcher.DispatchQueue()
webhook_loggers: list[base.AsyncWebhookLogHandler]   = []
flask_app: flask.Flask                               = entry_point()
