#!/usr/bin/env python3

import atexit
import importlib
import importlib.util
import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import flask
from flask import Blueprint, Flask, Response, current_app, g, jsonify, request
from flask_caching import Cache
from werkzeug.exceptions import HTTPException, NotFound

from audio_registry import DEFAULT_MAX_FILE_SIZE, DEFAULT_SCAN_WORKERS, AudioRegistry, RegistryError


__version__ = '1.0.0'

LOGGER = logging.getLogger(__name__)

ENVIRONMENTS = ('development', 'production', 'test')
AUDIO_FILES_CACHE_KEY = 'audio_files_list'
AUDIO_STATS_CACHE_KEY = 'audio_files_stats'
RANGE_RE = re.compile(r'^bytes=(\d+)-(\d*)$')
STREAM_CHUNK_SIZE = 64 * 1024

cache = Cache()
api = Blueprint('api', __name__, url_prefix='/api')
site = Blueprint('site', __name__)

_UNSET = object()


def _load_config_module():
    """Load configuration module from several possible locations."""

    module_name = os.environ.get("SOUNDBOARD_CONFIG_MODULE")
    search_order = []
    if module_name:
        search_order.append(module_name)
    search_order.extend(["config.config", "config"])

    for name in search_order:
        try:
            return importlib.import_module(name)
        except ModuleNotFoundError:
            continue

    path_candidates = [
        Path(os.environ.get("SOUNDBOARD_CONFIG_PATH", "config.py")),
        Path("config/config.py"),
    ]
    for config_path in path_candidates:
        if not config_path.exists():
            continue
        spec = importlib.util.spec_from_file_location("config", config_path)
        if spec and spec.loader:
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)  # type: ignore[attr-defined]
            return module

    # Environment variables alone are a complete configuration.
    return None


def take_config(config, name, required=False):
    if config is not None and hasattr(config, name):
        return getattr(config, name)
    if required:
        raise ValueError('Required option is not defined in the config.py file: {}'.format(name))
    return None


def _coerce_bool(value, default):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if not text:
        return default
    return text not in {'0', 'false', 'no', 'off'}


def _optional_float(value):
    if value is None or str(value).strip().lower() in {'', 'none', 'off', '0'}:
        return None
    return float(value)


@dataclass
class Settings:
    audio_directory: Path = field(default_factory=lambda: Path.cwd() / 'audio')
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    enable_file_watching: bool = True
    port: int = 3000
    host: str = 'localhost'
    cors_origin: str = '*'
    environment: str = 'development'
    static_dir: Path = field(default_factory=lambda: Path.cwd() / 'public')
    build_timeout: Optional[float] = None
    scan_workers: int = DEFAULT_SCAN_WORKERS
    cache_type: str = 'SimpleCache'
    cache_default_timeout: int = 60

    @property
    def is_production(self):
        return self.environment == 'production'


def _setting(config, name, default, convert, env_name=None):
    raw = os.environ.get(env_name or name)
    if raw is None or not raw.strip():
        raw = take_config(config, name)
    if raw is None:
        return default
    try:
        return convert(raw)
    except (TypeError, ValueError):
        LOGGER.warning('Ignoring invalid %s value %r; using %r', name, raw, default)
        return default


def load_settings(config=_UNSET):
    """Read settings from ``config.py`` (if any) overridden by the environment."""

    if config is _UNSET:
        config = _load_config_module()
    defaults = Settings()

    def to_path(value):
        return Path(str(value)).expanduser()

    return Settings(
        audio_directory=_setting(config, 'AUDIO_DIRECTORY', defaults.audio_directory, to_path),
        max_file_size=_setting(config, 'MAX_FILE_SIZE', defaults.max_file_size, int),
        enable_file_watching=_setting(
            config, 'ENABLE_FILE_WATCHING', defaults.enable_file_watching,
            lambda value: _coerce_bool(value, defaults.enable_file_watching),
        ),
        port=_setting(config, 'PORT', defaults.port, int),
        host=_setting(config, 'HOST', defaults.host, str),
        cors_origin=_setting(config, 'CORS_ORIGIN', defaults.cors_origin, str),
        environment=_setting(config, 'ENVIRONMENT', defaults.environment, lambda value: str(value).strip().lower(), env_name='FLASK_ENV'),
        static_dir=_setting(config, 'STATIC_DIR', defaults.static_dir, to_path),
        build_timeout=_setting(config, 'BUILD_TIMEOUT', defaults.build_timeout, _optional_float),
        scan_workers=_setting(config, 'SCAN_WORKERS', defaults.scan_workers, int),
        cache_type=_setting(config, 'CACHE_TYPE', defaults.cache_type, str),
        cache_default_timeout=_setting(config, 'CACHE_DEFAULT_TIMEOUT', defaults.cache_default_timeout, int),
    )


def validate_settings(settings):
    if settings.port < 1 or settings.port > 65535:
        raise ValueError('Invalid port number: {}'.format(settings.port))
    if settings.max_file_size <= 0:
        raise ValueError('Invalid max file size: {}'.format(settings.max_file_size))
    if not str(settings.audio_directory).strip():
        raise ValueError('Audio directory path cannot be empty')
    if settings.environment not in ENVIRONMENTS:
        raise ValueError('Invalid environment: {}'.format(settings.environment))
    if settings.scan_workers < 1:
        raise ValueError('Invalid scan worker count: {}'.format(settings.scan_workers))
    return True


def log_settings(settings, logger=LOGGER):
    logger.info('Soundboard configuration:')
    logger.info('   Port: %s', settings.port)
    logger.info('   Audio directory: %s', settings.audio_directory)
    logger.info('   Max file size: %.2fMB', settings.max_file_size / (1024 * 1024))
    logger.info('   File watching: %s', 'enabled' if settings.enable_file_watching else 'disabled')
    logger.info('   CORS origin: %s', settings.cors_origin)
    logger.info('   Environment: %s', settings.environment)


def get_registry(app=None):
    return (app or current_app).extensions['audio_registry']


def get_settings(app=None):
    return (app or current_app).extensions['soundboard_settings']


def _utc_now_iso():
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def api_error(message, status=400, code=None, details=None):
    payload = {'success': False, 'message': message, 'timestamp': _utc_now_iso()}
    if code:
        payload['code'] = code
    if details is not None and get_settings().environment == 'development':
        payload['details'] = details
    return jsonify(payload), status


def cache_wrap(res_from, secs):
    res = flask.make_response(res_from)

    if get_settings().is_production:
        res.headers["Cache-Control"] = f"public, max-age={secs}, s-maxage={secs}"
        res.headers["CDN-Cache-Control"] = f"max-age={secs}"
    else:
        res.headers["Cache-Control"] = "no-cache"

    return res


def catalog_cache_key(prefix):
    """Cache key bound to the catalog generation.

    Every watcher event and refresh commits a new generation, so a view
    that read an older snapshot can only ever store it under an old key.
    """

    def make_key():
        return f'{prefix}:{get_registry().generation}'

    return make_key


def compute_stats(entries):
    total_files = len(entries)
    total_size = sum(entry.size for entry in entries)
    formats = {}
    for entry in entries:
        formats[entry.extension] = formats.get(entry.extension, 0) + 1
    return {
        'totalFiles': total_files,
        'totalSize': total_size,
        'formats': formats,
        'averageSize': total_size / total_files if total_files else 0,
    }


def parse_byte_range(value, size):
    """Return ``(start, end)`` for a ``bytes=start-end`` header, else None."""

    match = RANGE_RE.match((value or '').strip())
    if not match:
        return None
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else size - 1
    if start >= size or end >= size or end < start:
        return None
    return start, end


def _read_range(handle, start, length):
    with handle:
        handle.seek(start)
        remaining = length
        while remaining > 0:
            chunk = handle.read(min(STREAM_CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


def _audio_response(entry, handle, start, end, size, status):
    length = end - start + 1 if size else 0
    response = Response(
        _read_range(handle, start, length),
        status=status,
        content_type=entry.content_type,
        direct_passthrough=True,
    )
    response.call_on_close(handle.close)
    response.headers['Content-Length'] = str(length)
    response.headers['Accept-Ranges'] = 'bytes'
    response.headers['Content-Disposition'] = "inline; filename*=UTF-8''{}".format(quote(entry.filename))
    if status == 206:
        response.headers['Content-Range'] = 'bytes {}-{}/{}'.format(start, end, size)
    return response


@api.route('/audio-files')
@cache.cached(key_prefix=catalog_cache_key(AUDIO_FILES_CACHE_KEY))
def route_audio_files():
    entries = get_registry().list()
    count = len(entries)
    return {
        'success': True,
        'data': [entry.to_dict() for entry in entries],
        'count': count,
        'message': f'Retrieved {count} audio files',
    }


@api.route('/audio-files/<entry_id>')
def route_audio_file(entry_id):
    entry = get_registry().get_by_id(entry_id)
    if entry is None:
        return api_error(f'Audio file with ID {entry_id} not found', 404, code='NOT_FOUND')
    return jsonify({
        'success': True,
        'data': entry.to_dict(),
        'message': f'Retrieved audio file: {entry.display_name}',
    })


@api.route('/audio-files/refresh', methods=['POST'])
def route_audio_files_refresh():
    try:
        entries = get_registry().refresh()
    except RegistryError as exc:
        current_app.logger.error('Audio refresh failed: %s', exc)
        return api_error(str(exc), 500, code='SCAN_FAILED')
    count = len(entries)
    return jsonify({
        'success': True,
        'data': [entry.to_dict() for entry in entries],
        'count': count,
        'message': f'Refreshed audio files. Found {count} files.',
    })


@api.route('/audio-files-stats')
@cache.cached(key_prefix=catalog_cache_key(AUDIO_STATS_CACHE_KEY))
def route_audio_stats():
    return {
        'success': True,
        'data': compute_stats(get_registry().list()),
        'message': 'Retrieved audio statistics',
    }


@api.route('/audio/<filename>')
def route_audio_stream(filename):
    entry = get_registry().get_by_filename(filename)
    if entry is None:
        return api_error(f'Audio file {filename} not found', 404, code='NOT_FOUND')

    try:
        handle = open(entry.path, 'rb')
    except FileNotFoundError:
        return api_error(f'Audio file {filename} is no longer available', 404, code='NOT_FOUND')
    size = os.fstat(handle.fileno()).st_size

    range_header = request.headers.get('Range')
    if not range_header:
        return cache_wrap(_audio_response(entry, handle, 0, size - 1, size, 200), 3600)

    byte_range = parse_byte_range(range_header, size)
    if byte_range is None:
        handle.close()
        response = Response(status=416)
        response.headers['Content-Range'] = 'bytes */{}'.format(size)
        response.headers['Accept-Ranges'] = 'bytes'
        return response
    start, end = byte_range
    return cache_wrap(_audio_response(entry, handle, start, end, size, 206), 3600)


def _health_payload():
    registry = get_registry()
    settings = get_settings()
    watcher = registry.watcher_status()
    degraded = bool(watcher['enabled']) and not watcher['healthy']
    return {
        'success': True,
        'status': 'degraded' if degraded else 'healthy',
        'message': 'Live audio updates are unavailable' if degraded else 'Soundboard API is healthy',
        'timestamp': _utc_now_iso(),
        'uptime': round(time.monotonic() - current_app.extensions['soundboard_started_at'], 3),
        'version': __version__,
        'environment': settings.environment,
        'files': registry.count(),
        'watcher': watcher,
    }


@api.route('/health')
def route_api_health():
    return jsonify(_health_payload())


@site.route('/health')
def route_healthcheck():
    return jsonify(_health_payload())


@site.route('/')
def route_index():
    return cache_wrap(flask.send_from_directory(get_settings().static_dir, 'index.html'), 3600)


@site.route('/<path:ref>')
def send_static(ref):
    return cache_wrap(flask.send_from_directory(get_settings().static_dir, ref), 3600)


def handle_not_found(error):
    return api_error(f'Route {request.path} not found', 404, code='NOT_FOUND')


def handle_http_error(error):
    code = (error.name or 'error').upper().replace(' ', '_')
    return api_error(error.description or error.name, error.code or 500, code=code)


def handle_unexpected_error(error):
    current_app.logger.exception('Unhandled error for %s %s', request.method, request.path)
    return api_error(
        str(error) or 'An unexpected error occurred',
        500,
        code='INTERNAL_ERROR',
        details={'type': type(error).__name__},
    )


def _start_request_timer():
    g.request_started = time.perf_counter()


def _apply_response_headers(response):
    settings = get_settings()
    origin = request.headers.get('Origin')
    if settings.cors_origin == '*' or origin == settings.cors_origin:
        response.headers['Access-Control-Allow-Origin'] = origin or '*'
        if origin:
            response.headers.add('Vary', 'Origin')
    response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
    response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization, Range'
    response.headers['Access-Control-Expose-Headers'] = 'Content-Length, Content-Range, Accept-Ranges'
    response.headers['Access-Control-Max-Age'] = '86400'
    response.headers.setdefault('X-Content-Type-Options', 'nosniff')
    response.headers.setdefault('X-Frame-Options', 'DENY')
    response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
    return response


def _log_request(response):
    started = g.get('request_started')
    duration_ms = (time.perf_counter() - started) * 1000 if started is not None else 0.0
    current_app.logger.info('%s %s - %s - %.1fms', request.method, request.full_path.rstrip('?'), response.status_code, duration_ms)
    return response


def create_app(settings=None, registry=None, initialize=False):
    """Build the soundboard application around one ``AudioRegistry``.

    The registry is created from ``settings`` unless one is passed in. With
    ``initialize`` the initial scan runs here, which is what a WSGI server
    needs (``gunicorn 'app:create_app(initialize=True)'``); otherwise the
    caller runs ``get_registry(app).initialize()``.
    """

    settings = settings or load_settings()
    validate_settings(settings)

    app = Flask(__name__, static_folder=None)
    app.config['CACHE_TYPE'] = settings.cache_type
    app.config['CACHE_DEFAULT_TIMEOUT'] = settings.cache_default_timeout
    cache.init_app(app)

    if registry is None:
        registry = AudioRegistry(
            settings.audio_directory,
            max_file_size=settings.max_file_size,
            enable_watcher=settings.enable_file_watching,
            scan_workers=settings.scan_workers,
            build_timeout=settings.build_timeout,
        )
    app.extensions['audio_registry'] = registry
    app.extensions['soundboard_settings'] = settings
    app.extensions['soundboard_started_at'] = time.monotonic()

    app.register_blueprint(api)
    app.register_blueprint(site)
    app.register_error_handler(NotFound, handle_not_found)
    app.register_error_handler(HTTPException, handle_http_error)
    app.register_error_handler(Exception, handle_unexpected_error)
    app.before_request(_start_request_timer)
    app.after_request(_apply_response_headers)
    app.after_request(_log_request)

    if initialize:
        registry.initialize()
        atexit.register(registry.shutdown)

    return app


def main(argv=None):
    import argparse

    settings = load_settings()
    parser = argparse.ArgumentParser(description='Run the soundboard development server.')
    parser.add_argument('port', type=int, metavar='PORT', nargs='?', default=settings.port, help='Port to listen on.')
    parser.add_argument('-b', '--bind-address', default=settings.host, help='Bind server to address.')
    parser.add_argument('-d', '--debug', action='store_true', help='Enable debug mode.')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    settings.port = args.port
    settings.host = args.bind_address

    try:
        app = create_app(settings)
    except ValueError as exc:
        LOGGER.error('Invalid configuration: %s', exc)
        return 1
    registry = get_registry(app)
    try:
        registry.initialize()
    except RegistryError:
        LOGGER.exception('Failed to start soundboard')
        return 1
    atexit.register(registry.shutdown)

    log_settings(settings)
    LOGGER.info('Soundboard running at http://%s:%s with %d audio files', settings.host, settings.port, registry.count())
    # The reloader would start a second process with its own watcher.
    app.run(host=settings.host, port=settings.port, debug=args.debug, use_reloader=False)
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
