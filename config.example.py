# Copy this file to config.py and adjust. Environment variables with the
# same names take precedence over the values below.

# Directory holding the .wav, .mp3 and .ogg files shown as pads.
AUDIO_DIRECTORY = 'audio'

# Files larger than this (in bytes) are left out of the catalog.
MAX_FILE_SIZE = 50 * 1024 * 1024

# Pick up added, changed and removed files without a restart.
ENABLE_FILE_WATCHING = True

# Seconds allowed for reading one file's metadata during a scan, counted from
# when a worker starts on it; None disables. Files queued behind an overrun
# build are retried on fresh workers.
BUILD_TIMEOUT = None

# Parallel metadata reads during a scan.
SCAN_WORKERS = 8

HOST = 'localhost'
PORT = 3000

CORS_ORIGIN = '*'

# development, production or test (FLASK_ENV in the environment).
ENVIRONMENT = 'development'

# Frontend files served at /.
STATIC_DIR = 'public'

# Flask-Caching backend for the list and stats endpoints.
CACHE_TYPE = 'SimpleCache'
CACHE_DEFAULT_TIMEOUT = 60
