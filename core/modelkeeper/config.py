"""Configuration settings for modelkeeper."""

import os
from pathlib import Path

from modelkeeper import __version__

# Paths
DATA_DIR = Path.home() / ".modelkeeper"
MODELS_DIR = DATA_DIR / "Models"
DOWNLOADS_DIR = DATA_DIR / "Downloads"

# Local store
CACHE_TTL_SECONDS = 300  # 5 minutes
CACHE_FILE = "models_cache.json"
METADATA_FILE = "metadata.json"

# Downloads
MAX_CONCURRENT_DOWNLOADS = 2
HISTORY_LIMIT = 100
CONNECT_TIMEOUT = 10.0
DOWNLOAD_TIMEOUT = 60.0  # per read, a stalled transfer fails after this
CHUNK_SIZE = 1024 * 1024
PROGRESS_INTERVAL = 0.25  # seconds between progress callbacks
USER_AGENT = f"modelkeeper/{__version__}"

# Remote catalogs
PROVIDER_TIMEOUT = 30.0
HF_SEARCH_LIMIT = 20

# Logging
LOG_LEVEL = os.environ.get("MODELKEEPER_LOG_LEVEL", "INFO")
NOISY_LOGGERS = ("httpx", "httpcore", "huggingface_hub")

# Server
HOST = "127.0.0.1"
PORT = 7878

# API
API_PREFIX = "/api"
API_VERSION = __version__
