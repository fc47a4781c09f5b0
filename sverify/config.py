"""
Configuration module for SVerify.

Centralizes all configuration with environment variable support,
validation, and caching of the optional policy file.
"""

import json
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("SVERIFY_ENV", "dev")  # dev|stage|prod

# HTTP server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))

# Ticket storage
TICKET_STORE_BACKEND = os.getenv("TICKET_STORE_BACKEND", "json")  # json|sqlite
DATA_FILE = os.getenv("DATA_FILE", "data/data.json")
SQLITE_PATH = os.getenv("SQLITE_PATH", "data/sverify.db")

# Ticket lifetime and admission windows (seconds)
TICKET_TTL_SECONDS = int(os.getenv("TICKET_TTL_SECONDS", "900"))
DEBOUNCE_SECONDS = int(os.getenv("DEBOUNCE_SECONDS", "30"))
GLOBAL_WINDOW_SECONDS = int(os.getenv("GLOBAL_WINDOW_SECONDS", "300"))
GLOBAL_INSERT_LIMIT = int(os.getenv("GLOBAL_INSERT_LIMIT", "10"))

# Classification policy
SUSPICIOUS_THRESHOLD = int(os.getenv("SUSPICIOUS_THRESHOLD", "2"))
REJECT_THRESHOLD = int(os.getenv("REJECT_THRESHOLD", "2"))
POLICY_PATH = os.getenv("POLICY_PATH", "")

# Challenge page
CHALLENGE_PAGE_PATH = os.getenv(
    "CHALLENGE_PAGE_PATH",
    str(Path(__file__).resolve().parent / "static" / "index.html")
)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")
LOG_FILE = os.getenv("LOG_FILE", "")

# Cache TTL (seconds)
CONFIG_CACHE_TTL = int(os.getenv("CONFIG_CACHE_TTL", "60"))


# ============================================================
# Cached Configuration Loaders
# ============================================================

class CachedConfig:
    """
    Thread-safe cached configuration loader.
    Reloads configuration files periodically based on TTL.
    """

    def __init__(self, ttl_seconds: int = 60):
        self._cache: Dict[str, Any] = {}
        self._timestamps: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._ttl = ttl_seconds

    def _is_stale(self, key: str) -> bool:
        if key not in self._timestamps:
            return True
        return (time.time() - self._timestamps[key]) > self._ttl

    def get_json(self, path: str, force_reload: bool = False) -> Dict[str, Any]:
        """
        Load JSON file with caching.
        Returns cached version if within TTL, otherwise reloads.
        """
        with self._lock:
            if not force_reload and path in self._cache and not self._is_stale(path):
                return self._cache[path]

            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)

            self._cache[path] = data
            self._timestamps[path] = time.time()
            return data

    def invalidate(self, path: Optional[str] = None) -> None:
        """Invalidate cache for a specific path or all paths."""
        with self._lock:
            if path:
                self._cache.pop(path, None)
                self._timestamps.pop(path, None)
            else:
                self._cache.clear()
                self._timestamps.clear()


# Global cached config instance
_config_cache = CachedConfig(ttl_seconds=CONFIG_CACHE_TTL)


def load_policy_overrides(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load classification policy overrides.

    The policy file is a JSON object with any of: ``suspicious_threshold``,
    ``reject_threshold``, ``critical`` (list of signal names),
    ``secondary`` (list of signal names) and ``extra_secondary``
    (list of signal definitions). Returns an empty dict when no policy
    file is configured.
    """
    path = path if path is not None else POLICY_PATH
    if not path:
        return {}
    data = _config_cache.get_json(path)
    if not isinstance(data, dict):
        raise ValueError(f"policy file {path} must contain a JSON object")
    return data


def invalidate_config_cache() -> None:
    """Invalidate all cached configuration."""
    _config_cache.invalidate()


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate that configured files and directories exist.
    Returns dict of name -> exists.
    """
    paths = {"challenge_page": CHALLENGE_PAGE_PATH}

    if TICKET_STORE_BACKEND == "sqlite":
        paths["sqlite_dir"] = str(Path(SQLITE_PATH).parent)
    else:
        paths["data_file"] = DATA_FILE

    if POLICY_PATH:
        paths["policy"] = POLICY_PATH

    return {name: Path(path).exists() for name, path in paths.items()}


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("SVERIFY_DEBUG", "").lower() in ("1", "true", "yes")
