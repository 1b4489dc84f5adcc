"""
Settings Service - persisted key/value storage for grid settings.
One namespaced key per setting, JSON-encoded values.
"""
import json
import logging
import os
import tempfile
from threading import Lock
from typing import Any, Dict, Optional, Protocol

import redis
from pydantic import ValidationError

from minigrid.models.settings_models import GridSettings

logger = logging.getLogger(__name__)


class KeyValueBackend(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...


class MemoryBackend:
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value


class JsonFileBackend:
    """All keys in one JSON object on disk, rewritten atomically on every set."""

    def __init__(self, path: str):
        self.path = path
        self._lock = Lock()
        self._data: Optional[Dict[str, str]] = None

    def _load(self) -> Dict[str, str]:
        if self._data is not None:
            return self._data
        data: Dict[str, str] = {}
        if os.path.exists(self.path):
            try:
                with open(self.path, "r", encoding="utf-8") as fh:
                    loaded = json.load(fh)
                if isinstance(loaded, dict):
                    data = {str(k): v for k, v in loaded.items() if isinstance(v, str)}
                else:
                    logger.warning("Settings file %s is not a JSON object; starting empty", self.path)
            except (OSError, ValueError) as e:
                logger.error("Failed to read settings file %s: %s", self.path, e)
        self._data = data
        return data

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            directory = os.path.dirname(os.path.abspath(self.path))
            tmp_path = None
            try:
                fd, tmp_path = tempfile.mkstemp(prefix=".settings-", dir=directory)
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, indent=2, sort_keys=True)
                os.replace(tmp_path, self.path)
                tmp_path = None
            except OSError as e:
                logger.error("Failed to write settings file %s key=%s: %s", self.path, key, e)
            finally:
                if tmp_path is not None and os.path.exists(tmp_path):
                    os.unlink(tmp_path)


class RedisBackend:
    """Synchronous redis client; a missing server degrades to defaults and no-op writes."""

    def __init__(self, url: str):
        self.url = url
        self._client: Optional[redis.Redis] = None

    def connect(self):
        if self._client is None:
            try:
                self._client = redis.Redis.from_url(self.url, decode_responses=True)
                self._client.ping()
                logger.info("Connected to Redis at %s", self.url)
            except Exception as e:
                logger.error("Failed to connect to Redis: %s", e)
                self._client = None

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    def get(self, key: str) -> Optional[str]:
        if not self._client:
            return None
        try:
            return self._client.get(key)
        except Exception as e:
            logger.error("Redis get failed for key %s: %s", key, e)
            return None

    def set(self, key: str, value: str) -> None:
        if not self._client:
            return
        try:
            self._client.set(key, value)
        except Exception as e:
            logger.error("Redis set failed for key %s: %s", key, e)


class SettingsStore:
    """
    Typed settings on top of a key/value backend.

    Unknown keys are never read. Missing keys fall back to the model default,
    and so does a stored value that fails to decode or validate (per field).
    """

    def __init__(self, backend: KeyValueBackend, namespace: str = "minichart_grid_"):
        self.backend = backend
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def get(self, key: str, default: Any = None) -> Any:
        raw = self.backend.get(self._key(key))
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Ignoring undecodable setting key=%s", key)
            return default

    def set(self, key: str, value: Any) -> None:
        self.backend.set(self._key(key), json.dumps(value))

    def load_grid_settings(self) -> GridSettings:
        data: Dict[str, Any] = {}
        missing = object()
        for field_name, key in GridSettings.storage_keys().items():
            value = self.get(key, missing)
            if value is missing:
                continue
            try:
                GridSettings.model_validate({key: value})
            except ValidationError as e:
                logger.warning(
                    "Stored setting %s is invalid, using default: %s",
                    key,
                    e.errors(include_url=False)[0].get("msg"),
                )
                continue
            data[key] = value
        return GridSettings.model_validate(data)

    def save_field(self, settings: GridSettings, field_name: str) -> None:
        key = GridSettings.storage_keys()[field_name]
        self.set(key, settings.storage_value(field_name))


def build_settings_store(cfg) -> SettingsStore:
    backend_name = cfg.SETTINGS_BACKEND
    if backend_name == "memory":
        backend: KeyValueBackend = MemoryBackend()
    elif backend_name == "redis":
        backend = RedisBackend(cfg.REDIS_URL)
        backend.connect()
    else:
        backend = JsonFileBackend(cfg.SETTINGS_FILE)
    logger.info("Settings backend=%s namespace=%s", backend.__class__.__name__, cfg.SETTINGS_NAMESPACE)
    return SettingsStore(backend, namespace=cfg.SETTINGS_NAMESPACE)
