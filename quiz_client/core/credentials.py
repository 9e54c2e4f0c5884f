"""Durable storage for the access / refresh credential pair.

Pure storage: no renewal logic lives here. Values are kept under two
fixed keys (``accessToken`` / ``refreshToken``) in one of three backends:

* ``file``   — a JSON document on disk, rewritten atomically (default)
* ``redis``  — two string keys under a namespace, sharing one connection pool
* ``memory`` — process-local dict, for one-shot runs

Only the renewal gate and explicit login / logout mutate the store.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path

import redis

from quiz_client.config import Settings

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"


class CredentialStore(ABC):
    """Key/value holder for the credential pair."""

    @abstractmethod
    def _get(self, key: str) -> str | None: ...

    @abstractmethod
    def _set(self, values: dict[str, str]) -> None: ...

    @abstractmethod
    def _delete(self, keys: list[str]) -> None: ...

    @property
    def access_token(self) -> str | None:
        return self._get(ACCESS_TOKEN_KEY)

    @property
    def refresh_token(self) -> str | None:
        return self._get(REFRESH_TOKEN_KEY)

    def save_tokens(self, access: str, refresh: str) -> None:
        self._set({ACCESS_TOKEN_KEY: access, REFRESH_TOKEN_KEY: refresh})

    def save_access_token(self, access: str) -> None:
        self._set({ACCESS_TOKEN_KEY: access})

    def clear_tokens(self) -> None:
        self._delete([ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY])


class MemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    def _get(self, key: str) -> str | None:
        return self._values.get(key)

    def _set(self, values: dict[str, str]) -> None:
        self._values.update(values)

    def _delete(self, keys: list[str]) -> None:
        for key in keys:
            self._values.pop(key, None)


class FileCredentialStore(CredentialStore):
    """JSON file store; written via a temp file + rename, readable by the owner only."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Credential file %s unreadable, treating as empty: %s", self.path, e)
            return {}
        if not isinstance(raw, dict):
            return {}
        return {k: v for k, v in raw.items() if isinstance(v, str)}

    def _write(self, values: dict[str, str]) -> None:
        if not values:
            self.path.unlink(missing_ok=True)
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(values, handle, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    def _get(self, key: str) -> str | None:
        return self._read().get(key)

    def _set(self, values: dict[str, str]) -> None:
        current = self._read()
        current.update(values)
        self._write(current)

    def _delete(self, keys: list[str]) -> None:
        current = self._read()
        for key in keys:
            current.pop(key, None)
        self._write(current)


class RedisCredentialStore(CredentialStore):
    """Redis-backed store sharing one connection pool per URL."""

    _pools: dict[str, redis.ConnectionPool] = {}

    def __init__(
        self,
        url: str,
        namespace: str = "quiz_client",
        *,
        client: redis.Redis | None = None,
    ) -> None:
        self.namespace = namespace
        self._client = client or self._connect(url)

    @classmethod
    def _connect(cls, url: str) -> redis.Redis:
        pool = cls._pools.get(url)
        if pool is None:
            pool = redis.ConnectionPool.from_url(url, decode_responses=True, max_connections=10)
            cls._pools[url] = pool
        return redis.Redis(connection_pool=pool)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _get(self, key: str) -> str | None:
        return self._client.get(self._key(key))

    def _set(self, values: dict[str, str]) -> None:
        self._client.mset({self._key(k): v for k, v in values.items()})

    def _delete(self, keys: list[str]) -> None:
        self._client.delete(*(self._key(k) for k in keys))


def build_credential_store(settings: Settings) -> CredentialStore:
    """Instantiate the backend named by ``CREDENTIAL_BACKEND``."""
    backend = settings.CREDENTIAL_BACKEND.lower()
    if backend == "file":
        return FileCredentialStore(settings.CREDENTIAL_FILE)
    if backend == "redis":
        return RedisCredentialStore(settings.REDIS_URL, settings.REDIS_NAMESPACE)
    if backend == "memory":
        return MemoryCredentialStore()
    raise ValueError(f"Unknown credential backend '{settings.CREDENTIAL_BACKEND}'")
