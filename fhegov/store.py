"""Ledger store adapters.

The governance core treats the ledger as an external key/value service with
three calls: ``available``, ``get`` and ``put``. Nothing here is atomic across
keys; two sessions writing different keys (or the same key) may interleave
freely, and the registry is written with that in mind.

Every call is a coroutine so each one is a suspension point where another
session may mutate the ledger.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import requests

from .config import LedgerConf
from .errors import StoreUnavailable, WriteFailed

log = logging.getLogger(__name__)

INDEX_KEY = "proposal_keys"
RECORD_PREFIX = "proposal_"


def record_key(proposal_id: str) -> str:
    return f"{RECORD_PREFIX}{proposal_id}"


class LedgerStore(ABC):
    @abstractmethod
    async def available(self) -> bool:
        """Liveness probe; False means "no data", not an error."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the stored bytes, or b"" when the key is absent."""

    @abstractmethod
    async def put(self, key: str, value: bytes) -> None:
        """Store ``value`` under ``key``; raise WriteFailed if it did not commit."""


class MemoryLedgerStore(LedgerStore):
    """Dict-backed store that yields to the event loop on every call.

    ``online`` and ``fail_puts`` let tests and demos simulate an offline
    contract or a rejected transaction.
    """

    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self.data: Dict[str, bytes] = dict(initial or {})
        self.online = True
        self.fail_puts = False
        self.puts = 0

    async def available(self) -> bool:
        await asyncio.sleep(0)
        return self.online

    async def get(self, key: str) -> bytes:
        await asyncio.sleep(0)
        return self.data.get(key, b"")

    async def put(self, key: str, value: bytes) -> None:
        await asyncio.sleep(0)
        if self.fail_puts or not self.online:
            raise WriteFailed(key, "store rejected the write")
        self.data[key] = bytes(value)
        self.puts += 1


## --- JSON snapshot on disk --------------------------------------------------


def atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(str(tmp_path), str(path))
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class JsonFileLedgerStore(LedgerStore):
    """Whole-file JSON snapshot of ``key -> hex(value)``.

    Every put rewrites the snapshot via temp file + ``os.replace``, so a
    crash leaves either the old or the new file, never a torn one.
    """

    # one lock per snapshot file, shared by every store instance on that path
    _locks: Dict[str, threading.Lock] = {}
    _locks_guard = threading.Lock()

    def __init__(self, path: os.PathLike):
        self.path = Path(path)
        key = os.path.abspath(str(self.path))
        with self._locks_guard:
            self._lock = self._locks.setdefault(key, threading.Lock())

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            obj = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("ledger snapshot %s unreadable: %s", self.path, e)
            return {}
        return obj if isinstance(obj, dict) else {}

    def _get(self, key: str) -> bytes:
        raw = self._load().get(key)
        if not isinstance(raw, str):
            return b""
        try:
            return bytes.fromhex(raw)
        except ValueError:
            log.warning("ledger key %r holds non-hex data", key)
            return b""

    def _put(self, key: str, value: bytes) -> None:
        # load-modify-replace must not interleave or one key's write is lost
        with self._lock:
            snapshot = self._load()
            snapshot[key] = bytes(value).hex()
            data = json.dumps(snapshot, sort_keys=True, separators=(",", ":")).encode("utf-8")
            try:
                atomic_write_bytes(self.path, data)
            except OSError as e:
                raise WriteFailed(key, str(e)) from e

    def _available(self) -> bool:
        if self.path.exists():
            return os.access(self.path, os.R_OK | os.W_OK)
        return True

    async def available(self) -> bool:
        return await asyncio.to_thread(self._available)

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self._get, key)

    async def put(self, key: str, value: bytes) -> None:
        await asyncio.to_thread(self._put, key, value)


## --- remote ledger over HTTP -------------------------------------------------


class HttpLedgerStore(LedgerStore):
    """Client for the ``/ledger/<key>`` surface exposed by ``fhegov.server``."""

    def __init__(self, base_url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    def _available(self) -> bool:
        try:
            r = self.http.get(f"{self.base_url}/health", timeout=self.timeout)
        except requests.RequestException as e:
            log.warning("ledger at %s unreachable: %s", self.base_url, e)
            return False
        if not r.ok:
            return False
        try:
            body = r.json()
        except ValueError:
            log.warning("ledger at %s returned a non-JSON health response", self.base_url)
            return False
        return isinstance(body, dict) and bool(body.get("available"))

    def _get(self, key: str) -> bytes:
        try:
            r = self.http.get(f"{self.base_url}/ledger/{key}", timeout=self.timeout)
        except requests.RequestException as e:
            raise StoreUnavailable(str(e)) from e
        if r.status_code == 404:
            return b""
        if not r.ok:
            raise StoreUnavailable(f"GET {key!r} returned HTTP {r.status_code}")
        return r.content

    def _put(self, key: str, value: bytes) -> None:
        try:
            r = self.http.put(
                f"{self.base_url}/ledger/{key}",
                data=bytes(value),
                headers={"Content-Type": "application/octet-stream"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise WriteFailed(key, str(e)) from e
        if not r.ok:
            raise WriteFailed(key, f"HTTP {r.status_code}")

    async def available(self) -> bool:
        return await asyncio.to_thread(self._available)

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self._get, key)

    async def put(self, key: str, value: bytes) -> None:
        await asyncio.to_thread(self._put, key, value)


def make_store(conf: LedgerConf) -> LedgerStore:
    if conf.driver == "json":
        return JsonFileLedgerStore(conf.json_path)
    if conf.driver == "http":
        return HttpLedgerStore(conf.http_url, timeout=conf.http_timeout)
    return MemoryLedgerStore()
