"""
Persistence for the KV cache: keyed stores plus a fire-and-forget writer.

A store maps a layer index to one serialized cache entry:

    {"keys": Tensor(n, dim), "values": Tensor(n, dim), "epoch": str | None}

Entries are keyed "layer_{i}", one per decoder layer.

DELIVERY CONTRACT:
  Saving is best effort and at most once. The decoder hands a snapshot to
  AsyncCacheWriter and moves on without waiting. A single worker thread
  performs the writes in submission order. If a newer snapshot of the same
  layer is already queued, the older one is skipped. A failed write is
  logged and dropped, never retried and never raised to the decoder.

  Within a process the in-memory cache is the source of truth. The stored
  copy is read once per layer, when a session starts.
"""

import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Optional

import torch

from kvchat.errors import PersistenceError
from kvchat.utils import ChatLogger


def layer_key(layer: int) -> str:
    return f"layer_{layer}"


class CacheStore:
    """Interface for layer-keyed cache storage."""

    def get(self, layer: int) -> Optional[dict]:
        """Return the stored payload for a layer, or None if absent.

        Raises:
            PersistenceError: if the entry exists but cannot be read.
        """
        raise NotImplementedError

    def put(self, layer: int, payload: dict) -> None:
        """Store the payload for a layer, replacing any previous one.

        Raises:
            PersistenceError: if the write fails.
        """
        raise NotImplementedError


class MemoryCacheStore(CacheStore):
    """Dict-backed store. Survives sessions, not processes."""

    def __init__(self):
        self._data: dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, layer: int) -> Optional[dict]:
        with self._lock:
            payload = self._data.get(layer_key(layer))
        if payload is None:
            return None
        return dict(payload)

    def put(self, layer: int, payload: dict) -> None:
        with self._lock:
            self._data[layer_key(layer)] = dict(payload)

    def __len__(self) -> int:
        return len(self._data)


class FileCacheStore(CacheStore):
    """
    One torch file per layer under a directory.

    Writes go to a temporary file first and are moved into place with
    os.replace, so a crash mid-write leaves the previous entry intact.
    Files are loaded with weights_only=True: payloads are plain tensors
    and strings, and nothing else should ever be unpickled from disk.
    """

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def path(self, layer: int) -> str:
        return os.path.join(self.directory, f"{layer_key(layer)}.pt")

    def get(self, layer: int) -> Optional[dict]:
        path = self.path(layer)
        if not os.path.exists(path):
            return None
        try:
            payload = torch.load(path, map_location="cpu", weights_only=True)
        except Exception as e:
            raise PersistenceError(f"cannot read {path}: {e}") from e
        if not isinstance(payload, dict):
            raise PersistenceError(f"unexpected payload type in {path}: {type(payload).__name__}")
        return payload

    def put(self, layer: int, payload: dict) -> None:
        path = self.path(layer)
        tmp_path = path + ".tmp"
        try:
            torch.save(payload, tmp_path)
            os.replace(tmp_path, path)
        except Exception as e:
            raise PersistenceError(f"cannot write {path}: {e}") from e


class AsyncCacheWriter:
    """
    Background writer for cache snapshots.

    Usage:
        writer = AsyncCacheWriter(FileCacheStore("cache/"))
        writer.submit(0, payload)   # returns immediately
        writer.flush()              # wait for queued writes (tests, shutdown)
        writer.close()
    """

    def __init__(self, store: CacheStore, logger: Optional[ChatLogger] = None):
        self.store = store
        self.logger = logger
        # One worker: writes for a layer land in the order they were submitted.
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kv-cache-writer")
        self._lock = threading.Lock()
        self._pending: list[Future] = []
        self._latest: dict[int, int] = {}
        self._seq = 0
        self._closed = False

        # Counters, only touched by the worker thread.
        self.writes = 0
        self.skipped = 0
        self.failures = 0

    def submit(self, layer: int, payload) -> Optional[Future]:
        """
        Queue a write and return at once. Returns None if the writer is closed.

        `payload` is either the dict to store or a zero-argument callable
        that builds it. A callable runs on the worker thread, and only if
        the write is not superseded.
        """
        with self._lock:
            if self._closed:
                return None
            self._seq += 1
            seq = self._seq
            self._latest[layer] = seq
            future = self._executor.submit(self._write, layer, payload, seq)
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
        return future

    def _write(self, layer: int, payload, seq: int) -> bool:
        with self._lock:
            superseded = self._latest.get(layer, seq) > seq
        if superseded:
            self.skipped += 1
            return False
        try:
            if callable(payload):
                payload = payload()
            self.store.put(layer, payload)
        except Exception as e:
            self.failures += 1
            if self.logger is not None:
                self.logger.log_warning(f"cache save failed for layer {layer}: {e}")
            return False
        self.writes += 1
        return True

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every write submitted so far has finished."""
        with self._lock:
            pending = list(self._pending)
        wait(pending, timeout=timeout)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=True)
