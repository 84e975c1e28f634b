"""
Unit tests for cache stores and the async writer.

Tests verify:
  1. memory and file stores round-trip payloads
  2. unreadable files raise PersistenceError
  3. the writer never raises, counts failures and skips superseded writes
  4. lazily built payloads are only built for writes that happen
"""

import sys
import os
import threading

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kvchat.errors import PersistenceError
from kvchat.persistence import (
    AsyncCacheWriter,
    CacheStore,
    FileCacheStore,
    MemoryCacheStore,
    layer_key,
)
from kvchat.utils import ChatLogger


def payload(n: int, dim: int = 4, epoch: str = "e0") -> dict:
    return {"keys": torch.ones(n, dim), "values": torch.zeros(n, dim), "epoch": epoch}


class FailingStore(CacheStore):
    def get(self, layer):
        raise PersistenceError("nope")

    def put(self, layer, payload):
        raise PersistenceError("nope")


class BlockingStore(MemoryCacheStore):
    """Holds the worker thread inside the first put() until released."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.started = threading.Event()
        self.puts = []

    def put(self, layer, payload):
        if not self.started.is_set():
            self.started.set()
            self.release.wait(timeout=5)
        self.puts.append((layer, payload["keys"].shape[0]))
        super().put(layer, payload)


class TestStores:

    def test_layer_key(self):
        assert layer_key(3) == "layer_3"

    def test_memory_round_trip(self):
        store = MemoryCacheStore()
        assert store.get(0) is None
        store.put(0, payload(2))
        got = store.get(0)
        assert torch.equal(got["keys"], torch.ones(2, 4))
        assert got["epoch"] == "e0"

    def test_file_round_trip(self, tmp_path):
        store = FileCacheStore(str(tmp_path))
        assert store.get(1) is None
        store.put(1, payload(3))
        assert os.path.exists(store.path(1))
        assert not os.path.exists(store.path(1) + ".tmp")

        reopened = FileCacheStore(str(tmp_path))
        got = reopened.get(1)
        assert got["keys"].shape == (3, 4)
        assert torch.equal(got["values"], torch.zeros(3, 4))
        assert got["epoch"] == "e0"

    def test_file_overwrite(self, tmp_path):
        store = FileCacheStore(str(tmp_path))
        store.put(0, payload(1))
        store.put(0, payload(5))
        assert store.get(0)["keys"].shape[0] == 5

    def test_corrupt_file_raises(self, tmp_path):
        store = FileCacheStore(str(tmp_path))
        with open(store.path(0), "wb") as f:
            f.write(b"definitely not a torch file")
        with pytest.raises(PersistenceError):
            store.get(0)

    def test_unwritable_directory_raises(self, tmp_path):
        store = FileCacheStore(str(tmp_path / "cache"))
        os.rmdir(store.directory)
        with open(store.directory, "w") as f:
            f.write("a file where the directory should be")
        with pytest.raises(PersistenceError):
            store.put(0, payload(1))


class TestAsyncCacheWriter:

    def test_writes_reach_store(self):
        store = MemoryCacheStore()
        writer = AsyncCacheWriter(store)
        writer.submit(0, payload(1))
        writer.submit(1, payload(2))
        writer.flush()
        assert store.get(0)["keys"].shape[0] == 1
        assert store.get(1)["keys"].shape[0] == 2
        writer.close()

    def test_failures_are_swallowed(self):
        writer = AsyncCacheWriter(FailingStore(), logger=ChatLogger(verbose=False))
        future = writer.submit(0, payload(1))
        writer.flush()
        assert future.result() is False
        assert writer.failures == 1
        assert writer.writes == 0
        writer.close()

    def test_superseded_write_skipped(self):
        store = BlockingStore()
        writer = AsyncCacheWriter(store)
        writer.submit(1, payload(1))
        assert store.started.wait(timeout=5)
        writer.submit(0, payload(2))
        writer.submit(0, payload(3))
        store.release.set()
        writer.flush()
        assert store.puts == [(1, 1), (0, 3)]
        assert writer.skipped == 1
        assert store.get(0)["keys"].shape[0] == 3
        writer.close()

    def test_callable_payload_built_only_when_written(self):
        store = BlockingStore()
        writer = AsyncCacheWriter(store)
        built = []

        def builder(n):
            def build():
                built.append(n)
                return payload(n)
            return build

        writer.submit(1, payload(1))
        assert store.started.wait(timeout=5)
        writer.submit(0, builder(2))
        writer.submit(0, builder(3))
        store.release.set()
        writer.flush()
        assert built == [3]
        assert store.get(0)["keys"].shape[0] == 3
        writer.close()

    def test_failing_builder_counted(self):
        writer = AsyncCacheWriter(MemoryCacheStore(), logger=ChatLogger(verbose=False))

        def build():
            raise RuntimeError("cannot stack")

        assert writer.submit(0, build).result() is False
        assert writer.failures == 1
        writer.close()

    def test_submit_after_close(self):
        writer = AsyncCacheWriter(MemoryCacheStore())
        writer.close()
        assert writer.submit(0, payload(1)) is None
        writer.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
