"""
Per-layer key/value cache for incremental decoding.

WHAT IS CACHED:
  Every decoder step computes one key and one value vector per layer for
  the token it processes. Attention at step n needs the keys and values of
  ALL earlier steps, so instead of recomputing them we keep them here:

    layer 0: keys   [k₀, k₁, ..., kₙ]     values [v₀, v₁, ..., vₙ]
    layer 1: keys   [k₀, k₁, ..., kₙ]     values [v₀, v₁, ..., vₙ]

  Index i in both lists belongs to the i-th token processed since the cache
  was created or last reset. len(keys) == len(values) always holds.

OWNERSHIP:
  A KVCache is an explicit handle. A session constructs one and passes it to
  every Decoder.step call; the decoder is the only component that appends.
  load() hands out snapshots, so callers cannot mutate the live entries.

SCOPE (cache_policy):
  - "unbounded":      append-only, nothing is ever evicted. Attention cost
                      per token grows with every token ever generated.
  - "per_response":   the session calls reset() before each reply.
  - "sliding_window": after each append, the oldest pairs are dropped so at
                      most `window` remain.

PERSISTENCE:
  With a store attached, load() reads each layer's persisted entry once;
  save() hands a snapshot to the async writer. Persistence failures degrade
  to an empty or unsaved cache and never reach the decoder.
"""

from dataclasses import dataclass, field
from typing import Optional

import torch

from kvchat.config import ChatConfig, ModelConfig
from kvchat.errors import CacheCorruptionError, MalformedCacheError, ShapeMismatchError
from kvchat.persistence import AsyncCacheWriter, CacheStore
from kvchat.utils import ChatLogger


@dataclass(eq=False)
class CacheEntry:
    """Key and value history for one layer."""
    keys: list = field(default_factory=list)
    values: list = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.keys)

    def __eq__(self, other) -> bool:
        if not isinstance(other, CacheEntry):
            return NotImplemented
        return (
            len(self.keys) == len(other.keys)
            and len(self.values) == len(other.values)
            and all(torch.equal(a, b) for a, b in zip(self.keys, other.keys))
            and all(torch.equal(a, b) for a, b in zip(self.values, other.values))
        )

    def is_consistent(self) -> bool:
        return len(self.keys) == len(self.values)

    def repair(self) -> int:
        """Truncate both lists to the shorter length. Returns how many vectors were dropped."""
        n = min(len(self.keys), len(self.values))
        dropped = (len(self.keys) - n) + (len(self.values) - n)
        del self.keys[n:]
        del self.values[n:]
        return dropped

    def evict_oldest(self, keep: int) -> int:
        """Drop the oldest pairs so at most `keep` remain. Returns how many pairs were dropped."""
        excess = len(self.keys) - keep
        if excess <= 0:
            return 0
        del self.keys[:excess]
        del self.values[:excess]
        return excess

    def snapshot(self) -> "CacheEntry":
        # Vectors are never modified in place, so copying the lists is enough.
        return CacheEntry(list(self.keys), list(self.values))

    def to_dict(self, dim: int, epoch: Optional[str] = None) -> dict:
        """Serialize as stacked (n, dim) CPU tensors."""
        return {
            "keys": _stack(self.keys, dim),
            "values": _stack(self.values, dim),
            "epoch": epoch,
        }

    @classmethod
    def from_dict(cls, payload: dict, dim: int) -> tuple["CacheEntry", Optional[str]]:
        """
        Rebuild an entry from a stored payload.

        Shapes, dtypes and values are validated here. A key/value count
        mismatch is left for the caller to repair or reject.

        Returns:
            (entry, epoch) where epoch is the weight fingerprint stored with
            the entry, or None if it was saved without one.

        Raises:
            MalformedCacheError: if the payload is not a dict with "keys" and
                "values", or holds non-float or non-finite tensors.
            ShapeMismatchError: if keys or values are not (n, dim) tensors.
        """
        if not isinstance(payload, dict):
            raise MalformedCacheError(f"payload is {type(payload).__name__}, not a dict")
        if "keys" not in payload or "values" not in payload:
            raise MalformedCacheError(f"payload lacks keys/values: {sorted(map(str, payload))}")
        keys, values = payload["keys"], payload["values"]
        for name, t in (("keys", keys), ("values", values)):
            if not isinstance(t, torch.Tensor):
                raise MalformedCacheError(f"cached {name} is {type(t).__name__}, not a tensor")
            if t.dim() != 2 or t.shape[1] != dim:
                raise ShapeMismatchError(
                    f"cached {name} have shape {tuple(t.shape)}, expected (n, {dim})"
                )
            if not t.is_floating_point():
                raise MalformedCacheError(f"cached {name} have dtype {t.dtype}, expected float")
            if not torch.isfinite(t).all():
                raise MalformedCacheError(f"cached {name} contain NaN or inf")
        return cls(list(keys.unbind(0)), list(values.unbind(0))), payload.get("epoch")


def _stack(vectors: list, dim: int) -> torch.Tensor:
    if not vectors:
        return torch.empty(0, dim)
    return torch.stack(vectors).detach().cpu()


class KVCache:
    """
    Key/value history for every layer of one conversation.

    Args:
        n_layers: Number of decoder layers.
        dim: Length of every key and value vector.
        store: Optional persistence backend; None keeps everything in memory.
        writer: Async writer for save(). Without one, save() is a no-op.
        policy: One of "unbounded", "per_response", "sliding_window".
        window: Maximum pairs per layer under "sliding_window".
        epoch: Fingerprint of the weights that produce this cache's vectors.
        invalidate_stale: Discard persisted entries saved under another epoch.
        repair: Truncate inconsistent entries instead of raising.
        device: Device for cached vectors loaded from the store.
        dtype: Float dtype of the weights. Loaded vectors are cast to it.
               Defaults to torch.get_default_dtype().
        logger: Where warnings about load/repair go.
    """

    def __init__(
        self,
        n_layers: int,
        dim: int,
        store: Optional[CacheStore] = None,
        writer: Optional[AsyncCacheWriter] = None,
        policy: str = "unbounded",
        window: int = 256,
        epoch: Optional[str] = None,
        invalidate_stale: bool = False,
        repair: bool = True,
        device: Optional[torch.device] = None,
        dtype: Optional[torch.dtype] = None,
        logger: Optional[ChatLogger] = None,
    ):
        self.n_layers = n_layers
        self.dim = dim
        self.store = store
        self.writer = writer
        self.policy = policy
        self.window = window
        self.epoch = epoch
        self.invalidate_stale = invalidate_stale
        self.repair = repair
        self.device = device if device is not None else torch.device("cpu")
        self.dtype = dtype if dtype is not None else torch.get_default_dtype()
        self.logger = logger
        # Layers are filled lazily: absent means "not loaded yet".
        self._entries: dict[int, CacheEntry] = {}

    @classmethod
    def from_config(
        cls,
        model_config: ModelConfig,
        chat_config: ChatConfig,
        store: Optional[CacheStore] = None,
        writer: Optional[AsyncCacheWriter] = None,
        epoch: Optional[str] = None,
        device: Optional[torch.device] = None,
        dtype: Optional[torch.dtype] = None,
        logger: Optional[ChatLogger] = None,
    ) -> "KVCache":
        return cls(
            n_layers=model_config.n_layers,
            dim=model_config.dim,
            store=store,
            writer=writer,
            policy=chat_config.cache_policy,
            window=chat_config.cache_window,
            epoch=epoch,
            invalidate_stale=chat_config.invalidate_stale_cache,
            repair=chat_config.repair_corrupt_cache,
            device=device,
            dtype=dtype,
            logger=logger,
        )

    # ── Loading ────────────────────────────────────────────────────────────

    def load(self, layer: int) -> CacheEntry:
        """
        Return a snapshot of a layer's entry.

        The first call per layer consults the store. Anything that goes
        wrong there (missing entry, unreadable file, wrong shapes, stale
        epoch with invalidation on) yields an empty entry.
        """
        return self._entry(layer).snapshot()

    def load_all(self) -> None:
        for layer in range(self.n_layers):
            self._entry(layer)

    def _entry(self, layer: int) -> CacheEntry:
        if not 0 <= layer < self.n_layers:
            raise IndexError(f"layer {layer} out of range for {self.n_layers} layers")
        entry = self._entries.get(layer)
        if entry is None:
            entry = self._load_persisted(layer)
            self._entries[layer] = entry
        return entry

    def _load_persisted(self, layer: int) -> CacheEntry:
        if self.store is None:
            return CacheEntry()

        try:
            payload = self.store.get(layer)
        except Exception as e:
            self._warn(f"cache load failed for layer {layer}, starting empty: {e}")
            return CacheEntry()
        if payload is None:
            return CacheEntry()

        try:
            entry, epoch = CacheEntry.from_dict(payload, self.dim)
        except (ShapeMismatchError, MalformedCacheError) as e:
            self._warn(f"discarding malformed cache for layer {layer}: {e}")
            return CacheEntry()

        if self.epoch is not None and epoch != self.epoch:
            if self.invalidate_stale:
                self._warn(
                    f"discarding layer {layer} cache from weight epoch {epoch} "
                    f"(current {self.epoch})"
                )
                return CacheEntry()
            self._warn(
                f"layer {layer} cache was computed under weight epoch {epoch}, "
                f"current weights are {self.epoch}"
            )

        if not entry.is_consistent():
            if not self.repair:
                self._warn(
                    f"discarding layer {layer} cache: {len(entry.keys)} keys vs "
                    f"{len(entry.values)} values"
                )
                return CacheEntry()
            dropped = entry.repair()
            self._warn(f"repaired layer {layer} cache, dropped {dropped} vectors")

        if self.policy == "sliding_window":
            entry.evict_oldest(self.window)

        entry.keys = [k.to(self.device, self.dtype) for k in entry.keys]
        entry.values = [v.to(self.device, self.dtype) for v in entry.values]
        if self.logger is not None:
            self.logger.log_info(f"loaded layer {layer} cache: {len(entry)} entries")
        return entry

    # ── Mutation ───────────────────────────────────────────────────────────

    def append(self, layer: int, key: torch.Tensor, value: torch.Tensor) -> None:
        """
        Append one key and one value to a layer.

        Called exactly once per layer per decoder step.

        Raises:
            ShapeMismatchError: if key or value is not a (dim,) vector.
            CacheCorruptionError: if the entry is inconsistent and repair
                is disabled.
        """
        if key.shape != (self.dim,) or value.shape != (self.dim,):
            raise ShapeMismatchError(
                f"expected key/value of shape ({self.dim},), "
                f"got {tuple(key.shape)} and {tuple(value.shape)}"
            )
        entry = self._entry(layer)
        if not entry.is_consistent():
            if not self.repair:
                raise CacheCorruptionError(layer, len(entry.keys), len(entry.values))
            dropped = entry.repair()
            self._warn(f"repaired layer {layer} cache, dropped {dropped} vectors")

        entry.keys.append(key)
        entry.values.append(value)

        if self.policy == "sliding_window":
            entry.evict_oldest(self.window)

    def save(self, layer: int) -> None:
        """
        Hand a snapshot of the layer to the async writer. Never blocks, never raises.

        Only the vector lists are copied here. Stacking them into the stored
        tensors happens on the writer thread, and not at all when a newer
        snapshot of the layer supersedes this one.
        """
        if self.writer is None:
            return
        snapshot = self._entry(layer).snapshot()
        dim, epoch = self.dim, self.epoch
        self.writer.submit(layer, lambda: snapshot.to_dict(dim, epoch))

    def reset(self) -> None:
        """Empty every layer. Stored copies are overwritten on the next save."""
        for layer in range(self.n_layers):
            self._entries[layer] = CacheEntry()

    # ── Reading ────────────────────────────────────────────────────────────

    def keys(self, layer: int) -> torch.Tensor:
        """All cached keys of a layer as an (n, dim) tensor."""
        entry = self._entry(layer)
        if not entry.keys:
            return torch.empty(0, self.dim, device=self.device, dtype=self.dtype)
        return torch.stack(entry.keys)

    def values(self, layer: int) -> torch.Tensor:
        """All cached values of a layer as an (n, dim) tensor."""
        entry = self._entry(layer)
        if not entry.values:
            return torch.empty(0, self.dim, device=self.device, dtype=self.dtype)
        return torch.stack(entry.values)

    def length(self, layer: int) -> int:
        return len(self._entry(layer))

    def lengths(self) -> list[int]:
        return [self.length(layer) for layer in range(self.n_layers)]

    def _warn(self, msg: str) -> None:
        if self.logger is not None:
            self.logger.log_warning(msg)
