"""
Configuration for the decoder and the chat session.

Every hyperparameter and policy knob lives here. The rest of the package
imports these dataclasses instead of hard-coding numbers.

Two configs, two lifetimes:
  - ModelConfig: shape of the weights. Changing it produces a different
    model whose KV cache is incompatible with caches saved under the old one.
  - ChatConfig:  how a session runs (length cap, pacing, cache policy,
    persistence). Can change freely between runs.

DEFAULTS:
  The defaults reproduce the original toy widget: 2 layers, 32-dim hidden
  state, 100-token vocabulary with token 99 as EOS, 100 tokens per reply,
  50 ms typing delay, cache never evicted.
"""

from dataclasses import dataclass, asdict
from typing import Optional
import json
import os


CACHE_POLICIES = ("unbounded", "per_response", "sliding_window")


@dataclass
class ModelConfig:
    """
    Architecture hyperparameters for the attention-only decoder.

    PARAMETER COUNT (defaults):
    ───────────────────────────────
    Embedding (vocab_size × dim):        3,200
    2 layers × 4 × (dim × dim):          8,192
    Output projection (dim × vocab):     3,200
    ───────────────────────────────
    TOTAL:                              14,592
    """

    # ── Vocabulary ──────────────────────────────────────────────────────────
    # Token ids are 0..vocab_size-1. The last id is reserved as EOS.
    vocab_size: int = 100

    # ── Model Dimensions ───────────────────────────────────────────────────
    # Width of the hidden state, and of every key/value vector in the cache.
    dim: int = 32

    # ── Depth ──────────────────────────────────────────────────────────────
    n_layers: int = 2

    # ── Initialization ─────────────────────────────────────────────────────
    # Every weight is drawn from U(-init_range, init_range).
    init_range: float = 0.1

    # Seed for weight generation. None draws from the global torch RNG, so
    # weights differ on every process start.
    seed: Optional[int] = None

    @property
    def eos_id(self) -> int:
        """The end-of-sequence token: always the last vocabulary entry."""
        return self.vocab_size - 1

    def validate(self) -> None:
        """Catch bad configurations before any tensor is allocated."""
        assert self.vocab_size >= 2, "vocab_size must leave room for EOS"
        assert self.dim > 0, "dim must be positive"
        assert self.n_layers > 0, "n_layers must be positive"
        assert self.init_range > 0.0, "init_range must be positive"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ModelConfig":
        return cls(**d)

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "ModelConfig":
        """Load configuration from JSON file."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))


@dataclass
class ChatConfig:
    """
    Session behavior: generation limits, pacing, cache scope and persistence.
    """

    # ── Generation ─────────────────────────────────────────────────────────
    # Hard cap on decoder steps per reply. A step count, not a timeout.
    max_tokens: int = 100

    # Pause between streamed characters (typing effect). Presentation only.
    token_delay_s: float = 0.05

    # ── Cache Scope ────────────────────────────────────────────────────────
    # "unbounded":      never evict; cost per token grows with everything
    #                   the process has ever generated.
    # "per_response":   clear the cache before each reply.
    # "sliding_window": keep only the newest cache_window key/value pairs.
    cache_policy: str = "unbounded"
    cache_window: int = 256

    # ── Cache Integrity ────────────────────────────────────────────────────
    # Weights are regenerated every run but the cache may be reloaded from a
    # previous one. When True, a persisted entry stamped with a different
    # weight epoch is dropped on load. When False it is reused (with a
    # warning), which is what the original widget did.
    invalidate_stale_cache: bool = False

    # Key/value count mismatch: truncate to the shorter length (True) or
    # raise CacheCorruptionError (False).
    repair_corrupt_cache: bool = True

    # ── Paths ──────────────────────────────────────────────────────────────
    # Directory for persisted layer caches. None keeps the cache in memory.
    cache_dir: Optional[str] = None
    # Directory for log files. None logs to console only.
    log_dir: Optional[str] = None

    def validate(self) -> None:
        assert self.max_tokens > 0, "max_tokens must be positive"
        assert self.token_delay_s >= 0.0, "token_delay_s cannot be negative"
        assert self.cache_policy in CACHE_POLICIES, (
            f"cache_policy must be one of {CACHE_POLICIES}, got {self.cache_policy!r}"
        )
        assert self.cache_window > 0, "cache_window must be positive"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ChatConfig":
        return cls(**d)
