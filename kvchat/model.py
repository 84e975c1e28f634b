"""
Attention-only decoder: parameter store and the single-token decoder step.

The model is deliberately minimal. Compared with the LLaMA/GPT block it
keeps only the attention core:

  ┌─────────────────────┬──────────────────────┬────────────────────────┐
  │ Component           │ GPT-style block      │ This decoder           │
  ├─────────────────────┼──────────────────────┼────────────────────────┤
  │ Attention heads     │ Multi-head           │ One head, full width   │
  │ Score scaling       │ 1/√d_k               │ None                   │
  │ Residual connection │ Yes                  │ No                     │
  │ Normalization       │ LayerNorm / RMSNorm  │ None                   │
  │ Feed-forward        │ MLP / SwiGLU         │ None                   │
  │ Positional encoding │ Learned / RoPE       │ None                   │
  │ Weights             │ Trained              │ U(-0.1, 0.1), random   │
  └─────────────────────┴──────────────────────┴────────────────────────┘

Each layer is attention followed by an output projection, and its output is
the next layer's input. Because the weights are untrained, the tokens it
produces are meaningless. What the code guarantees is that decoding is
mechanically correct and reproducible.

READING ORDER:
  1. LayerWeights / ParameterStore: immutable weight matrices
  2. Decoder.step:                   one token in, one token out, cache grows
"""

import hashlib
from dataclasses import dataclass
from typing import Optional

import torch

from kvchat.config import ModelConfig
from kvchat.errors import ShapeMismatchError
from kvchat.kv_cache import KVCache
from kvchat.linalg import argmax, mat_mul, softmax


# ═══════════════════════════════════════════════════════════════════════════
# 1. Parameter Store
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LayerWeights:
    """The four (dim × dim) projections of one attention layer, applied as x @ W."""
    wq: torch.Tensor
    wk: torch.Tensor
    wv: torch.Tensor
    wo: torch.Tensor

    def matrices(self) -> tuple:
        return (self.wq, self.wk, self.wv, self.wo)


class ParameterStore:
    """
    Read-only weights for the whole model.

    SHAPES:
      embedding: (vocab_size, dim)    row t is the vector for token t
      layers[l]: 4 × (dim, dim)       query, key, value, output projections
      output:    (dim, vocab_size)    final hidden state → per-token scores

    Weights are never saved. Every process start draws fresh ones unless
    ModelConfig.seed pins them. The `epoch` fingerprint lets a KV cache tell
    whether it was computed under the weights that are loaded now.
    """

    def __init__(
        self,
        embedding: torch.Tensor,
        layers: list,
        output: torch.Tensor,
    ):
        """
        Args:
            embedding: (vocab_size, dim) tensor.
            layers: Non-empty list of LayerWeights, each matrix (dim, dim).
            output: (dim, vocab_size) tensor.

        Raises:
            ShapeMismatchError: if any matrix disagrees with the others.
        """
        if embedding.dim() != 2:
            raise ShapeMismatchError(f"embedding must be 2-D, got {tuple(embedding.shape)}")
        vocab_size, dim = embedding.shape
        if not layers:
            raise ShapeMismatchError("at least one layer is required")
        for i, layer in enumerate(layers):
            for name, w in zip(("wq", "wk", "wv", "wo"), layer.matrices()):
                if tuple(w.shape) != (dim, dim):
                    raise ShapeMismatchError(
                        f"layer {i} {name} has shape {tuple(w.shape)}, expected ({dim}, {dim})"
                    )
        if tuple(output.shape) != (dim, vocab_size):
            raise ShapeMismatchError(
                f"output has shape {tuple(output.shape)}, expected ({dim}, {vocab_size})"
            )

        # Private copies: nothing outside can mutate the weights we hold.
        self.embedding = embedding.detach().clone()
        self.layers = [
            LayerWeights(*(w.detach().clone() for w in layer.matrices()))
            for layer in layers
        ]
        self.output = output.detach().clone()
        self._epoch: Optional[str] = None

    @classmethod
    def random(
        cls,
        config: ModelConfig,
        device: Optional[torch.device] = None,
    ) -> "ParameterStore":
        """
        Draw every weight independently from U(-init_range, init_range).

        With config.seed set, a private generator makes the draw
        reproducible without touching the global RNG. Draw order is fixed:
        per layer wq, wk, wv, wo, then embedding, then output.
        """
        config.validate()
        generator = None
        if config.seed is not None:
            generator = torch.Generator().manual_seed(config.seed)

        def uniform(rows: int, cols: int) -> torch.Tensor:
            w = torch.rand(rows, cols, generator=generator) * 2 * config.init_range
            return (w - config.init_range).to(device or "cpu")

        layers = [
            LayerWeights(*(uniform(config.dim, config.dim) for _ in range(4)))
            for _ in range(config.n_layers)
        ]
        embedding = uniform(config.vocab_size, config.dim)
        output = uniform(config.dim, config.vocab_size)
        return cls(embedding, layers, output)

    @property
    def vocab_size(self) -> int:
        return self.embedding.shape[0]

    @property
    def dim(self) -> int:
        return self.embedding.shape[1]

    @property
    def n_layers(self) -> int:
        return len(self.layers)

    @property
    def device(self) -> torch.device:
        return self.embedding.device

    @property
    def dtype(self) -> torch.dtype:
        return self.embedding.dtype

    @property
    def epoch(self) -> str:
        """
        Short fingerprint of all weight values.

        Two stores with bit-identical weights share an epoch. A persisted
        cache stamped with a different epoch was computed under weights
        that no longer exist.
        """
        if self._epoch is None:
            h = hashlib.sha256()
            for w in self._all_matrices():
                h.update(w.detach().cpu().contiguous().numpy().tobytes())
            self._epoch = h.hexdigest()[:16]
        return self._epoch

    def num_parameters(self) -> int:
        return sum(w.numel() for w in self._all_matrices())

    def _all_matrices(self) -> list:
        mats = [self.embedding]
        for layer in self.layers:
            mats.extend(layer.matrices())
        mats.append(self.output)
        return mats


# ═══════════════════════════════════════════════════════════════════════════
# 2. Decoder Step
# ═══════════════════════════════════════════════════════════════════════════

class Decoder:
    """
    Turns one input token into one output token, growing the KV cache.

    PER LAYER (x starts as the input token's embedding):

      q = x @ Wq,  k = x @ Wk,  v = x @ Wv
      cache.append(l, k, v)                     cache now holds n+1 pairs
      scores_i = K_i · q      for i = 0..n      includes the new key
      p = softmax(scores)
      attn = Σ_i p_i · V_i
      x = attn @ Wo                             input to the next layer
      cache.save(l)                             fire-and-forget

    The new key is appended BEFORE scoring, so the token attends to itself
    as the most recent cache position. This is causal self-attention over
    everything the cache has ever seen.

    After the last layer: logits = x @ W_out, output = argmax(logits), with
    ties going to the lowest token id.

    Steps must run one at a time against a given cache.
    """

    def __init__(self, params: ParameterStore):
        self.params = params

    @property
    def eos_id(self) -> int:
        return self.params.vocab_size - 1

    def new_cache(self, **kwargs) -> KVCache:
        """Empty in-memory cache shaped for these weights."""
        kwargs.setdefault("epoch", self.params.epoch)
        kwargs.setdefault("device", self.params.device)
        kwargs.setdefault("dtype", self.params.dtype)
        return KVCache(self.params.n_layers, self.params.dim, **kwargs)

    @torch.no_grad()
    def logits(self, token: int, cache: KVCache) -> torch.Tensor:
        """
        Run every layer for `token` and return the (vocab_size,) score vector.

        Appends exactly one key/value pair to every layer of `cache`.
        """
        if not 0 <= token < self.params.vocab_size:
            raise ValueError(f"token {token} outside vocabulary [0, {self.params.vocab_size - 1}]")
        if cache.n_layers != self.params.n_layers or cache.dim != self.params.dim:
            raise ShapeMismatchError(
                f"cache shaped ({cache.n_layers} layers, dim {cache.dim}) does not match "
                f"model ({self.params.n_layers} layers, dim {self.params.dim})"
            )

        x = self.params.embedding[token]

        for l, w in enumerate(self.params.layers):
            # ── Step 1: Project the input to query, key, value ─────────────
            row = x.unsqueeze(0)  # (1, dim)
            q = mat_mul(row, w.wq)[0]
            k = mat_mul(row, w.wk)[0]
            v = mat_mul(row, w.wv)[0]

            # ── Step 2: Grow the cache ─────────────────────────────────────
            cache.append(l, k, v)

            # ── Step 3-5: Attend over every cached position ────────────────
            keys = cache.keys(l)      # (n, dim)
            values = cache.values(l)  # (n, dim)
            scores = mat_mul(keys, q.unsqueeze(1))[:, 0]          # (n,)
            probs = softmax(scores)                                # (n,)
            attn = mat_mul(probs.unsqueeze(0), values)[0]          # (dim,)

            # ── Step 6: Output projection, no residual ─────────────────────
            x = mat_mul(attn.unsqueeze(0), w.wo)[0]

            # ── Step 7: Persist this layer ─────────────────────────────────
            cache.save(l)

        return mat_mul(x.unsqueeze(0), self.params.output)[0]

    def step(self, token: int, cache: KVCache) -> int:
        """Greedy single-token decode: index of the highest score."""
        return argmax(self.logits(token, cache))
