"""
kvchat: a tiny chat engine built around an incremental KV-cache decoder.

The "model" is an untrained stack of single-head self-attention layers with
random weights. What matters here is the decoding machinery, not the text it
produces: embedding lookup, attention over a growing per-layer KV cache,
greedy token selection and a bounded generation loop.

Key modules:
  - config:      Model and chat configuration
  - linalg:      Matrix multiply, softmax, argmax
  - model:       Parameter store and the single-token decoder step
  - kv_cache:    Per-layer append-only key/value history with eviction policies
  - persistence: Cache stores and the fire-and-forget async writer
  - generate:    Greedy generation loop (sync and async streaming)
  - tokenizer:   Toy character tokenizer
  - chat:        ChatSession, the respond() entry point
  - device:      Hardware selection (CUDA/MPS/CPU)
  - utils:       Logging, timing, seeding
"""

__version__ = "0.1.0"
