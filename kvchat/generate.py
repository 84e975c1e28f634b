"""
Generation loop: feed each output token back in until EOS or the length cap.

ALGORITHM:
  token = first input token
  repeat at most max_tokens times:
      out = decoder.step(token, cache)
      if out == EOS: stop (EOS is not part of the result)
      emit out
      token = out

  There is no prefill phase. Only the FIRST token of the user's message is
  ever fed to the decoder, and the rest of the context comes from whatever
  the KV cache already holds. Every call starts a fresh loop but keeps
  mutating the same cache, so replies depend on the whole history of the
  session.

  Decoding is greedy (argmax), so for a fixed set of weights and a fixed
  starting cache the output is fully deterministic.

TWO ENTRY POINTS:
  generate():        synchronous, returns a GenerateResult.
  stream_generate(): async generator for interactive front ends. It yields
                     each token as soon as it is decoded and then awaits
                     asyncio.sleep(delay_s), handing control back to the
                     event loop between steps.

CANCELLATION:
  A cancelled stream stops at the await between two steps. The step that
  just finished is fully committed: every layer got its key/value pair and
  its save was queued. A step is never left half-applied.
"""

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator

from kvchat.kv_cache import KVCache
from kvchat.model import Decoder
from kvchat.utils import Timer


@dataclass
class GenerateResult:
    """Emitted tokens plus loop statistics."""
    tokens: list = field(default_factory=list)
    steps: int = 0          # decoder invocations, including the one that hit EOS
    hit_eos: bool = False   # False means the max_tokens cap stopped the loop
    total_ms: float = 0.0

    def __len__(self) -> int:
        return len(self.tokens)

    @property
    def tok_per_sec(self) -> float:
        if self.total_ms <= 0:
            return 0.0
        return self.steps / (self.total_ms / 1000)

    def stats_string(self) -> str:
        lines = [
            f"Output tokens  : {len(self.tokens)}",
            f"Decoder steps  : {self.steps}",
            f"Stopped by     : {'EOS' if self.hit_eos else 'max_tokens'}",
            f"Speed          : {self.tok_per_sec:.1f} steps/s",
            f"Total time     : {self.total_ms:.1f} ms",
        ]
        return "\n".join(lines)


def generate(
    decoder: Decoder,
    first_token: int,
    cache: KVCache,
    max_tokens: int = 100,
) -> GenerateResult:
    """
    Greedy generation from a single starting token.

    Args:
        decoder: The decoder step.
        first_token: First input token, in [0, vocab_size-1].
        cache: KV cache to read and grow. Gains one pair per layer per step.
        max_tokens: Hard cap on decoder steps.

    Returns:
        GenerateResult with at most max_tokens tokens, none of them EOS.
    """
    if max_tokens <= 0:
        raise ValueError(f"max_tokens must be positive, got {max_tokens}")

    result = GenerateResult()

    with Timer(decoder.params.device) as timer:
        token = first_token
        for _ in range(max_tokens):
            out = decoder.step(token, cache)
            result.steps += 1
            if out == decoder.eos_id:
                result.hit_eos = True
                break
            result.tokens.append(out)
            token = out

    result.total_ms = timer.elapsed_ms
    return result


async def stream_generate(
    decoder: Decoder,
    first_token: int,
    cache: KVCache,
    max_tokens: int = 100,
    delay_s: float = 0.0,
) -> AsyncIterator[int]:
    """
    Async version of generate() that yields tokens one by one.

    Same tokens, same cache growth as generate(). Between steps the loop
    awaits asyncio.sleep(delay_s); with delay_s=0 this is a bare yield to
    the event loop.
    """
    if max_tokens <= 0:
        raise ValueError(f"max_tokens must be positive, got {max_tokens}")

    token = first_token
    for _ in range(max_tokens):
        out = decoder.step(token, cache)
        if out == decoder.eos_id:
            return
        yield out
        token = out
        await asyncio.sleep(delay_s)
