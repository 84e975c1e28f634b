"""
Unit tests for the generation loop.

Tests verify:
  1. The loop stops at EOS without emitting it
  2. The loop never runs more than max_tokens steps
  3. The end-to-end scenario (2 layers, 32 dims, 100 tokens, input 5) is
     reproducible
  4. stream_generate yields exactly what generate returns
  5. Repeated calls keep growing the same cache
"""

import sys
import os
import asyncio

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kvchat.config import ModelConfig
from kvchat.generate import GenerateResult, generate, stream_generate
from kvchat.model import Decoder, LayerWeights, ParameterStore

VOCAB = 100
DIM = 32


def constant_params(output: torch.Tensor, n_layers: int = 2) -> ParameterStore:
    """
    Weights under which every hidden state is a vector of ones.

    All embeddings are ones and every projection is the identity, so
    q = k = v = x = ones at every layer and step. The logits are then just
    the column sums of `output`.
    """
    eye = torch.eye(DIM)
    layers = [LayerWeights(eye, eye, eye, eye) for _ in range(n_layers)]
    return ParameterStore(torch.ones(VOCAB, DIM), layers, output)


@pytest.fixture
def always_eos():
    output = torch.zeros(DIM, VOCAB)
    output[:, VOCAB - 1] = 1.0
    return Decoder(constant_params(output))


@pytest.fixture
def never_eos():
    # All-zero logits: argmax ties resolve to token 0 on every step.
    return Decoder(constant_params(torch.zeros(DIM, VOCAB)))


@pytest.fixture
def seeded_decoder():
    return Decoder(ParameterStore.random(ModelConfig(n_layers=2, dim=32, vocab_size=100, seed=2024)))


def collect(agen) -> list:
    async def _run():
        return [token async for token in agen]
    return asyncio.run(_run())


class TestStopping:

    def test_eos_stops_immediately(self, always_eos):
        cache = always_eos.new_cache()
        result = generate(always_eos, 5, cache)
        assert result.tokens == []
        assert result.hit_eos
        assert result.steps == 1
        # The step that produced EOS still grew the cache.
        assert cache.lengths() == [1, 1]

    def test_cap_without_eos(self, never_eos):
        cache = never_eos.new_cache()
        result = generate(never_eos, 5, cache, max_tokens=100)
        assert result.tokens == [0] * 100
        assert not result.hit_eos
        assert result.steps == 100
        assert cache.lengths() == [100, 100]

    @pytest.mark.parametrize("max_tokens", [1, 7, 30])
    def test_custom_cap(self, never_eos, max_tokens):
        result = generate(never_eos, 0, never_eos.new_cache(), max_tokens=max_tokens)
        assert len(result) == max_tokens

    def test_rejects_non_positive_cap(self, never_eos):
        with pytest.raises(ValueError):
            generate(never_eos, 0, never_eos.new_cache(), max_tokens=0)


class TestEndToEnd:

    def test_reproducible_sequence(self):
        config = ModelConfig(n_layers=2, dim=32, vocab_size=100, seed=2024)
        runs = []
        for _ in range(2):
            decoder = Decoder(ParameterStore.random(config))
            runs.append(generate(decoder, 5, decoder.new_cache(), max_tokens=100))

        first, second = runs
        assert first.tokens == second.tokens
        assert first.hit_eos == second.hit_eos

        assert len(first.tokens) <= 100
        assert 99 not in first.tokens
        assert all(0 <= t < 99 for t in first.tokens)
        if not first.hit_eos:
            assert len(first.tokens) == 100
        else:
            assert first.steps == len(first.tokens) + 1

    @pytest.mark.parametrize("seed", [0, 1, 2, 3])
    def test_terminates_for_any_weights(self, seed):
        decoder = Decoder(ParameterStore.random(ModelConfig(seed=seed)))
        cache = decoder.new_cache()
        result = generate(decoder, 5, cache)
        assert result.steps <= 100
        assert decoder.eos_id not in result.tokens
        assert cache.lengths() == [result.steps] * 2

    def test_calls_share_the_cache(self, seeded_decoder):
        cache = seeded_decoder.new_cache()
        a = generate(seeded_decoder, 5, cache)
        b = generate(seeded_decoder, 5, cache)
        assert cache.lengths() == [a.steps + b.steps] * 2

    def test_result_stats(self, never_eos):
        result = generate(never_eos, 0, never_eos.new_cache(), max_tokens=3)
        assert isinstance(result, GenerateResult)
        assert result.total_ms >= 0
        assert "max_tokens" in result.stats_string()


class TestStreamGenerate:

    def test_matches_generate(self, seeded_decoder):
        expected = generate(seeded_decoder, 5, seeded_decoder.new_cache())
        streamed = collect(stream_generate(seeded_decoder, 5, seeded_decoder.new_cache()))
        assert streamed == expected.tokens

    def test_cap(self, never_eos):
        assert collect(stream_generate(never_eos, 0, never_eos.new_cache(), max_tokens=4)) == [0] * 4

    def test_eos_not_yielded(self, always_eos):
        cache = always_eos.new_cache()
        assert collect(stream_generate(always_eos, 0, cache)) == []
        assert cache.lengths() == [1, 1]

    def test_early_close_keeps_completed_steps(self, never_eos):
        """Stopping the stream between steps leaves whole steps in the cache."""
        cache = never_eos.new_cache()

        async def take_three():
            agen = stream_generate(never_eos, 0, cache, max_tokens=50)
            tokens = []
            async for token in agen:
                tokens.append(token)
                if len(tokens) == 3:
                    break
            await agen.aclose()
            return tokens

        assert asyncio.run(take_three()) == [0, 0, 0]
        assert cache.lengths() == [3, 3]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
