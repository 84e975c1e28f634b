"""
Chat session: the respond() entry point around the decoding engine.

A ChatSession owns everything one conversation needs:

  ParameterStore ──► Decoder ──► generate() ──► CharTokenizer.decode ──► reply
                        │
                        ▼
                     KVCache ──► AsyncCacheWriter ──► CacheStore (optional)

On construction the session loads every layer's cache once (from the store
if there is one). After that the in-memory cache is the source of truth and
persistence only ever writes.

Only the FIRST character of a message is fed to the decoder. Everything else
the model "knows" about the conversation lives in the KV cache, which keeps
growing across replies unless the cache policy says otherwise.
"""

from dataclasses import dataclass
from typing import AsyncIterator, Optional

import torch

from kvchat.config import ChatConfig, ModelConfig
from kvchat.errors import ShapeMismatchError
from kvchat.generate import GenerateResult, generate, stream_generate
from kvchat.kv_cache import KVCache
from kvchat.model import Decoder, ParameterStore
from kvchat.persistence import AsyncCacheWriter, CacheStore, FileCacheStore
from kvchat.tokenizer import CharTokenizer
from kvchat.utils import ChatLogger, Timer


@dataclass
class Message:
    role: str   # "user" or "bot"
    text: str


class ChatSession:
    """
    One conversation with the untrained decoder.

    Usage:
        with ChatSession(ModelConfig(seed=0), ChatConfig(cache_dir="cache/")) as chat:
            print(chat.respond("hello"))

    Args:
        model_config: Shape of the weights. Defaults to ModelConfig().
        chat_config: Session behavior. Defaults to ChatConfig().
        params: Pre-built weights; drawn from model_config when None.
        store: Cache backend. When None, a FileCacheStore is used if
               chat_config.cache_dir is set, otherwise nothing is persisted.
        device: Device for freshly drawn weights.
        logger: Shared logger; a new one is created (and owned) when None.
    """

    def __init__(
        self,
        model_config: Optional[ModelConfig] = None,
        chat_config: Optional[ChatConfig] = None,
        params: Optional[ParameterStore] = None,
        store: Optional[CacheStore] = None,
        device: Optional[torch.device] = None,
        logger: Optional[ChatLogger] = None,
    ):
        self.model_config = model_config or ModelConfig()
        self.chat_config = chat_config or ChatConfig()
        self.model_config.validate()
        self.chat_config.validate()

        # ── Weights ────────────────────────────────────────────────────────
        if params is None:
            params = ParameterStore.random(self.model_config, device=device)
        expected = (self.model_config.vocab_size, self.model_config.dim, self.model_config.n_layers)
        actual = (params.vocab_size, params.dim, params.n_layers)
        if actual != expected:
            raise ShapeMismatchError(
                f"weights are (vocab, dim, layers)={actual}, config says {expected}"
            )
        self.params = params
        self.decoder = Decoder(params)
        self.tokenizer = CharTokenizer(self.model_config.vocab_size)

        self._owns_logger = logger is None
        self.logger = logger or ChatLogger(log_dir=self.chat_config.log_dir)

        # ── Cache + persistence ────────────────────────────────────────────
        # From here on the session holds a log file and a writer thread.
        self.writer: Optional[AsyncCacheWriter] = None
        try:
            if store is None and self.chat_config.cache_dir:
                store = FileCacheStore(self.chat_config.cache_dir)
            self.store = store
            if store is not None:
                self.writer = AsyncCacheWriter(store, logger=self.logger)
            self.cache = KVCache.from_config(
                self.model_config,
                self.chat_config,
                store=store,
                writer=self.writer,
                epoch=params.epoch,
                device=params.device,
                dtype=params.dtype,
                logger=self.logger,
            )
            self.cache.load_all()
        except Exception:
            self.close()
            raise

        self.messages: list[Message] = []
        self.last_result: Optional[GenerateResult] = None

    # ── Replies ────────────────────────────────────────────────────────────

    def respond(self, user_text: str) -> str:
        """
        Generate the bot's reply to one user message.

        Blank messages are ignored: nothing is generated or recorded and ""
        is returned. Shape errors abort the reply and propagate. Persistence
        failures never do.
        """
        if not user_text.strip():
            return ""
        first_token = self._begin(user_text)

        result = generate(self.decoder, first_token, self.cache, self.chat_config.max_tokens)
        reply = self.tokenizer.decode(result.tokens)

        self.messages.append(Message("bot", reply))
        self.last_result = result
        self.logger.log_response(
            len(result.tokens), result.hit_eos, result.total_ms, self.cache.length(0)
        )
        return reply

    async def stream_respond(self, user_text: str) -> AsyncIterator[str]:
        """
        Like respond(), but yields the reply one character at a time.

        Characters are paced by chat_config.token_delay_s (the typing
        effect). The bot message in the transcript grows as characters are
        yielded, so a stream closed early leaves a partial reply behind.
        """
        if not user_text.strip():
            return
        first_token = self._begin(user_text)

        bot = Message("bot", "")
        self.messages.append(bot)
        n_tokens = 0
        with Timer(self.params.device) as timer:
            async for token in stream_generate(
                self.decoder,
                first_token,
                self.cache,
                self.chat_config.max_tokens,
                delay_s=self.chat_config.token_delay_s,
            ):
                piece = self.tokenizer.decode([token])
                bot.text += piece
                n_tokens += 1
                yield piece

        self.logger.log_response(
            n_tokens, n_tokens < self.chat_config.max_tokens, timer.elapsed_ms, self.cache.length(0)
        )

    def _begin(self, user_text: str) -> int:
        self.messages.append(Message("user", user_text))
        if self.chat_config.cache_policy == "per_response":
            self.cache.reset()
        return self.tokenizer.encode(user_text)[0]

    # ── Housekeeping ───────────────────────────────────────────────────────

    def reset_cache(self) -> None:
        """Forget all cached keys/values, and overwrite the persisted copies."""
        self.cache.reset()
        for layer in range(self.cache.n_layers):
            self.cache.save(layer)
        self.logger.log_info("KV cache reset")

    def stats(self) -> dict:
        stats = {
            "weight_epoch": self.params.epoch,
            "parameters": self.params.num_parameters(),
            "cache_policy": self.cache.policy,
            "cache_lengths": self.cache.lengths(),
            "messages": len(self.messages),
        }
        if self.writer is not None:
            stats["cache_writes"] = self.writer.writes
            stats["cache_writes_skipped"] = self.writer.skipped
            stats["cache_write_failures"] = self.writer.failures
        return stats

    def flush(self) -> None:
        """Wait for queued cache writes."""
        if self.writer is not None:
            self.writer.flush()

    def close(self) -> None:
        if self.writer is not None:
            self.writer.close()
        if self._owns_logger:
            self.logger.close()

    def __enter__(self) -> "ChatSession":
        return self

    def __exit__(self, *args) -> None:
        self.close()
