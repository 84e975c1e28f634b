"""
Cross-cutting helpers: reproducibility, timing and logging.

Kept deliberately small: no logging framework, just a console logger that
can mirror its output to a file.
"""

import os
import time
import random
import threading
from typing import Optional
from datetime import datetime

import numpy as np
import torch


# ═══════════════════════════════════════════════════════════════════════════
# REPRODUCIBILITY
# ═══════════════════════════════════════════════════════════════════════════

def set_seed(seed: int) -> None:
    """
    Seed Python's random, NumPy and torch (CPU and CUDA).

    ModelConfig.seed seeds only the private generator used for weights.
    This function pins the global RNGs as well, so weights drawn with
    seed=None become reproducible too.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


# ═══════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Wall-clock milliseconds spent on one reply.

    Usage:
        with Timer(params.device) as t:
            result = generate(decoder, token, cache)
        result.total_ms = t.elapsed_ms

    CUDA kernels are queued, not run, when a step returns. On a CUDA device
    the timer synchronizes at both ends so the kernels are counted.
    """

    def __init__(self, device: Optional[torch.device] = None):
        self.device = device
        self.elapsed_ms: float = 0.0

    def _sync(self) -> None:
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)

    def __enter__(self) -> "Timer":
        self._sync()
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        self._sync()
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000


# ═══════════════════════════════════════════════════════════════════════════
# CHAT LOGGER
# ═══════════════════════════════════════════════════════════════════════════

class ChatLogger:
    """
    Console logger with an optional log file.

    The cache writer logs from its worker thread while the decoder logs from
    the main thread, so writes are serialized with a lock.

    Example output:
      [INFO] loaded layer 0 cache: 12 entries
      [WARN] cache save failed for layer 1: disk full
      reply 37 tokens | eos | 4.2 ms | 8,810 tok/s | cache 49
    """

    def __init__(self, log_dir: Optional[str] = None, verbose: bool = True):
        """
        Args:
            log_dir: Directory for log files. If None, only console output.
            verbose: If False, INFO lines go to the file only. Warnings are
                     always printed.
        """
        self.verbose = verbose
        self.log_file = None
        self._lock = threading.Lock()
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = os.path.join(log_dir, f"chat_{timestamp}.log")
            self.log_file = open(log_path, "w")
            print(f"Logging to: {log_path}")

    def _write(self, msg: str, console: bool = True) -> None:
        with self._lock:
            if console:
                print(msg)
            if self.log_file:
                self.log_file.write(msg + "\n")
                self.log_file.flush()

    def log_response(
        self,
        n_tokens: int,
        hit_eos: bool,
        total_ms: float,
        cache_len: int,
    ) -> None:
        """One summary line per generated reply."""
        tok_per_sec = n_tokens / (total_ms / 1000) if total_ms > 0 else 0.0
        self._write(
            f"reply {n_tokens:>3d} tokens | "
            f"{'eos' if hit_eos else 'cap'} | "
            f"{total_ms:.1f} ms | "
            f"{tok_per_sec:>8,.0f} tok/s | "
            f"cache {cache_len}",
            console=self.verbose,
        )

    def log_info(self, msg: str) -> None:
        self._write(f"[INFO] {msg}", console=self.verbose)

    def log_warning(self, msg: str) -> None:
        self._write(f"[WARN] {msg}")

    def close(self) -> None:
        """Close the log file if open."""
        with self._lock:
            if self.log_file:
                self.log_file.close()
                self.log_file = None
