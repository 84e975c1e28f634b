"""
Interactive chat with the untrained decoder.

USAGE:
    # Interactive mode, cache kept in memory only
    python scripts/chat.py

    # Persist the KV cache between runs, with reproducible weights
    python scripts/chat.py --cache-dir cache/ --seed 0

    # Single prompt, no typing delay
    python scripts/chat.py --prompt "hello" --delay 0

    # Bound the cache instead of letting it grow forever
    python scripts/chat.py --cache-policy sliding_window --cache-window 128

COMMANDS (interactive mode):
    reset     clear the KV cache (in memory and on disk)
    stats     show weight epoch, cache sizes and writer counters
    quit      exit

The model is untrained. Expect noise, not conversation.
"""

import os
import sys
import argparse
import asyncio

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kvchat.chat import ChatSession
from kvchat.config import CACHE_POLICIES, ChatConfig, ModelConfig
from kvchat.device import device_info, get_device
from kvchat.utils import ChatLogger, set_seed


async def print_reply(session: ChatSession, text: str) -> None:
    """Stream one reply to stdout with the typing effect."""
    print("bot> ", end="", flush=True)
    async for piece in session.stream_respond(text):
        print(piece, end="", flush=True)
    print()


def interactive_loop(session: ChatSession) -> None:
    print("\n" + "=" * 60)
    print("kvchat (untrained model, do not expect coherent output)")
    print("=" * 60)
    print("Type a message and press Enter. Commands: reset, stats, quit.")
    print("=" * 60 + "\n")

    while True:
        try:
            text = input("you> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nGoodbye!")
            break

        if not text:
            continue
        if text.lower() == "quit":
            print("Goodbye!")
            break
        if text.lower() == "reset":
            session.reset_cache()
            print("  cache cleared")
            continue
        if text.lower() == "stats":
            for key, value in session.stats().items():
                print(f"  {key}: {value}")
            continue

        asyncio.run(print_reply(session, text))


def main():
    parser = argparse.ArgumentParser(
        description="Chat with an untrained attention-only decoder",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--prompt", type=str, default=None,
                        help="Single message to answer (if not provided, enters interactive mode)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for weights and all RNGs (default: fresh weights every run)")
    parser.add_argument("--model-config", type=str, default=None,
                        help="JSON file with ModelConfig fields")
    parser.add_argument("--max-tokens", type=int, default=100,
                        help="Maximum tokens per reply")
    parser.add_argument("--delay", type=float, default=0.05,
                        help="Seconds between streamed characters")
    parser.add_argument("--cache-dir", type=str, default=None,
                        help="Directory for the persisted KV cache (default: in memory)")
    parser.add_argument("--cache-policy", type=str, default="unbounded", choices=CACHE_POLICIES,
                        help="How long cached keys/values live")
    parser.add_argument("--cache-window", type=int, default=256,
                        help="Pairs kept per layer with --cache-policy sliding_window")
    parser.add_argument("--invalidate-stale-cache", action="store_true",
                        help="Drop persisted caches computed under different weights")
    parser.add_argument("--log-dir", type=str, default=None,
                        help="Directory for log files")
    parser.add_argument("--device", type=str, default="auto",
                        help="cpu, cuda, mps or auto")
    parser.add_argument("--verbose", action="store_true",
                        help="Print per-reply statistics")

    args = parser.parse_args()

    if args.seed is not None:
        set_seed(args.seed)

    model_config = ModelConfig.load(args.model_config) if args.model_config else ModelConfig()
    if args.seed is not None:
        model_config.seed = args.seed

    chat_config = ChatConfig(
        max_tokens=args.max_tokens,
        token_delay_s=args.delay,
        cache_policy=args.cache_policy,
        cache_window=args.cache_window,
        invalidate_stale_cache=args.invalidate_stale_cache,
        cache_dir=args.cache_dir,
        log_dir=args.log_dir,
    )

    device = get_device(args.device)
    print(device_info(device))

    logger = ChatLogger(log_dir=args.log_dir, verbose=args.verbose)
    with ChatSession(model_config, chat_config, device=device, logger=logger) as session:
        print(f"Parameters: {session.params.num_parameters():,} | "
              f"weight epoch {session.params.epoch} | "
              f"cache {session.cache.lengths()}")
        if args.prompt:
            asyncio.run(print_reply(session, args.prompt))
        else:
            interactive_loop(session)
    logger.close()


if __name__ == "__main__":
    main()
