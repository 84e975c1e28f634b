"""
Toy character tokenizer.

ENCODING:
  Each character becomes ord(c) % (vocab_size - 1), so ids land in
  [0, vocab_size - 2] and the EOS id (vocab_size - 1) is never produced.

DECODING:
  Each id becomes chr(id + 65): 0 → "A", 1 → "B", ... EOS decodes to "".

This is NOT an inverse pair. Many characters share an id: "A" (65) and
chr(164) both map to 65 % 99 = 65. Decoding also shifts everything by 65
code points. decode(encode(s)) != s is expected behavior. The decoder only
needs ids in range, not a faithful text mapping.
"""


class CharTokenizer:
    """
    Usage:
        tok = CharTokenizer(vocab_size=100)
        ids = tok.encode("hi")   # [5, 6]
        tok.decode(ids)          # "FG"
    """

    # Offset added to every id on decode; 65 is "A".
    DECODE_OFFSET = 65

    def __init__(self, vocab_size: int = 100):
        assert vocab_size >= 2, "vocab_size must leave room for EOS"
        self._vocab_size = vocab_size

    def encode(self, text: str) -> list[int]:
        return [ord(c) % (self._vocab_size - 1) for c in text]

    def decode(self, tokens: list[int]) -> str:
        return "".join(
            "" if t == self.eos_id else chr(t + self.DECODE_OFFSET)
            for t in tokens
        )

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    @property
    def eos_id(self) -> int:
        return self._vocab_size - 1

    def __len__(self) -> int:
        return self._vocab_size
