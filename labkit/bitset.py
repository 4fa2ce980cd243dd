"""A fixed-size set of bit positions, used to record linearized operations."""

from __future__ import annotations

_WORD_BITS = 64
_WORD_MASK = (1 << _WORD_BITS) - 1


class Bitset:
    """A set of bits with room for a fixed number of positions.

    Storage is rounded up to whole 64-bit words. Two bitsets are equal when
    they have the same number of words and the same bits set.
    """

    __slots__ = ("_words",)

    def __init__(self, bits: int) -> None:
        if bits < 0:
            raise ValueError(f"size must not be negative, got {bits}")
        self._words = [0] * -(-bits // _WORD_BITS)

    def _locate(self, pos: int) -> tuple[int, int]:
        if pos < 0:
            raise IndexError(f"bit position must not be negative, got {pos}")
        major, minor = divmod(pos, _WORD_BITS)
        if major >= len(self._words):
            raise IndexError(f"bit position {pos} is out of range")
        return major, minor

    def set(self, pos: int) -> None:
        """Set the bit at ``pos``."""
        major, minor = self._locate(pos)
        self._words[major] |= 1 << minor

    def clear(self, pos: int) -> None:
        """Clear the bit at ``pos``."""
        major, minor = self._locate(pos)
        self._words[major] &= ~(1 << minor) & _WORD_MASK

    def __contains__(self, pos: int) -> bool:
        major, minor = self._locate(pos)
        return bool(self._words[major] >> minor & 1)

    def count(self) -> int:
        """Number of bits set."""
        return sum(word.bit_count() for word in self._words)

    def copy(self) -> Bitset:
        """Return an independent copy."""
        clone = Bitset(0)
        clone._words = list(self._words)
        return clone

    def __hash__(self) -> int:
        value = self.count()
        for word in self._words:
            value ^= word
        return hash(value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Bitset):
            return NotImplemented
        return self._words == other._words

    def __repr__(self) -> str:
        bits = [
            index * _WORD_BITS + offset
            for index, word in enumerate(self._words)
            for offset in range(_WORD_BITS)
            if word >> offset & 1
        ]
        return f"Bitset(words={len(self._words)}, set={bits})"