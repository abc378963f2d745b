import numpy as np

BIT_LENGTH = 128
WORD_BITS = 64
WORD_COUNT = (BIT_LENGTH + WORD_BITS - 1) // WORD_BITS
BYTE_COUNT = WORD_COUNT * 8

ALL_ONES = np.iinfo(np.uint64).max


def popcount_words(words):
    """
    Count the set bits in an array of unsigned 64-bit words.
    """
    return int(np.unpackbits(np.ascontiguousarray(words).view(np.uint8)).sum())


class BitVector:
    """
    Fixed-width boolean array packed into 64-bit words.

    Bit i lives in word i // 64 at position i % 64. The bit length is fixed
    at BIT_LENGTH; an index outside [0, BIT_LENGTH) raises IndexError.
    """

    __slots__ = ("words",)

    def __init__(self, words=None):
        if words is None:
            self.words = np.zeros(WORD_COUNT, dtype=np.uint64)
        else:
            words = np.array(words, dtype=np.uint64)
            if words.shape != (WORD_COUNT,):
                raise ValueError(f"Expected {WORD_COUNT} words, got shape {words.shape}")
            self.words = words

    @classmethod
    def zeros(cls):
        return cls()

    @classmethod
    def ones(cls):
        return cls(np.full(WORD_COUNT, ALL_ONES, dtype=np.uint64))

    @classmethod
    def random(cls, rng):
        """
        Fill every bit independently and uniformly from the raw bytes of rng.
        """
        return cls.from_bytes(rng.bytes(BYTE_COUNT))

    @classmethod
    def from_bytes(cls, buf):
        if len(buf) != BYTE_COUNT:
            raise ValueError(f"Expected {BYTE_COUNT} bytes, got {len(buf)}")
        return cls(np.frombuffer(bytes(buf), dtype=np.uint64).copy())

    def as_bytes(self):
        return self.words.tobytes()

    def copy(self):
        return BitVector(self.words.copy())

    # ----------------- single-bit access ----------------- #
    @staticmethod
    def _locate(i):
        if not 0 <= i < BIT_LENGTH:
            raise IndexError(f"Bit index {i} out of range [0, {BIT_LENGTH})")
        return i // WORD_BITS, np.uint64(1) << np.uint64(i % WORD_BITS)

    def get_bit(self, i):
        word, bit = self._locate(i)
        return bool(self.words[word] & bit)

    def set_bit(self, i, value):
        word, bit = self._locate(i)
        if value:
            self.words[word] |= bit
        else:
            self.words[word] &= ~bit

    def flip_bit(self, i):
        word, bit = self._locate(i)
        self.words[word] ^= bit

    def count_ones(self):
        return popcount_words(self.words)

    def bits(self):
        """
        Yield every bit as a bool, in index order.
        """
        current = 0
        for i in range(BIT_LENGTH):
            if i % WORD_BITS == 0:
                current = int(self.words[i // WORD_BITS])
            yield bool(current & 1)
            current >>= 1

    # ----------------- bitwise operators ----------------- #
    def _check_operand(self, other):
        if other.words.shape != self.words.shape:
            raise ValueError("Bitwise operands must have the same length")

    def __and__(self, other):
        if not isinstance(other, BitVector):
            return NotImplemented
        self._check_operand(other)
        return BitVector(self.words & other.words)

    def __xor__(self, other):
        if not isinstance(other, BitVector):
            return NotImplemented
        self._check_operand(other)
        return BitVector(self.words ^ other.words)

    def __iand__(self, other):
        if not isinstance(other, BitVector):
            return NotImplemented
        self._check_operand(other)
        self.words &= other.words
        return self

    def __ixor__(self, other):
        if not isinstance(other, BitVector):
            return NotImplemented
        self._check_operand(other)
        self.words ^= other.words
        return self

    def __eq__(self, other):
        if not isinstance(other, BitVector):
            return NotImplemented
        return bool(np.array_equal(self.words, other.words))

    __hash__ = None

    def __len__(self):
        return BIT_LENGTH

    def __repr__(self):
        return "BitVector(" + ", ".join(f"0x{int(w):016x}" for w in self.words) + ")"
