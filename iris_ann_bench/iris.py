import numpy as np

from iris_ann_bench.bitvector import BIT_LENGTH, WORD_COUNT, BitVector, popcount_words

MATCH_THRESHOLD_RATIO = 0.375
MAX_DISTANCE = 1.0
FLIP_PROBABILITY = 0.05

# Masks are defined on duplicated dimension pairs, so bits 2k and 2k+1 are cleared together.
MASK_PAIR_DRAWS = BIT_LENGTH // 10 // 2


def masked_hamming(code_a, mask_a, code_b, mask_b):
    """
    Fraction of differing code bits among the positions valid in both masks.

    All four arguments are uint64 word arrays. When the masks share no valid
    position the templates cannot be compared and MAX_DISTANCE is returned.
    """
    combined_mask = mask_a & mask_b
    combined_mask_count = popcount_words(combined_mask)
    if combined_mask_count == 0:
        return MAX_DISTANCE
    code_distance = popcount_words((code_a ^ code_b) & combined_mask)
    return code_distance / combined_mask_count


class IrisTemplate:
    """
    An iris code together with its occlusion mask.

    A set mask bit marks the corresponding code bit as reliable. Templates
    are treated as values: generators always return new objects.
    """

    __slots__ = ("code", "mask")

    def __init__(self, code=None, mask=None):
        self.code = code if code is not None else BitVector.zeros()
        self.mask = mask if mask is not None else BitVector.ones()

    @classmethod
    def random(cls, rng):
        """
        Uniform random code with roughly 10% of the mask cleared pairwise.

        Pair indices are drawn with replacement, so a pair drawn twice is
        only cleared once and fewer than MASK_PAIR_DRAWS pairs may end up
        masked.
        """
        template = cls(BitVector.random(rng), BitVector.ones())
        for _ in range(MASK_PAIR_DRAWS):
            k = int(rng.integers(0, BIT_LENGTH // 2))
            template.mask.set_bit(2 * k, False)
            template.mask.set_bit(2 * k + 1, False)
        return template

    @classmethod
    def from_merged_array(cls, words):
        words = np.asarray(words, dtype=np.uint64)
        if words.shape != (2 * WORD_COUNT,):
            raise ValueError(f"Expected {2 * WORD_COUNT} merged words, got shape {words.shape}")
        return cls(BitVector(words[:WORD_COUNT]), BitVector(words[WORD_COUNT:]))

    def as_merged_array(self):
        """
        Code words followed by mask words, as one uint64 array.
        """
        return np.concatenate([self.code.words, self.mask.words])

    def get_distance(self, other):
        return masked_hamming(self.code.words, self.mask.words, other.code.words, other.mask.words)

    def is_close(self, other):
        return self.get_distance(other) < MATCH_THRESHOLD_RATIO

    def get_similar_iris(self, rng, flip_probability=FLIP_PROBABILITY):
        """
        Simulate a second noisy capture of the same eye.

        Every code bit and, independently, every mask bit is flipped with
        probability flip_probability.
        """
        res = IrisTemplate(self.code.copy(), self.mask.copy())
        code_flips = rng.random(BIT_LENGTH) < flip_probability
        mask_flips = rng.random(BIT_LENGTH) < flip_probability
        for i in range(BIT_LENGTH):
            if code_flips[i]:
                res.code.flip_bit(i)
            if mask_flips[i]:
                res.mask.flip_bit(i)
        return res

    def __eq__(self, other):
        if not isinstance(other, IrisTemplate):
            return NotImplemented
        return self.code == other.code and self.mask == other.mask

    __hash__ = None

    def __repr__(self):
        return f"IrisTemplate(code={self.code!r}, mask={self.mask!r})"
