"""
Masked Hamming distance on merged flat vectors.

An index only sees one flat uint64 vector per point: the code words followed
by the mask words. This module splits such vectors back into their halves
and evaluates the iris distance on them, both as a Python callable and as a
numba-compiled kernel that usearch can call directly.
"""
import threading

import numpy as np
from numba import carray, cfunc, njit, types
from usearch.index import CompiledMetric, MetricKind, MetricSignature

from iris_ann_bench.bitvector import WORD_COUNT
from iris_ann_bench.iris import MAX_DISTANCE, masked_hamming

MERGED_WORD_COUNT = 2 * WORD_COUNT
MERGED_BIT_COUNT = MERGED_WORD_COUNT * 64


class EvaluationCounter:
    """
    Thread-safe tally of distance evaluations.

    Purely diagnostic: the harness resets it when the index switches to
    searching mode so the final value covers only the query phase.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._value = 0

    def add(self, n=1):
        with self._lock:
            self._value += n

    def reset(self):
        with self._lock:
            self._value = 0

    @property
    def value(self):
        with self._lock:
            return self._value


def split_merged(words):
    """
    Split a flat word vector at its midpoint into (code_words, mask_words).
    """
    words = np.asarray(words, dtype=np.uint64)
    if words.ndim != 1 or words.shape[0] % 2:
        raise ValueError(f"Merged vector must be 1-D with an even word count, got shape {words.shape}")
    half = words.shape[0] // 2
    return words[:half], words[half:]


class MaskedHammingDistance:
    """
    Distance function over merged flat vectors, returning float32.

    If a counter is given, every call is recorded in it.
    """

    def __init__(self, counter=None):
        self.counter = counter

    def __call__(self, va, vb):
        code_a, mask_a = split_merged(va)
        code_b, mask_b = split_merged(vb)
        if code_a.shape != code_b.shape:
            raise ValueError("Merged vectors must have the same length")
        if self.counter is not None:
            self.counter.add()
        return np.float32(masked_hamming(code_a, mask_a, code_b, mask_b))


# ----------------- compiled kernel for usearch ----------------- #
@njit
def _popcount_u64(v):
    v = v - ((v >> types.uint64(1)) & types.uint64(0x5555555555555555))
    v = (v & types.uint64(0x3333333333333333)) + ((v >> types.uint64(2)) & types.uint64(0x3333333333333333))
    v = (v + (v >> types.uint64(4))) & types.uint64(0x0F0F0F0F0F0F0F0F)
    return (v * types.uint64(0x0101010101010101)) >> types.uint64(56)


@cfunc(types.float32(types.CPointer(types.uint64), types.CPointer(types.uint64)))
def masked_hamming_kernel(a, b):
    a_words = carray(a, MERGED_WORD_COUNT)
    b_words = carray(b, MERGED_WORD_COUNT)
    mask_count = types.uint64(0)
    code_distance = types.uint64(0)
    for i in range(WORD_COUNT):
        combined_mask = a_words[WORD_COUNT + i] & b_words[WORD_COUNT + i]
        mask_count += _popcount_u64(combined_mask)
        code_distance += _popcount_u64((a_words[i] ^ b_words[i]) & combined_mask)
    if mask_count == 0:
        return types.float32(MAX_DISTANCE)
    return types.float32(code_distance) / types.float32(mask_count)


def compiled_metric():
    return CompiledMetric(
        pointer=masked_hamming_kernel.address,
        kind=MetricKind.Hamming,
        signature=MetricSignature.ArrayArray,
    )
