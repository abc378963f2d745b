"""
Tests for iris templates, the masked distance and the noise model.
"""
import numpy as np
import pytest

from iris_ann_bench.bitvector import BIT_LENGTH, WORD_COUNT, BitVector
from iris_ann_bench.iris import (
    MASK_PAIR_DRAWS,
    MATCH_THRESHOLD_RATIO,
    MAX_DISTANCE,
    IrisTemplate,
)


def template_with_code_bits(positions):
    code = BitVector.zeros()
    for i in positions:
        code.set_bit(i, True)
    return IrisTemplate(code, BitVector.ones())


class FixedPairRng:
    """Zero bytes for the code, and always the same pair index for the mask."""

    def __init__(self, pair):
        self.pair = pair

    def bytes(self, n):
        return b"\x00" * n

    def integers(self, low, high):
        return self.pair


class TestDefaults:

    def test_default_template(self):
        t = IrisTemplate()
        assert t.code.count_ones() == 0
        assert t.mask.count_ones() == BIT_LENGTH

    def test_threshold(self):
        assert MATCH_THRESHOLD_RATIO == 0.375
        assert MASK_PAIR_DRAWS == 6


class TestDistance:

    def test_identical_templates(self, rng):
        for _ in range(50):
            t = IrisTemplate.random(rng)
            assert t.get_distance(t) == 0.0

    def test_symmetry(self, rng):
        for _ in range(100):
            a = IrisTemplate.random(rng)
            b = IrisTemplate.random(rng)
            assert a.get_distance(b) == b.get_distance(a)

    def test_range(self, rng):
        for _ in range(100):
            d = IrisTemplate.random(rng).get_distance(IrisTemplate.random(rng))
            assert 0.0 <= d <= 1.0

    def test_unrelated_templates_are_far(self, rng):
        distances = [IrisTemplate.random(rng).get_distance(IrisTemplate.random(rng)) for _ in range(500)]
        assert np.mean(distances) == pytest.approx(0.5, abs=0.02)

    def test_known_value(self):
        a = IrisTemplate()
        b = template_with_code_bits(range(10))
        assert a.get_distance(b) == 10 / 128

    def test_mask_restricts_comparison(self):
        a = IrisTemplate()
        b = template_with_code_bits([0, 1, 2, 3])
        a.mask.set_bit(0, False)
        b.mask.set_bit(1, False)
        # bits 0 and 1 are excluded, bits 2 and 3 differ over 126 valid positions
        assert a.get_distance(b) == 2 / 126

    def test_degenerate_mask_is_max_distance(self, rng):
        a = IrisTemplate.random(rng)
        b = IrisTemplate.random(rng)
        a.mask = BitVector.zeros()
        assert a.get_distance(b) == MAX_DISTANCE
        assert b.get_distance(a) == MAX_DISTANCE
        assert not a.is_close(b)

    def test_disjoint_masks_are_max_distance(self):
        a = IrisTemplate()
        b = IrisTemplate()
        a.mask = BitVector(np.array([np.iinfo(np.uint64).max, 0], dtype=np.uint64))
        b.mask = BitVector(np.array([0, np.iinfo(np.uint64).max], dtype=np.uint64))
        assert a.get_distance(b) == MAX_DISTANCE

    def test_is_close_threshold_is_strict(self):
        a = IrisTemplate()
        assert a.is_close(template_with_code_bits(range(47)))
        # 48 / 128 == 0.375 exactly
        assert not a.is_close(template_with_code_bits(range(48)))


class TestRandomMask:

    def test_pairs_cleared_together(self, rng):
        for _ in range(200):
            mask = IrisTemplate.random(rng).mask
            for k in range(BIT_LENGTH // 2):
                assert mask.get_bit(2 * k) == mask.get_bit(2 * k + 1)

    def test_at_most_ten_percent_cleared(self, rng):
        for _ in range(200):
            cleared = BIT_LENGTH - IrisTemplate.random(rng).mask.count_ones()
            assert 2 <= cleared <= 2 * MASK_PAIR_DRAWS
            assert cleared % 2 == 0

    def test_duplicate_draws_are_not_redrawn(self):
        t = IrisTemplate.random(FixedPairRng(5))
        assert t.code.count_ones() == 0
        assert t.mask.count_ones() == BIT_LENGTH - 2
        assert not t.mask.get_bit(10)
        assert not t.mask.get_bit(11)

    def test_duplicates_happen_in_practice(self, rng):
        cleared = [BIT_LENGTH - IrisTemplate.random(rng).mask.count_ones() for _ in range(2000)]
        assert min(cleared) < 2 * MASK_PAIR_DRAWS
        assert max(cleared) == 2 * MASK_PAIR_DRAWS


class TestSimilarIris:

    def test_flip_rate(self, rng):
        original = IrisTemplate.random(rng)
        trials = 2000
        code_flips = mask_flips = 0
        for _ in range(trials):
            noisy = original.get_similar_iris(rng)
            code_flips += (noisy.code ^ original.code).count_ones()
            mask_flips += (noisy.mask ^ original.mask).count_ones()
        assert code_flips / (trials * BIT_LENGTH) == pytest.approx(0.05, abs=0.003)
        assert mask_flips / (trials * BIT_LENGTH) == pytest.approx(0.05, abs=0.003)

    def test_original_untouched(self, rng):
        original = IrisTemplate.random(rng)
        snapshot = IrisTemplate(original.code.copy(), original.mask.copy())
        original.get_similar_iris(rng)
        assert original == snapshot

    def test_zero_noise_is_identity(self, rng):
        original = IrisTemplate.random(rng)
        copy = original.get_similar_iris(rng, flip_probability=0.0)
        assert copy == original
        assert copy is not original
        assert copy.get_distance(original) == 0.0

    def test_noisy_capture_usually_matches(self, rng):
        close = 0
        for _ in range(300):
            original = IrisTemplate.random(rng)
            close += original.get_similar_iris(rng).is_close(original)
        assert close / 300 >= 0.99


class TestMergedArray:

    def test_round_trip(self, rng):
        for _ in range(20):
            t = IrisTemplate.random(rng)
            merged = t.as_merged_array()
            assert merged.dtype == np.uint64
            assert merged.shape == (2 * WORD_COUNT,)
            assert IrisTemplate.from_merged_array(merged) == t

    def test_layout_is_code_then_mask(self, rng):
        t = IrisTemplate.random(rng)
        merged = t.as_merged_array()
        assert np.array_equal(merged[:WORD_COUNT], t.code.words)
        assert np.array_equal(merged[WORD_COUNT:], t.mask.words)

    def test_wrong_length(self):
        with pytest.raises(ValueError):
            IrisTemplate.from_merged_array(np.zeros(3, dtype=np.uint64))
