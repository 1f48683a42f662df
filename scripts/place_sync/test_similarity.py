#!/usr/bin/env python3
"""
Tests for similarity primitives
Distance symmetry, token overlap bounds and locale normalization
"""
import math

import pytest

from scripts.place_sync.similarity import (
    NormalizationRules, address_similarity, haversine_distance, name_similarity,
    normalize_text, token_similarity,
)

METERS_PER_DEGREE = 6371000 * math.pi / 180


class TestHaversine:
    """Great-circle distance"""

    def test_zero_for_identical_points(self):
        assert haversine_distance(40.4168, -3.7038, 40.4168, -3.7038) == 0

    def test_symmetric(self):
        a = haversine_distance(40.4168, -3.7038, 41.3874, 2.1686)
        b = haversine_distance(41.3874, 2.1686, 40.4168, -3.7038)
        assert a == pytest.approx(b)

    def test_one_degree_of_latitude(self):
        assert haversine_distance(0, 0, 1, 0) == pytest.approx(METERS_PER_DEGREE, rel=1e-9)

    def test_madrid_to_barcelona(self):
        # ~505 km as the crow flies
        assert 500_000 < haversine_distance(40.4168, -3.7038, 41.3874, 2.1686) < 510_000


class TestTokenSimilarity:
    """Jaccard over normalized tokens"""

    def test_identical_strings(self):
        assert token_similarity("Hola Coffee", "Hola Coffee") == 1.0

    def test_disjoint_strings(self):
        assert token_similarity("Hola Coffee", "Blue Bottle") == 0.0

    def test_empty_side_scores_zero(self):
        assert token_similarity("", "Hola") == 0.0
        assert token_similarity("", "") == 0.0
        assert token_similarity("!!!", "...") == 0.0

    def test_partial_overlap(self):
        # {hola, coffee} vs {hola, cafe} → 1 / 3
        assert token_similarity("Hola Coffee", "Hola Cafe") == pytest.approx(1 / 3)

    def test_symmetric_and_bounded(self):
        pairs = [("Café Federal", "Federal Café Madrid"), ("Toma Café", "toma"), ("a b c", "c d")]
        for a, b in pairs:
            score = token_similarity(a, b)
            assert 0.0 <= score <= 1.0
            assert score == token_similarity(b, a)

    def test_accents_case_and_punctuation_ignored(self):
        assert normalize_text("  CAFÉ-Federal,  Plaza ") == "cafe federal plaza"
        assert token_similarity("Café Federal", "cafe federal") == 1.0


class TestNormalizationRules:
    """Locale prefixes, noise words and descriptive suffixes"""

    def setup_method(self):
        self.rules = NormalizationRules(
            address_prefixes=["calle", "c/", "avenida", "av.", "gran via", "plaza"],
            noise_words=["de", "del", "la", "madrid", "spain"],
            name_suffixes=["specialty coffee", "coffee roasters", "coffee shop"],
        )

    def test_address_prefix_variants_match(self):
        assert self.rules.normalize_address("Calle Mayor 1, Madrid") == "mayor 1"
        assert address_similarity("Calle Mayor 1, Madrid", "C/ Mayor, 1", self.rules) == 1.0

    def test_noise_words_removed_as_whole_words(self):
        # "de" inside "delicias" must survive
        assert self.rules.normalize_address("Paseo de las Delicias 30") == "paseo las delicias 30"

    def test_name_suffix_removed(self):
        assert self.rules.normalize_name("Hola Coffee Roasters") == "hola"
        assert name_similarity("Hola Coffee Roasters", "HOLA", self.rules) == 1.0

    def test_multi_word_prefix(self):
        assert self.rules.normalize_address("Gran Vía 20") == "20"

    def test_empty_rules_only_normalize(self):
        rules = NormalizationRules()
        assert rules.normalize_address("Calle Mayor 1") == "calle mayor 1"
        assert rules.normalize_name("Hola Coffee") == "hola coffee"
