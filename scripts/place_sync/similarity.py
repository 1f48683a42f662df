#!/usr/bin/env python3
"""
Similarity primitives for place deduplication
Haversine distance and Jaccard token overlap on normalized text
"""
import re
import math
import unicodedata
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Set

EARTH_RADIUS_M = 6371000

# Precompiled regex patterns
RE_PUNCTUATION_CLEANUP = re.compile(r'[^\w\s]')
RE_WHITESPACE_NORMALIZE = re.compile(r'\s+')


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters"""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (math.sin(d_phi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def normalize_text(text: str) -> str:
    """Normalize text: lowercase, strip accents/punct, collapse spaces"""
    if not text:
        return ""
    text = unicodedata.normalize('NFD', text)
    text = ''.join(c for c in text if unicodedata.category(c) != 'Mn')
    text = RE_PUNCTUATION_CLEANUP.sub(' ', text.lower())
    text = RE_WHITESPACE_NORMALIZE.sub(' ', text)
    return text.strip()


def _phrase_pattern(phrases: Iterable[str]) -> re.Pattern:
    """Whole-word alternation over normalized phrases, longest first"""
    normalized = {normalize_text(p) for p in phrases}
    normalized.discard('')
    if not normalized:
        return re.compile(r'(?!x)x')
    alternation = '|'.join(re.escape(p) for p in sorted(normalized, key=len, reverse=True))
    return re.compile(rf'\b(?:{alternation})\b')


def strip_phrases(text: str, pattern: re.Pattern) -> str:
    return RE_WHITESPACE_NORMALIZE.sub(' ', pattern.sub(' ', text)).strip()


@dataclass
class NormalizationRules:
    """Locale word lists applied before comparing names and addresses"""
    address_prefixes: List[str] = field(default_factory=list)
    noise_words: List[str] = field(default_factory=list)
    name_suffixes: List[str] = field(default_factory=list)

    def __post_init__(self):
        self._address_pattern = _phrase_pattern(list(self.address_prefixes) + list(self.noise_words))
        self._name_pattern = _phrase_pattern(self.name_suffixes)

    def normalize_address(self, text: str) -> str:
        return strip_phrases(normalize_text(text), self._address_pattern)

    def normalize_name(self, text: str) -> str:
        return strip_phrases(normalize_text(text), self._name_pattern)


def tokens(text: str, normalizer: Callable[[str], str] = normalize_text) -> Set[str]:
    normalized = normalizer(text or '')
    return set(normalized.split()) if normalized else set()


def token_similarity(a: str, b: str, normalizer: Callable[[str], str] = normalize_text) -> float:
    """
    Jaccard similarity of the whitespace token sets of two strings

    Returns 0.0 when either side has no tokens after normalization, so two
    empty strings are never considered similar.
    """
    tokens_a = tokens(a, normalizer)
    tokens_b = tokens(b, normalizer)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def address_similarity(a: str, b: str, rules: NormalizationRules) -> float:
    return token_similarity(a, b, rules.normalize_address)


def name_similarity(a: str, b: str, rules: NormalizationRules) -> float:
    return token_similarity(a, b, rules.normalize_name)
