#!/usr/bin/env python3
"""
Deduplication engine for staged places
Tiered proximity + text similarity rules, plus exact natural-key matching
"""
import math
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import ConfigurationError
from .models import (
    CandidateMatch, CandidateRecord, CanonicalPlace, MatchResult, MatchTarget,
    STATUS_ACTIVE, TIER_BORDERLINE, TIER_NONE, TIER_STRONG,
)
from .similarity import (
    EARTH_RADIUS_M, NormalizationRules, address_similarity, haversine_distance, name_similarity,
)

logger = logging.getLogger(__name__)

# haversine length of one degree of latitude; the prefilter window gets 1% slack
METERS_PER_DEGREE_LAT = EARTH_RADIUS_M * math.pi / 180


@dataclass
class DedupThresholds:
    """Distance bands (meters) and similarity cut-offs for duplicate detection"""
    strong_distance_m: float = 50
    max_distance_m: float = 100
    address_threshold: float = 0.6
    name_threshold: float = 0.5
    far_name_threshold: float = 0.7
    borderline_name_floor: float = 0.2
    borderline_min_distance_m: float = 50

    def validate(self) -> 'DedupThresholds':
        if not 0 <= self.strong_distance_m <= self.max_distance_m:
            raise ConfigurationError(
                f"strong_distance_m ({self.strong_distance_m}) must be between 0 and "
                f"max_distance_m ({self.max_distance_m})")
        if not 0 <= self.borderline_min_distance_m <= self.max_distance_m:
            raise ConfigurationError(
                f"borderline_min_distance_m ({self.borderline_min_distance_m}) must be between 0 and "
                f"max_distance_m ({self.max_distance_m})")
        for name in ('address_threshold', 'name_threshold', 'far_name_threshold', 'borderline_name_floor'):
            value = getattr(self, name)
            if not 0 <= value <= 1:
                raise ConfigurationError(f"{name} must be within [0, 1], got {value}")
        return self


def classify_pair(distance: float, name_score: float, address_score: float,
                  thresholds: DedupThresholds) -> str:
    """Confidence tier for one candidate/target pair"""
    t = thresholds
    if distance <= t.strong_distance_m:
        if address_score >= t.address_threshold or name_score >= t.name_threshold:
            return TIER_STRONG
    elif distance <= t.max_distance_m and name_score >= t.far_name_threshold:
        return TIER_STRONG

    if t.borderline_min_distance_m < distance <= t.max_distance_m and name_score > t.borderline_name_floor:
        return TIER_BORDERLINE
    return TIER_NONE


class Matcher:
    """Common interface: is this candidate already known?"""

    kind = 'base'

    def match(self, candidate: CandidateRecord) -> MatchResult:
        raise NotImplementedError


class FuzzyMatcher(Matcher):
    """Geospatial + text similarity matching against a target set"""

    kind = 'fuzzy'

    def __init__(self, targets: Iterable[MatchTarget], thresholds: Optional[DedupThresholds] = None,
                 rules: Optional[NormalizationRules] = None):
        self.thresholds = thresholds or DedupThresholds()
        self.rules = rules or NormalizationRules()
        self.targets = [t for t in targets if t.lat is not None and t.lon is not None]
        self._lat_window = 1.01 * self.thresholds.max_distance_m / METERS_PER_DEGREE_LAT

    def _candidates_near(self, candidate: CandidateRecord):
        for target in self.targets:
            if abs(target.lat - candidate.lat) > self._lat_window:
                continue
            # canonical rows from the candidate's own source are matched by key, not fuzzily
            if isinstance(target, CanonicalPlace) and target.source == candidate.source:
                continue
            yield target

    def match(self, candidate: CandidateRecord) -> MatchResult:
        """
        Compare a candidate against every target within the outer distance band

        A strong match reports the closest strongly-matching target. A borderline
        result carries exactly one target: the highest name score, ties broken
        by distance. Otherwise the nearest target's scores are reported.
        """
        strong: Optional[Tuple[float, MatchTarget, float, float]] = None
        borderline: Optional[Tuple[float, MatchTarget, float, float]] = None
        nearest: Optional[Tuple[float, MatchTarget, float, float]] = None

        for target in self._candidates_near(candidate):
            distance = haversine_distance(candidate.lat, candidate.lon, target.lat, target.lon)
            if distance > self.thresholds.max_distance_m:
                continue

            name_score = name_similarity(candidate.name, target.name, self.rules)
            address_score = address_similarity(candidate.address, target.address, self.rules)
            scored = (distance, target, name_score, address_score)

            if nearest is None or distance < nearest[0]:
                nearest = scored

            tier = classify_pair(distance, name_score, address_score, self.thresholds)
            if tier == TIER_STRONG:
                if strong is None or distance < strong[0]:
                    strong = scored
            elif tier == TIER_BORDERLINE:
                if (borderline is None or name_score > borderline[2]
                        or (name_score == borderline[2] and distance < borderline[0])):
                    borderline = scored

        if strong is not None:
            return self._result(True, TIER_STRONG, strong)
        if borderline is not None:
            return self._result(False, TIER_BORDERLINE, borderline)
        if nearest is not None:
            return self._result(False, TIER_NONE, nearest, keep_target=False)
        return MatchResult(is_duplicate=False, confidence_tier=TIER_NONE, match_kind=self.kind)

    def _result(self, is_duplicate: bool, tier: str, scored, keep_target: bool = True) -> MatchResult:
        distance, target, name_score, address_score = scored
        return MatchResult(
            is_duplicate=is_duplicate,
            confidence_tier=tier,
            matched_against=target if keep_target else None,
            distance_meters=distance,
            name_score=name_score,
            address_score=address_score,
            match_kind=self.kind,
        )


class ExactKeyMatcher(Matcher):
    """(source, source_id) membership: has this upstream record been ingested already?"""

    kind = 'exact_key'

    def __init__(self, places: Iterable[Union[CanonicalPlace, Tuple[str, str]]]):
        self.index: Dict[Tuple[str, str], Optional[CanonicalPlace]] = {}
        for place in places:
            if isinstance(place, CanonicalPlace):
                self.index[place.key] = place
            else:
                self.index[tuple(place)] = None

    def match(self, candidate: CandidateRecord) -> MatchResult:
        if candidate.key not in self.index:
            return MatchResult(is_duplicate=False, confidence_tier=TIER_NONE, match_kind=self.kind)
        return MatchResult(
            is_duplicate=True,
            confidence_tier=TIER_STRONG,
            matched_against=self.index[candidate.key],
            distance_meters=None,
            name_score=1.0,
            address_score=1.0,
            match_kind=self.kind,
        )


class ReviewDecision(Enum):
    ACCEPT = 'accept'
    REJECT = 'reject'

    @classmethod
    def coerce(cls, value) -> 'ReviewDecision':
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            return cls.ACCEPT if value else cls.REJECT
        return cls(str(value).lower())


# Operator callback for a borderline match: accept = same place, reject = different place
BorderlineResolver = Callable[[CandidateRecord, MatchResult], Union[ReviewDecision, bool]]


def review_borderline(item: CandidateMatch, resolve_borderline: BorderlineResolver) -> ReviewDecision:
    """Ask the resolver about one borderline match; accepted ones become duplicates"""
    decision = ReviewDecision.coerce(resolve_borderline(item.candidate, item.match))
    item.match.is_duplicate = decision == ReviewDecision.ACCEPT
    return decision


@dataclass
class DedupResult:
    """Classification of a candidate set"""
    duplicates: List[CandidateMatch] = field(default_factory=list)
    borderline: List[CandidateMatch] = field(default_factory=list)
    new: List[CandidateRecord] = field(default_factory=list)
    already_ingested: List[CandidateMatch] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            'duplicates': len(self.duplicates),
            'borderline': len(self.borderline),
            'new': len(self.new),
            'already_ingested': len(self.already_ingested),
        }


class DeduplicationEngine:
    """Classifies candidates as duplicate, borderline or new without side effects"""

    def __init__(self, thresholds: Optional[DedupThresholds] = None,
                 rules: Optional[NormalizationRules] = None):
        self.thresholds = (thresholds or DedupThresholds()).validate()
        self.rules = rules or NormalizationRules()

    def deduplicate(self, candidates: Sequence[CandidateRecord],
                    reference: Iterable[MatchTarget] = (),
                    existing: Iterable[CanonicalPlace] = (),
                    existing_keys: Iterable[Tuple[str, str]] = ()) -> DedupResult:
        """
        Classify candidates against a reference set and the Place Store contents

        Candidates whose natural key is already stored land in already_ingested
        and skip fuzzy matching. Active stored rows from other sources join the
        reference set as fuzzy targets. existing_keys extends the exact-key
        lookup with natural keys stored outside the loaded rows (other cities).
        """
        existing = list(existing)
        key_matcher = ExactKeyMatcher(list(existing_keys) + existing)
        fuzzy_targets = list(reference) + [p for p in existing if p.status == STATUS_ACTIVE]
        fuzzy_matcher = FuzzyMatcher(fuzzy_targets, self.thresholds, self.rules)

        result = DedupResult()
        for candidate in candidates:
            key_match = key_matcher.match(candidate)
            if key_match.is_duplicate:
                result.already_ingested.append(CandidateMatch(candidate, key_match))
                continue

            match = fuzzy_matcher.match(candidate)
            if match.confidence_tier == TIER_STRONG:
                result.duplicates.append(CandidateMatch(candidate, match))
            elif match.confidence_tier == TIER_BORDERLINE:
                result.borderline.append(CandidateMatch(candidate, match))
            else:
                result.new.append(candidate)

        result.borderline.sort(key=lambda item: item.match.distance_meters)

        logger.info(f"Dedup: {len(candidates)} candidates → {result.counts()}")
        return result
