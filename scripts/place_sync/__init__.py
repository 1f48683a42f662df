#!/usr/bin/env python3
"""
Place Sync - Modular Components
Grid fetch → deduplication → staging → publish for curated place datasets
"""

# Core components
from .similarity import haversine_distance, token_similarity, normalize_text, NormalizationRules
from .places_client import GooglePlacesClient, RateLimiter
from .grid_fetcher import GridFetcher, FetchSettings, FetchResult, create_grid
from .dedup import (
    DeduplicationEngine, DedupThresholds, DedupResult, FuzzyMatcher, ExactKeyMatcher,
    ReviewDecision,
)
from .staging import StagingGate
from .publisher import PublishWorkflow, PublishResult
from .retention import RetentionGuard, UserContentCheck

# Utilities
from .models import BoundingBox, CandidateRecord, CanonicalPlace, ReferenceRecord, StagingBatch
from .reference import load_reference_csv
from .logging_ext import JSONLWriter, RunSummary
from .errors import (
    PlaceSyncError, ConfigurationError, PendingReviewError, BatchInProgressError,
)

__all__ = [
    'haversine_distance',
    'token_similarity',
    'normalize_text',
    'NormalizationRules',
    'GooglePlacesClient',
    'RateLimiter',
    'GridFetcher',
    'FetchSettings',
    'FetchResult',
    'create_grid',
    'DeduplicationEngine',
    'DedupThresholds',
    'DedupResult',
    'FuzzyMatcher',
    'ExactKeyMatcher',
    'ReviewDecision',
    'StagingGate',
    'PublishWorkflow',
    'PublishResult',
    'RetentionGuard',
    'UserContentCheck',
    'BoundingBox',
    'CandidateRecord',
    'CanonicalPlace',
    'ReferenceRecord',
    'StagingBatch',
    'load_reference_csv',
    'JSONLWriter',
    'RunSummary',
    'PlaceSyncError',
    'ConfigurationError',
    'PendingReviewError',
    'BatchInProgressError',
]
