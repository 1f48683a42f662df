#!/usr/bin/env python3
"""
Error types for the place sync pipeline
Fatal configuration problems vs recoverable per-cell / per-record failures
"""


class PlaceSyncError(Exception):
    """Base place sync error"""
    pass


class ConfigurationError(PlaceSyncError, ValueError):
    """Missing credentials, malformed bounding box, unknown city or bad config file"""
    pass


class FetchError(PlaceSyncError):
    """A search page or grid cell could not be fetched"""
    pass


class StagingError(PlaceSyncError):
    """Staging artifact missing or unreadable"""
    pass


class PendingReviewError(PlaceSyncError):
    """Batch still has borderline matches awaiting an operator decision"""
    pass


class BatchInProgressError(PlaceSyncError):
    """Another publish of the same batch is already running"""
    pass


class DatabaseError(PlaceSyncError):
    """Base Place Store error"""
    pass


class RetryableError(DatabaseError):
    """Temporary error that can be retried"""
    pass


class MissingTableError(DatabaseError):
    """Queried table does not exist in this environment"""
    pass
