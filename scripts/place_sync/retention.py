#!/usr/bin/env python3
"""
Retention Guard - protects places that carry user content from hard deletion
Four dependent-content checks run concurrently; any hit forces a soft delete
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from .errors import MissingTableError
from .models import CanonicalPlace

logger = logging.getLogger(__name__)

SOFT_DELETE = 'soft'
HARD_DELETE = 'hard'

# (detail flag, table, filter builder)
CONTENT_CHECKS: List[Tuple[str, str, Any]] = [
    ('has_comments', 'comments', lambda place_id: {'entity_type': 'place', 'entity_id': place_id}),
    ('has_attachments', 'attachments', lambda place_id: {'place_id': place_id}),
    ('is_in_list', 'list_items', lambda place_id: {'place_id': place_id}),
    ('is_in_scouting_trip', 'scouting_reports', lambda place_id: {'place_id': place_id}),
]


@dataclass
class UserContentCheck:
    """Whether a place has dependent user content, with per-kind details"""
    has_user_content: bool
    details: Dict[str, bool] = field(default_factory=dict)

    def summary(self) -> str:
        if not self.has_user_content:
            return "No user content"
        labels = {
            'has_comments': 'comments',
            'has_attachments': 'attachments',
            'is_in_list': 'in lists',
            'is_in_scouting_trip': 'in scouting trips',
        }
        found = [labels[k] for k, v in self.details.items() if v]
        return "Has " + ", ".join(found)


class RetentionGuard:
    """Decides between soft and hard delete for a place"""

    def __init__(self, store, max_workers: int = 4):
        self.store = store
        self.max_workers = max_workers

    def _check(self, table: str, filters: Dict[str, Any]) -> bool:
        try:
            return self.store.has_rows(table, filters)
        except MissingTableError:
            logger.debug(f"Table {table} not present, treating as no content")
            return False

    def assess_deletable(self, place_id: str) -> UserContentCheck:
        """
        Run every content check concurrently and OR the answers

        A missing table counts as "no content". Any other check failure is
        raised so the caller can fall back to a soft delete.
        """
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                flag: executor.submit(self._check, table, build_filters(place_id))
                for flag, table, build_filters in CONTENT_CHECKS
            }
            details = {flag: future.result() for flag, future in futures.items()}

        return UserContentCheck(has_user_content=any(details.values()), details=details)

    def delete_place(self, place: CanonicalPlace, reason: str) -> str:
        """Soft delete when user content exists or cannot be ruled out, hard delete otherwise"""
        try:
            check = self.assess_deletable(place.id)
        except Exception as e:
            logger.error(f"Content check failed for {place.name} ({place.id}), soft deleting: {e}")
            self.store.soft_delete_place(place.id, reason)
            return SOFT_DELETE

        if check.has_user_content:
            logger.info(f"🛡️  {place.name}: {check.summary()} - soft delete")
            self.store.soft_delete_place(place.id, reason)
            return SOFT_DELETE

        logger.info(f"🗑️  {place.name}: no user content - hard delete")
        self.store.hard_delete_place(place.id)
        return HARD_DELETE
