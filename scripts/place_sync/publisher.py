#!/usr/bin/env python3
"""
Publish Workflow - pushes reviewed staging batches into a Place Store
Insert-or-update by (source, source_id), refresh-mode staleness, dev → prod promotion
"""
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import BatchInProgressError, PendingReviewError
from .models import CandidateRecord, StagingBatch, STATUS_ACTIVE, point_wkt, utc_now_iso
from .retention import RetentionGuard

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    """Outcome of publishing one batch to one store"""
    store_name: str
    inserted: int = 0
    updated: int = 0
    errors: int = 0
    marked_inactive: int = 0
    staleness_skipped: Optional[str] = None

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.errors


class PublishWorkflow:
    """Publishes staging batches; one writer per (store, batch) at a time"""

    _in_flight = set()
    _in_flight_lock = threading.Lock()

    def __init__(self, store, category_ids: Optional[Dict[str, str]] = None,
                 default_category: str = "Regular Cafe"):
        self.store = store
        self.category_ids = category_ids or {}
        self.default_category = default_category

    # =============================================================================
    # STORE PREPARATION
    # =============================================================================

    def prepare_store(self, cities: Dict[str, Any], categories: List[Dict[str, Any]]) -> Dict[str, str]:
        """Seed cities and categories (idempotent) and cache the category ids"""
        created = self.store.seed_cities(cities)
        self.category_ids = self.store.seed_categories(categories)
        logger.info(f"Prepared {self.store.name} store: {created} cities created, "
                    f"{len(self.category_ids)} categories available")
        return self.category_ids

    def category_id_for(self, category: str) -> Optional[str]:
        return self.category_ids.get(category) or self.category_ids.get(self.default_category)

    def to_row(self, candidate: CandidateRecord, city_id: str) -> Dict[str, Any]:
        """Place Store row for a staged candidate"""
        return {
            'city_id': city_id,
            'category_id': self.category_id_for(candidate.category),
            'source': candidate.source,
            'source_id': candidate.source_id,
            'name': candidate.name,
            'address': candidate.address,
            'location': point_wkt(candidate.lat, candidate.lon),
            'metadata': candidate.metadata(),
            'status': STATUS_ACTIVE,
        }

    # =============================================================================
    # PUBLISH
    # =============================================================================

    def publish(self, batch: StagingBatch, force_staleness: bool = False) -> PublishResult:
        """
        Insert or update every staged place, then reconcile staleness

        Args:
            batch: Reviewed staging batch
            force_staleness: Mark unseen places inactive even if the fetch was incomplete

        Returns:
            PublishResult with inserted/updated/errors and marked_inactive counts

        Raises:
            PendingReviewError: borderline matches are still awaiting review
            BatchInProgressError: the same batch is already being published to this store
        """
        if batch.pending_review:
            raise PendingReviewError(
                f"Batch {batch.batch_id} has {len(batch.pending_review)} borderline matches awaiting review")

        lock_key = (self.store.name, batch.batch_id)
        with PublishWorkflow._in_flight_lock:
            if lock_key in PublishWorkflow._in_flight:
                raise BatchInProgressError(f"Batch {batch.batch_id} is already being published to {self.store.name}")
            PublishWorkflow._in_flight.add(lock_key)

        try:
            result = self._publish_places(batch)
            if batch.is_refresh:
                self._reconcile_staleness(batch, result, force_staleness)
            return result
        finally:
            with PublishWorkflow._in_flight_lock:
                PublishWorkflow._in_flight.discard(lock_key)

    def _publish_places(self, batch: StagingBatch) -> PublishResult:
        result = PublishResult(store_name=self.store.name)
        logger.info(f"📤 Publishing {len(batch.places)} places from {batch.batch_id} to {self.store.name}")

        for candidate in batch.places:
            try:
                now = utc_now_iso()
                row = self.to_row(candidate, batch.city_id)
                existing = self.store.get_place(candidate.source, candidate.source_id)
                if existing:
                    self.store.update_place(existing.id, {
                        'name': row['name'],
                        'address': row['address'],
                        'location': row['location'],
                        'metadata': row['metadata'],
                        'status': row['status'],
                        'updated_at': now,
                        'last_seen_at': now,
                    })
                    result.updated += 1
                else:
                    row.update({
                        'is_new': True,
                        'created_at': now,
                        'updated_at': now,
                        'last_seen_at': now,
                    })
                    self.store.insert_place(row)
                    result.inserted += 1
            except Exception as e:
                logger.error(f"Error publishing {candidate.name} ({candidate.source_id}): {e}")
                result.errors += 1

        logger.info(f"{self.store.name} results: inserted={result.inserted}, "
                    f"updated={result.updated}, errors={result.errors}")
        return result

    def _reconcile_staleness(self, batch: StagingBatch, result: PublishResult, force: bool):
        if result.errors:
            result.staleness_skipped = f"{result.errors} publish errors"
        elif not batch.fetch_complete and not force:
            result.staleness_skipped = "fetch was incomplete (limit, failed cells or deadline)"
        else:
            result.marked_inactive = self.mark_unseen_inactive(batch)
            return
        logger.warning(f"Skipping stale-place reconciliation for {batch.batch_id}: {result.staleness_skipped}")

    def staleness_scope(self, batch: StagingBatch) -> Optional[List[str]]:
        """Category ids a refresh may mark inactive; None when the store has no category map"""
        names = batch.staleness_categories
        if not self.category_ids or not names:
            return None
        return sorted({cid for cid in (self.category_id_for(name) for name in names) if cid})

    def mark_unseen_inactive(self, batch: StagingBatch) -> int:
        """
        Mark active places the fetch did not see; never deletes

        Scoped to the batch's city, source and categories, so a fetch for one
        kind of place never retires places of another kind.
        """
        seen = set(batch.seen_source_ids) | {p.source_id for p in batch.places}
        if not seen:
            logger.warning(f"Batch {batch.batch_id} saw no places, not marking anything inactive")
            return 0

        active = self.store.get_active_places(batch.city_id, batch.source,
                                              category_ids=self.staleness_scope(batch))
        unseen = [p for p in active if p.source_id not in seen]
        if not unseen:
            logger.info(f"All {len(active)} active places were seen in the fetch")
            return 0

        logger.info(f"Found {len(unseen)} places not in fetch results:")
        for place in unseen[:5]:
            logger.info(f"  - {place.name}")
        if len(unseen) > 5:
            logger.info(f"  ... and {len(unseen) - 5} more")

        marked = self.store.mark_inactive([p.id for p in unseen])
        logger.info(f"Marked {marked} places as inactive")
        return marked

    def promote(self, batch: StagingBatch, target_store, cities: Optional[Dict[str, Any]] = None,
                categories: Optional[List[Dict[str, Any]]] = None,
                force_staleness: bool = False) -> PublishResult:
        """Publish the same batch to a second store (prod) with identical logic"""
        target = PublishWorkflow(target_store, default_category=self.default_category)
        if cities is not None and categories is not None:
            target.prepare_store(cities, categories)
        logger.info(f"🚀 Promoting {batch.batch_id} to {target_store.name}")
        return target.publish(batch, force_staleness=force_staleness)

    # =============================================================================
    # REMOVAL
    # =============================================================================

    def remove_place(self, source: str, source_id: str, reason: str,
                     guard: Optional[RetentionGuard] = None) -> Optional[str]:
        """Remove a place through the retention guard; returns 'soft', 'hard' or None if absent"""
        place = self.store.get_place(source, source_id)
        if place is None:
            logger.warning(f"No place found for {source}/{source_id}")
            return None
        guard = guard or RetentionGuard(self.store)
        return guard.delete_place(place, reason)
