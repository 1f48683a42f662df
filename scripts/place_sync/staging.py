#!/usr/bin/env python3
"""
Staging Gate - file-backed staging batches between fetch and publish
Holds borderline matches until an operator has decided on every one of them
"""
import os
import re
import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple, Union

from .dedup import BorderlineResolver, DedupResult, ReviewDecision, review_borderline
from .errors import PendingReviewError, StagingError
from .logging_ext import JSONLWriter
from .models import (
    CandidateRecord, MODE_NEW, MODE_REFRESH, StagingBatch, utc_now_iso,
)

logger = logging.getLogger(__name__)

FILE_PREFIX = "google-places"

# google-places-madrid-grid6x6-refresh-2026-01-22T16-35-26-029Z
# google-places-madrid-refresh-2026-01-22T16-35-26-029Z
# google-places-madrid-2026-01-22T16-35-26-029Z (legacy)
RE_BATCH_NAME = re.compile(
    rf'^{FILE_PREFIX}-(?P<city>[a-z0-9_]+)-'
    r'(?:(?P<grid>grid\d+x\d+|single)-)?'
    r'(?:(?P<mode>new|refresh)-)?'
    r'(?P<ts>\d{4}-.+)$'
)


def batch_timestamp(now: Optional[datetime] = None) -> str:
    """Filesystem-safe ISO timestamp"""
    now = now or datetime.now(timezone.utc)
    return now.strftime('%Y-%m-%dT%H-%M-%S-') + f"{now.microsecond // 1000:03d}Z"


def build_batch_id(city_id: str, grid_label: str, mode: str, timestamp: Optional[str] = None) -> str:
    return f"{FILE_PREFIX}-{city_id}-{grid_label}-{mode}-{timestamp or batch_timestamp()}"


def parse_batch_id(batch_id: str) -> Tuple[str, str, str]:
    """
    Recover (city_id, grid_label, mode) from a batch id or staging file name

    Raises StagingError for names that are not staging artifacts. Legacy
    names without a mode are treated as new-only unless they contain
    "-refresh-".
    """
    stem = os.path.basename(batch_id)
    if stem.endswith('.json'):
        stem = stem[:-5]
    match = RE_BATCH_NAME.match(stem)
    if not match:
        raise StagingError(f"Not a staging batch name: {batch_id}")
    mode = match.group('mode') or (MODE_REFRESH if '-refresh-' in stem else MODE_NEW)
    return match.group('city'), match.group('grid') or 'single', mode


class StagingGate:
    """Persists staging batches and enforces review before publish"""

    def __init__(self, staging_dir: str, review_log: Optional[JSONLWriter] = None):
        self.staging_dir = staging_dir
        self.review_log = review_log
        self._loaded_paths: Dict[str, str] = {}

    def path_for(self, batch: Union[StagingBatch, str]) -> str:
        batch_id = batch.batch_id if isinstance(batch, StagingBatch) else batch
        if batch_id in self._loaded_paths:
            return self._loaded_paths[batch_id]
        if os.path.sep in batch_id or batch_id.endswith('.json'):
            return batch_id
        return os.path.join(self.staging_dir, f"{batch_id}.json")

    def create_batch(self, city_id: str, source: str, refresh: bool, grid_label: str,
                     seen_source_ids: Optional[List[str]] = None,
                     fetch_complete: bool = True, search_query: Optional[str] = None,
                     categories: Optional[List[str]] = None) -> StagingBatch:
        mode = MODE_REFRESH if refresh else MODE_NEW
        return StagingBatch(
            batch_id=build_batch_id(city_id, grid_label, mode),
            city_id=city_id,
            source=source,
            mode=mode,
            grid_label=grid_label,
            seen_source_ids=list(seen_source_ids or []),
            fetch_complete=fetch_complete,
            search_query=search_query,
            categories=sorted(set(categories or [])),
        )

    def stage(self, batch: StagingBatch, dedup_result: DedupResult) -> StagingBatch:
        """
        Fill a batch from a dedup classification

        New candidates are staged for insert, strong duplicates are kept for
        audit only, borderline ones wait for review. Already-ingested records
        are staged as updates in refresh mode and dropped in new-only mode.
        """
        for candidate in dedup_result.new:
            batch.add_place(candidate)
        if batch.is_refresh:
            for item in dedup_result.already_ingested:
                batch.add_place(item.candidate)
        batch.matched.extend(dedup_result.duplicates)
        batch.pending_review.extend(dedup_result.borderline)
        return batch

    def save(self, batch: StagingBatch) -> str:
        path = self.path_for(batch)
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(batch.to_dict(), f, indent=2, ensure_ascii=False)
        logger.info(f"💾 Staged {len(batch.places)} places ({len(batch.pending_review)} pending review) → {path}")
        return path

    def list_batches(self) -> List[str]:
        """Staging files, newest first"""
        if not os.path.isdir(self.staging_dir):
            return []
        files = [
            os.path.join(self.staging_dir, name)
            for name in os.listdir(self.staging_dir)
            if name.startswith(FILE_PREFIX) and name.endswith('.json')
        ]
        return sorted(files, key=os.path.getmtime, reverse=True)

    def load(self, batch: str) -> StagingBatch:
        """Load by batch id or path; legacy bare-list files become a batch"""
        path = self.path_for(batch)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            raise StagingError(f"Staging file not found: {path}")
        except json.JSONDecodeError as e:
            raise StagingError(f"Invalid JSON in staging file {path}: {e}")

        if isinstance(data, list):
            loaded = self._from_legacy(path, data)
        else:
            try:
                loaded = StagingBatch.from_dict(data)
            except (KeyError, TypeError) as e:
                raise StagingError(f"Malformed staging file {path}: {e}")
        self._loaded_paths[loaded.batch_id] = path
        return loaded

    def _from_legacy(self, path: str, data: List[Dict]) -> StagingBatch:
        batch_id = os.path.basename(path)[:-5]
        city_id, grid_label, mode = parse_batch_id(batch_id)
        places = [CandidateRecord.from_dict(p) for p in data]
        logger.info(f"Loaded legacy staging file {path} ({len(places)} places, mode={mode})")
        return StagingBatch(
            batch_id=batch_id,
            city_id=city_id,
            source=places[0].source if places else 'google_places',
            mode=mode,
            grid_label=grid_label,
            places=places,
            seen_source_ids=[p.source_id for p in places],
        )

    def review(self, batch: StagingBatch, resolve_borderline: BorderlineResolver) -> Dict[str, int]:
        """
        Ask the resolver about every pending borderline match

        Accepted matches are the same physical place and move to matched;
        rejected ones are distinct places and are staged for insert.
        """
        accepted = rejected = 0
        for item in list(batch.pending_review):
            decision = review_borderline(item, resolve_borderline)
            if decision == ReviewDecision.ACCEPT:
                batch.matched.append(item)
                accepted += 1
            else:
                batch.add_place(item.candidate)
                rejected += 1
            batch.pending_review.remove(item)
            if self.review_log:
                self.review_log.write_review_decision(batch.batch_id, item.candidate, item.match,
                                                      decision.value)

        logger.info(f"Review of {batch.batch_id}: {accepted} accepted as duplicates, {rejected} kept as new")
        return {'accepted': accepted, 'rejected': rejected}

    def ready_for_publish(self, batch: StagingBatch) -> StagingBatch:
        if batch.pending_review:
            raise PendingReviewError(
                f"Batch {batch.batch_id} has {len(batch.pending_review)} borderline matches awaiting review")
        return batch

    def record_publish(self, batch: StagingBatch, environment: str, result) -> str:
        """Store a publish outcome in the batch file so promotion can check it later"""
        batch.published[environment] = {
            'at': utc_now_iso(),
            'inserted': result.inserted,
            'updated': result.updated,
            'errors': result.errors,
            'marked_inactive': result.marked_inactive,
        }
        return self.save(batch)

    def delete(self, batch: Union[StagingBatch, str]):
        path = self.path_for(batch)
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"Deleted staging file {path}")
