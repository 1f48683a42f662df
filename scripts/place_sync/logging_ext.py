#!/usr/bin/env python3
"""
Logging extensions for the place sync pipeline
JSONL audit writer and run summary counters for operator reporting
"""
import os
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, TextIO

logger = logging.getLogger(__name__)


class RunSummary:
    """Run summary with counters for one pipeline invocation"""

    def __init__(self, title: str = "PLACE SYNC - RUN SUMMARY"):
        self.title = title
        self.fetched = 0
        self.cells_searched = 0
        self.failed_cells = 0
        self.limit_reached = False
        self.below_min_rating = 0
        self.already_ingested = 0
        self.duplicates = 0
        self.borderline = 0
        self.new = 0
        self.staged = 0
        self.inserted = 0
        self.updated = 0
        self.errors = 0
        self.marked_inactive = 0
        self.soft_deleted = 0
        self.hard_deleted = 0
        self.notes = []

    def record_fetch(self, fetch_result):
        self.fetched = len(fetch_result.places)
        self.cells_searched = fetch_result.cells_searched
        self.failed_cells = len(fetch_result.failed_cells)
        self.limit_reached = fetch_result.limit_reached

    def record_dedup(self, dedup_result):
        counts = dedup_result.counts()
        self.duplicates = counts['duplicates']
        self.borderline = counts['borderline']
        self.new = counts['new']
        self.already_ingested = counts['already_ingested']

    def record_publish(self, publish_result):
        """Accumulate, so dev publish and prod promotion can share one summary"""
        self.inserted += publish_result.inserted
        self.updated += publish_result.updated
        self.errors += publish_result.errors
        self.marked_inactive += publish_result.marked_inactive

    def add_note(self, note: str):
        self.notes.append(note)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in vars(self).items() if k != 'title'}

    def print_summary(self):
        """Print formatted summary to console"""
        print("\n" + "=" * 50)
        print(self.title)
        print("=" * 50)
        if self.cells_searched:
            print(f"Cells searched: {self.cells_searched} ({self.failed_cells} failed)")
        print(f"Fetched: {self.fetched}")
        if self.below_min_rating:
            print(f"Below min rating: {self.below_min_rating}")
        print(f"Already ingested: {self.already_ingested}")
        print(f"Duplicates: {self.duplicates}")
        print(f"Borderline: {self.borderline}")
        print(f"New: {self.new}")
        print(f"Staged: {self.staged}")
        if self.inserted or self.updated or self.errors:
            print(f"Inserted/updated/errors: {self.inserted}/{self.updated}/{self.errors}")
        if self.marked_inactive:
            print(f"Marked inactive: {self.marked_inactive}")
        if self.soft_deleted or self.hard_deleted:
            print(f"Soft/hard deleted: {self.soft_deleted}/{self.hard_deleted}")
        if self.limit_reached:
            print("⚠️  Result limit reached - there may be more places")
        for note in self.notes:
            print(f"- {note}")
        print("=" * 50)


class JSONLWriter:
    """JSONL writer with append-only mode and immediate flushing"""

    def __init__(self, filepath: str, enabled: bool = True):
        self.filepath = filepath
        self.enabled = enabled
        self.jsonl_file: Optional[TextIO] = None

    def initialize(self):
        """Open the JSONL file for appending if enabled"""
        if not self.enabled or self.jsonl_file:
            return

        try:
            directory = os.path.dirname(self.filepath)
            if directory:
                os.makedirs(directory, exist_ok=True)
            self.jsonl_file = open(self.filepath, 'a', encoding='utf-8')
            logger.debug(f"JSONL output initialized: {self.filepath}")
        except Exception as e:
            logger.error(f"Failed to initialize JSONL output {self.filepath}: {e}")
            self.jsonl_file = None

    def write(self, entry: Dict[str, Any]):
        """Append one entry with a UTC timestamp"""
        if not self.enabled:
            return
        self.initialize()
        if not self.jsonl_file:
            return

        try:
            line = dict(entry, ts=datetime.now(timezone.utc).isoformat())
            self.jsonl_file.write(json.dumps(line, ensure_ascii=False) + '\n')
            self.jsonl_file.flush()
        except Exception as e:
            logger.error(f"Failed to write JSONL entry: {e}")

    def write_review_decision(self, batch_id: str, candidate, match, decision: str):
        self.write({
            'batch_id': batch_id,
            'source': candidate.source,
            'source_id': candidate.source_id,
            'name': candidate.name,
            'decision': decision,
            'match': match.to_dict(),
        })

    def close(self):
        """Close JSONL output file"""
        if self.jsonl_file:
            try:
                self.jsonl_file.close()
                self.jsonl_file = None
            except Exception as e:
                logger.error(f"Error closing JSONL file: {e}")
