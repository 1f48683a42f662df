#!/usr/bin/env python3
"""
Reference dataset loader
Semicolon-delimited curated export: name;…;address;lat;lon with a header row
"""
import os
import csv
import logging
from typing import List

from .models import ReferenceRecord

logger = logging.getLogger(__name__)

NAME_COL = 0
ADDRESS_COL = 2
LAT_COL = 3
LON_COL = 4


def load_reference_csv(path: str) -> List[ReferenceRecord]:
    """Load reference records, skipping the header and rows without numeric coordinates"""
    if not os.path.exists(path):
        logger.warning(f"Reference dataset not found: {path}, matching against store only")
        return []

    records = []
    skipped = 0
    with open(path, 'r', encoding='utf-8-sig', newline='') as f:
        reader = csv.reader(f, delimiter=';')
        next(reader, None)
        for row in reader:
            if len(row) <= LON_COL:
                skipped += 1
                continue
            try:
                lat = float(row[LAT_COL])
                lon = float(row[LON_COL])
            except ValueError:
                skipped += 1
                continue
            records.append(ReferenceRecord(
                name=row[NAME_COL].strip(),
                address=row[ADDRESS_COL].strip(),
                lat=lat,
                lon=lon,
            ))

    logger.info(f"Loaded {len(records)} reference places from {path}"
                + (f" ({skipped} rows skipped)" if skipped else ""))
    return records
