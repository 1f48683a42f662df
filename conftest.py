#!/usr/bin/env python3
"""
Shared pytest fixtures for the place sync pipeline
In-memory Place Store with the same surface as db.PlaceStore
"""
import uuid
import threading
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from scripts.place_sync.errors import DatabaseError, MissingTableError
from scripts.place_sync.models import (
    CanonicalPlace, CandidateRecord, STATUS_ACTIVE, STATUS_INACTIVE, STATUS_REMOVED, utc_now_iso,
)


class InMemoryPlaceStore:
    """Dict-backed stand-in for PlaceStore"""

    def __init__(self, name: str = 'dev'):
        self.name = name
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.cities: Dict[str, Dict[str, Any]] = {}
        self.categories: Dict[str, str] = {}
        self.content: Dict[str, List[Dict[str, Any]]] = {}
        self.missing_tables: Set[str] = set()
        self.failing_tables: Set[str] = set()
        self.fail_source_ids: Set[str] = set()
        self.deleted: List[str] = []
        self.lock = threading.Lock()

    def add_place(self, source: str, source_id: str, name: str = 'Cafe', lat: float = 40.4,
                  lon: float = -3.7, city_id: str = 'madrid', status: str = STATUS_ACTIVE,
                  address: str = '', category: Optional[str] = 'Regular Cafe') -> str:
        place_id = str(uuid.uuid4())
        category_id = self.categories.setdefault(category, f"cat-{len(self.categories) + 1}") if category else None
        self.rows[place_id] = {
            'id': place_id, 'city_id': city_id, 'category_id': category_id,
            'source': source, 'source_id': source_id,
            'name': name, 'address': address, 'location': f'POINT({lon} {lat})',
            'metadata': {}, 'status': status,
        }
        return place_id

    def row_for(self, source: str, source_id: str) -> Optional[Dict[str, Any]]:
        for row in self.rows.values():
            if row['source'] == source and row['source_id'] == source_id:
                return row
        return None

    # PlaceStore surface

    def get_place(self, source: str, source_id: str) -> Optional[CanonicalPlace]:
        if source_id in self.fail_source_ids:
            raise DatabaseError(f"lookup failed for {source_id}")
        row = self.row_for(source, source_id)
        return CanonicalPlace.from_row(row) if row else None

    def get_places(self, city_id=None, source=None, status=None, category_ids=None) -> List[CanonicalPlace]:
        return [
            CanonicalPlace.from_row(row) for row in self.rows.values()
            if (city_id is None or row['city_id'] == city_id)
            and (source is None or row['source'] == source)
            and (status is None or row['status'] == status)
            and (category_ids is None or row.get('category_id') in category_ids)
        ]

    def get_active_places(self, city_id: str, source: str, category_ids=None) -> List[CanonicalPlace]:
        return self.get_places(city_id=city_id, source=source, status=STATUS_ACTIVE, category_ids=category_ids)

    def get_existing_keys(self, source: str) -> Set[Tuple[str, str]]:
        return {(r['source'], r['source_id']) for r in self.rows.values() if r['source'] == source}

    def insert_place(self, row: Dict[str, Any]) -> str:
        with self.lock:
            if self.row_for(row['source'], row['source_id']):
                raise DatabaseError("duplicate key value violates unique constraint")
            place_id = str(uuid.uuid4())
            self.rows[place_id] = dict(row, id=place_id)
            return place_id

    def update_place(self, place_id: str, changes: Dict[str, Any]):
        self.rows[place_id].update(changes)

    def mark_inactive(self, place_ids: List[str]) -> int:
        for place_id in place_ids:
            self.update_place(place_id, {'status': STATUS_INACTIVE, 'updated_at': utc_now_iso()})
        return len(place_ids)

    def soft_delete_place(self, place_id: str, reason: str):
        self.update_place(place_id, {'status': STATUS_REMOVED, 'removed_at': utc_now_iso(),
                                     'removed_reason': reason})

    def hard_delete_place(self, place_id: str):
        del self.rows[place_id]
        self.deleted.append(place_id)

    def has_rows(self, table: str, filters: Dict[str, Any]) -> bool:
        if table in self.missing_tables:
            raise MissingTableError(f"{table} missing")
        if table in self.failing_tables:
            raise DatabaseError(f"{table} query failed")
        return any(all(row.get(k) == v for k, v in filters.items())
                   for row in self.content.get(table, []))

    def seed_cities(self, cities: Dict[str, Any]) -> int:
        created = 0
        for city_id, city in cities.items():
            if city_id not in self.cities:
                self.cities[city_id] = {'id': city_id, 'name': city.name}
                created += 1
        return created

    def seed_categories(self, categories: List[Dict[str, Any]]) -> Dict[str, str]:
        for category in categories:
            self.categories.setdefault(category['name'], f"cat-{len(self.categories) + 1}")
        return dict(self.categories)


def make_candidate(source_id: str, name: str = 'Hola Coffee', lat: float = 40.4168,
                   lon: float = -3.7038, address: str = 'Calle Mayor 1, Madrid',
                   source: str = 'google_places', **kwargs) -> CandidateRecord:
    return CandidateRecord(source=source, source_id=source_id, name=name, address=address,
                           lat=lat, lon=lon, category=kwargs.pop('category', 'Regular Cafe'), **kwargs)


@pytest.fixture
def store():
    return InMemoryPlaceStore('dev')


@pytest.fixture
def prod_store():
    return InMemoryPlaceStore('prod')
