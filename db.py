#!/usr/bin/env python3
"""
Place Store Database Module
Supabase-backed places, cities and categories for the dev and prod environments
"""
import logging
from typing import List, Dict, Any, Optional, Set, Tuple

from supabase import create_client, Client, ClientOptions
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import get_config
from scripts.place_sync.errors import (
    ConfigurationError, DatabaseError, MissingTableError, RetryableError,
)
from scripts.place_sync.models import (
    CanonicalPlace, STATUS_ACTIVE, STATUS_INACTIVE, STATUS_REMOVED, point_wkt, utc_now_iso,
)

logger = logging.getLogger(__name__)

# undefined_table from Postgres, and PostgREST's "not in schema cache"
MISSING_TABLE_CODES = {'42P01', 'PGRST205'}

PAGE_SIZE = 1000


def _error_code(error: Exception) -> Optional[str]:
    code = getattr(error, 'code', None)
    if code:
        return str(code)
    if error.args and isinstance(error.args[0], dict):
        return error.args[0].get('code')
    return None


def classify_error(error: Exception, context: str) -> DatabaseError:
    """Map a client exception onto the database error hierarchy"""
    if isinstance(error, DatabaseError):
        return error
    code = _error_code(error)
    if code in MISSING_TABLE_CODES:
        return MissingTableError(f"{context}: table missing ({code})")

    error_str = str(error).lower()
    if 'connection' in error_str or 'network' in error_str or 'timeout' in error_str:
        return RetryableError(f"{context}: connection issue: {error}")
    if 'rate limit' in error_str or '429' in error_str:
        return RetryableError(f"{context}: rate limit: {error}")
    return DatabaseError(f"{context}: {error}")


class PlaceStore:
    """Persistent store of canonical places in one Supabase project"""

    def __init__(self, client: Client, name: str = 'dev', places_table: str = 'places'):
        self.client = client
        self.name = name
        self.places_table = places_table

    @classmethod
    def for_environment(cls, environment: str = 'dev') -> 'PlaceStore':
        """Create a store for 'dev' or 'prod' from the environment credentials"""
        config = get_config()
        url, key = config.supabase_credentials(environment)
        if not url or not key:
            env = environment.upper()
            raise ConfigurationError(
                f"Supabase {environment} credentials not configured "
                f"(SUPABASE_{env}_URL / SUPABASE_{env}_KEY)")

        options = ClientOptions(postgrest_client_timeout=config.store.timeout_s)
        client = create_client(url, key, options=options)
        logger.info(f"Connected to {environment} Place Store")
        return cls(client, name=environment, places_table=config.store.places_table)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(RetryableError),
        reraise=True,
    )
    def _execute(self, query, context: str):
        try:
            return query.execute()
        except Exception as e:
            raise classify_error(e, context) from e

    # =============================================================================
    # PLACE OPERATIONS
    # =============================================================================

    def get_place(self, source: str, source_id: str) -> Optional[CanonicalPlace]:
        """Look up a place by its natural key"""
        result = self._execute(
            self.client.table(self.places_table)
                .select('*')
                .eq('source', source)
                .eq('source_id', source_id)
                .limit(1),
            f"get_place {source}/{source_id}",
        )
        return CanonicalPlace.from_row(result.data[0]) if result.data else None

    def get_places(self, city_id: Optional[str] = None, source: Optional[str] = None,
                   status: Optional[str] = None,
                   category_ids: Optional[List[str]] = None) -> List[CanonicalPlace]:
        """All places matching the filters, paged through PostgREST's row limit"""
        if category_ids is not None and not category_ids:
            return []
        places = []
        start = 0
        while True:
            query = self.client.table(self.places_table).select('*')
            if city_id:
                query = query.eq('city_id', city_id)
            if source:
                query = query.eq('source', source)
            if status:
                query = query.eq('status', status)
            if category_ids:
                query = query.in_('category_id', list(category_ids))
            result = self._execute(query.range(start, start + PAGE_SIZE - 1),
                                   f"get_places city={city_id} source={source}")
            rows = result.data or []
            places.extend(CanonicalPlace.from_row(row) for row in rows)
            if len(rows) < PAGE_SIZE:
                return places
            start += PAGE_SIZE

    def get_active_places(self, city_id: str, source: str,
                          category_ids: Optional[List[str]] = None) -> List[CanonicalPlace]:
        return self.get_places(city_id=city_id, source=source, status=STATUS_ACTIVE,
                               category_ids=category_ids)

    def get_existing_keys(self, source: str) -> Set[Tuple[str, str]]:
        """Natural keys already stored for a source, any status"""
        keys = set()
        start = 0
        while True:
            result = self._execute(
                self.client.table(self.places_table)
                    .select('source_id')
                    .eq('source', source)
                    .range(start, start + PAGE_SIZE - 1),
                f"get_existing_keys {source}",
            )
            rows = result.data or []
            keys.update((source, row['source_id']) for row in rows)
            if len(rows) < PAGE_SIZE:
                return keys
            start += PAGE_SIZE

    def insert_place(self, row: Dict[str, Any]) -> Optional[str]:
        result = self._execute(self.client.table(self.places_table).insert(row),
                               f"insert_place {row.get('source_id')}")
        return result.data[0].get('id') if result.data else None

    def update_place(self, place_id: str, changes: Dict[str, Any]):
        self._execute(self.client.table(self.places_table).update(changes).eq('id', place_id),
                      f"update_place {place_id}")

    def mark_inactive(self, place_ids: List[str]) -> int:
        """Flip places to inactive one by one; returns how many succeeded"""
        marked = 0
        for place_id in place_ids:
            try:
                self.update_place(place_id, {'status': STATUS_INACTIVE, 'updated_at': utc_now_iso()})
                marked += 1
            except DatabaseError as e:
                logger.error(f"Failed to mark place {place_id} inactive: {e}")
        return marked

    def soft_delete_place(self, place_id: str, reason: str):
        self.update_place(place_id, {
            'status': STATUS_REMOVED,
            'removed_at': utc_now_iso(),
            'removed_reason': reason,
            'updated_at': utc_now_iso(),
        })

    def hard_delete_place(self, place_id: str):
        self._execute(self.client.table(self.places_table).delete().eq('id', place_id),
                      f"hard_delete_place {place_id}")

    # =============================================================================
    # USER CONTENT
    # =============================================================================

    def has_rows(self, table: str, filters: Dict[str, Any]) -> bool:
        """True if any row in table matches all filters; raises MissingTableError"""
        query = self.client.table(table).select('id')
        for column, value in filters.items():
            query = query.eq(column, value)
        result = self._execute(query.limit(1), f"has_rows {table}")
        return bool(result.data)

    # =============================================================================
    # REFERENCE DATA
    # =============================================================================

    def seed_cities(self, cities: Dict[str, Any]) -> int:
        """Create missing city rows; returns how many were created"""
        created = 0
        for city_id, city in cities.items():
            result = self._execute(self.client.table('cities').select('id').eq('id', city_id).limit(1),
                                   f"seed_cities {city_id}")
            if result.data:
                logger.debug(f"City exists: {city.name}")
                continue

            lat, lon = city.bounds.center
            try:
                self._execute(self.client.table('cities').insert({
                    'id': city_id,
                    'name': city.name,
                    'country': city.country,
                    'center': point_wkt(lat, lon),
                    'enabled': True,
                }), f"seed_cities {city_id}")
                created += 1
                logger.info(f"Created city: {city.name}")
            except DatabaseError as e:
                logger.error(f"Error creating city {city_id}: {e}")
        return created

    def seed_categories(self, categories: List[Dict[str, Any]]) -> Dict[str, str]:
        """Create missing categories; returns category name → id"""
        category_ids = {}
        for category in categories:
            name = category['name']
            result = self._execute(
                self.client.table('categories').select('id, name').eq('name', name).limit(1),
                f"seed_categories {name}",
            )
            if result.data:
                category_ids[name] = result.data[0]['id']
                continue

            try:
                created = self._execute(self.client.table('categories').insert(category),
                                        f"seed_categories {name}")
                if created.data:
                    category_ids[name] = created.data[0]['id']
                    logger.info(f"Created category: {name}")
            except DatabaseError as e:
                logger.error(f"Error creating category {name}: {e}")
        return category_ids
