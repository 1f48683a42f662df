#!/usr/bin/env python3
"""
Place sync data model
Provider records, staged candidates, reference entries and Place Store rows
"""
import math
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Tuple, Union

from shapely import wkb, wkt
from shapely.geometry import Point, box, shape

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

STATUS_ACTIVE = 'active'
STATUS_INACTIVE = 'inactive'
STATUS_REMOVED = 'removed'

MODE_NEW = 'new'
MODE_REFRESH = 'refresh'

TIER_STRONG = 'strong'
TIER_BORDERLINE = 'borderline'
TIER_NONE = 'none'


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 string"""
    return datetime.now(timezone.utc).isoformat()


def point_wkt(lat: float, lon: float) -> str:
    """WKT point in PostGIS axis order (lon lat)"""
    return Point(lon, lat).wkt


def parse_location(value: Any) -> Tuple[Optional[float], Optional[float]]:
    """
    Parse a PostGIS location column into (lat, lon)

    PostgREST returns geography columns as EWKB hex by default, but views and
    RPCs may hand back WKT or GeoJSON instead.
    """
    if value is None:
        return None, None
    try:
        if isinstance(value, dict):
            geom = shape(value)
        elif isinstance(value, str) and value.strip().upper().startswith(('POINT', 'SRID')):
            text = value.split(';', 1)[1] if value.upper().startswith('SRID') else value
            geom = wkt.loads(text)
        else:
            geom = wkb.loads(value, hex=True)
        return geom.y, geom.x
    except Exception as e:
        logger.warning(f"Could not parse location {value!r}: {e}")
        return None, None


@dataclass(frozen=True)
class ExternalRecord:
    """One place as returned by the search provider"""
    place_id: str
    name: str
    address: str
    lat: float
    lon: float
    rating: Optional[float] = None
    review_count: Optional[int] = None
    website: Optional[str] = None
    opening_hours: Optional[Tuple[str, ...]] = None
    primary_type: Optional[str] = None

    @classmethod
    def from_api(cls, place: Dict[str, Any]) -> Optional['ExternalRecord']:
        """Build from a Places (New) search result; None when id or location is missing"""
        location = place.get('location') or {}
        lat = location.get('latitude')
        lon = location.get('longitude')
        if not place.get('id') or lat is None or lon is None:
            return None

        hours = (place.get('regularOpeningHours') or {}).get('weekdayDescriptions')
        return cls(
            place_id=place['id'],
            name=(place.get('displayName') or {}).get('text', ''),
            address=place.get('formattedAddress', ''),
            lat=float(lat),
            lon=float(lon),
            rating=place.get('rating'),
            review_count=place.get('userRatingCount'),
            website=place.get('websiteUri'),
            opening_hours=tuple(hours) if hours else None,
            primary_type=place.get('primaryType'),
        )


@dataclass
class CandidateRecord:
    """External record normalized into the internal shape, ready for staging"""
    source: str
    source_id: str
    name: str
    address: str
    lat: float
    lon: float
    category: str
    rating: Optional[float] = None
    review_count: Optional[int] = None
    website: Optional[str] = None
    opening_hours: Optional[List[str]] = None
    primary_type: Optional[str] = None
    fetched_at: str = field(default_factory=utc_now_iso)

    # staging JSON keeps the camelCase keys of the original artifacts
    _JSON_KEYS = {
        'review_count': 'reviewCount',
        'opening_hours': 'openingHours',
        'primary_type': 'primaryType',
        'fetched_at': 'fetchedAt',
    }

    @property
    def key(self) -> Tuple[str, str]:
        return self.source, self.source_id

    @classmethod
    def from_external(cls, record: ExternalRecord, source: str, category: str,
                      fetched_at: Optional[str] = None) -> 'CandidateRecord':
        return cls(
            source=source,
            source_id=record.place_id,
            name=record.name,
            address=record.address,
            lat=record.lat,
            lon=record.lon,
            category=category,
            rating=record.rating,
            review_count=record.review_count,
            website=record.website,
            opening_hours=list(record.opening_hours) if record.opening_hours else None,
            primary_type=record.primary_type,
            fetched_at=fetched_at or utc_now_iso(),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {self._JSON_KEYS.get(k, k): v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CandidateRecord':
        reverse = {v: k for k, v in cls._JSON_KEYS.items()}
        kwargs = {reverse.get(k, k): v for k, v in data.items()}
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in kwargs.items() if k in known})

    def metadata(self) -> Dict[str, Any]:
        """Provider extras stored in the places.metadata column"""
        metadata: Dict[str, Any] = {}
        if self.rating is not None:
            metadata['rating'] = self.rating
        if self.review_count is not None:
            metadata['reviewCount'] = self.review_count
        if self.website:
            metadata['website'] = self.website
        if self.opening_hours:
            metadata['openingHours'] = self.opening_hours
        if self.primary_type:
            metadata['primaryType'] = self.primary_type
        metadata['fetchedAt'] = self.fetched_at
        return metadata


@dataclass(frozen=True)
class ReferenceRecord:
    """Curated dataset entry used only for matching"""
    name: str
    address: str
    lat: float
    lon: float


@dataclass(frozen=True)
class BoundingBox:
    """Lat/lon rectangle (south, north, west, east) in degrees"""
    south: float
    north: float
    west: float
    east: float

    def validate(self) -> 'BoundingBox':
        """Raise ConfigurationError unless south < north and west < east within lat/lon range"""
        values = (self.south, self.north, self.west, self.east)
        if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in values):
            raise ConfigurationError(f"Bounding box has non-numeric coordinates: {values}")
        if not (-90 <= self.south < self.north <= 90):
            raise ConfigurationError(f"Invalid latitude range: south={self.south}, north={self.north}")
        if not (-180 <= self.west < self.east <= 180):
            raise ConfigurationError(f"Invalid longitude range: west={self.west}, east={self.east}")
        return self

    @property
    def polygon(self):
        return box(self.west, self.south, self.east, self.north)

    @property
    def center(self) -> Tuple[float, float]:
        """(lat, lon) of the box centroid"""
        centroid = self.polygon.centroid
        return centroid.y, centroid.x

    def to_rectangle(self) -> Dict[str, Any]:
        """Places API locationRestriction.rectangle body"""
        return {
            'low': {'latitude': self.south, 'longitude': self.west},
            'high': {'latitude': self.north, 'longitude': self.east},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BoundingBox':
        return cls(
            south=data['south'],
            north=data['north'],
            west=data['west'],
            east=data['east'],
        )


@dataclass
class CanonicalPlace:
    """A row of the places table"""
    id: Optional[str]
    source: str
    source_id: str
    name: str
    address: str
    lat: Optional[float]
    lon: Optional[float]
    city_id: Optional[str] = None
    category_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: str = STATUS_ACTIVE
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_seen_at: Optional[str] = None
    removed_at: Optional[str] = None
    removed_reason: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return self.source, self.source_id

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'CanonicalPlace':
        lat, lon = parse_location(row.get('location'))
        if lat is None and row.get('lat') is not None:
            lat, lon = row.get('lat'), row.get('lon')
        return cls(
            id=row.get('id'),
            source=row.get('source', ''),
            source_id=row.get('source_id', ''),
            name=row.get('name', ''),
            address=row.get('address') or '',
            lat=lat,
            lon=lon,
            city_id=row.get('city_id'),
            category_id=row.get('category_id'),
            metadata=row.get('metadata') or {},
            status=row.get('status', STATUS_ACTIVE),
            created_at=row.get('created_at'),
            updated_at=row.get('updated_at'),
            last_seen_at=row.get('last_seen_at'),
            removed_at=row.get('removed_at'),
            removed_reason=row.get('removed_reason'),
        )


MatchTarget = Union[ReferenceRecord, CanonicalPlace]


@dataclass
class MatchResult:
    """Outcome of matching one candidate against a target set"""
    is_duplicate: bool
    confidence_tier: str
    matched_against: Optional[MatchTarget] = None
    distance_meters: Optional[float] = None
    name_score: float = 0.0
    address_score: float = 0.0
    match_kind: str = 'fuzzy'

    def to_dict(self) -> Dict[str, Any]:
        target = self.matched_against
        return {
            'is_duplicate': self.is_duplicate,
            'confidence_tier': self.confidence_tier,
            'match_kind': self.match_kind,
            'distance_meters': round(self.distance_meters, 1) if self.distance_meters is not None else None,
            'name_score': round(self.name_score, 3),
            'address_score': round(self.address_score, 3),
            'matched_against': {
                'name': target.name,
                'address': target.address,
                'lat': target.lat,
                'lon': target.lon,
            } if target is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MatchResult':
        target = data.get('matched_against')
        return cls(
            is_duplicate=data.get('is_duplicate', False),
            confidence_tier=data.get('confidence_tier', TIER_NONE),
            matched_against=ReferenceRecord(**target) if target else None,
            distance_meters=data.get('distance_meters'),
            name_score=data.get('name_score', 0.0),
            address_score=data.get('address_score', 0.0),
            match_kind=data.get('match_kind', 'fuzzy'),
        )


@dataclass
class CandidateMatch:
    """A candidate together with the match that classified it"""
    candidate: CandidateRecord
    match: MatchResult

    def to_dict(self) -> Dict[str, Any]:
        return {'candidate': self.candidate.to_dict(), 'match': self.match.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CandidateMatch':
        return cls(
            candidate=CandidateRecord.from_dict(data['candidate']),
            match=MatchResult.from_dict(data['match']),
        )


@dataclass
class StagingBatch:
    """Reviewable, publishable unit produced by one fetch"""
    batch_id: str
    city_id: str
    source: str
    mode: str = MODE_NEW
    grid_label: str = 'single'
    created_at: str = field(default_factory=utc_now_iso)
    places: List[CandidateRecord] = field(default_factory=list)
    pending_review: List[CandidateMatch] = field(default_factory=list)
    matched: List[CandidateMatch] = field(default_factory=list)
    seen_source_ids: List[str] = field(default_factory=list)
    fetch_complete: bool = True
    search_query: Optional[str] = None
    # categories the fetch could produce; staleness never reaches outside them
    categories: List[str] = field(default_factory=list)
    # environment → {at, inserted, updated, errors, marked_inactive}
    published: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def is_refresh(self) -> bool:
        return self.mode == MODE_REFRESH

    @property
    def staleness_categories(self) -> List[str]:
        return self.categories or sorted({p.category for p in self.places if p.category})

    def published_cleanly(self, environment: str) -> bool:
        outcome = self.published.get(environment)
        return outcome is not None and outcome.get('errors') == 0

    def add_place(self, candidate: CandidateRecord) -> bool:
        """Add a candidate unless its natural key is already staged"""
        if any(p.key == candidate.key for p in self.places):
            return False
        self.places.append(candidate)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'batch_id': self.batch_id,
            'city_id': self.city_id,
            'source': self.source,
            'mode': self.mode,
            'grid_label': self.grid_label,
            'created_at': self.created_at,
            'fetch_complete': self.fetch_complete,
            'places': [p.to_dict() for p in self.places],
            'pending_review': [b.to_dict() for b in self.pending_review],
            'matched': [b.to_dict() for b in self.matched],
            'seen_source_ids': list(self.seen_source_ids),
            'search_query': self.search_query,
            'categories': list(self.categories),
            'published': dict(self.published),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StagingBatch':
        return cls(
            batch_id=data['batch_id'],
            city_id=data['city_id'],
            source=data.get('source', 'google_places'),
            mode=data.get('mode', MODE_NEW),
            grid_label=data.get('grid_label', 'single'),
            created_at=data.get('created_at') or utc_now_iso(),
            places=[CandidateRecord.from_dict(p) for p in data.get('places', [])],
            pending_review=[CandidateMatch.from_dict(b) for b in data.get('pending_review', [])],
            matched=[CandidateMatch.from_dict(b) for b in data.get('matched', [])],
            seen_source_ids=list(data.get('seen_source_ids', [])),
            fetch_complete=data.get('fetch_complete', True),
            search_query=data.get('search_query'),
            categories=list(data.get('categories', [])),
            published=dict(data.get('published') or {}),
        )
