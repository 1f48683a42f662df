"""
Place Sync Pipeline Configuration
Config-first approach with typed configuration objects
"""
import os
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Tuple

from dotenv import load_dotenv

from scripts.place_sync.dedup import DedupThresholds
from scripts.place_sync.errors import ConfigurationError
from scripts.place_sync.grid_fetcher import FetchSettings
from scripts.place_sync.models import BoundingBox
from scripts.place_sync.similarity import NormalizationRules

load_dotenv()
load_dotenv('.env.local')

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'config.json')

ENVIRONMENTS = ('dev', 'prod')


@dataclass
class CityConfig:
    """City search area"""
    city_id: str
    name: str
    bounds: BoundingBox
    country: Optional[str] = None
    reference_file: Optional[str] = None


@dataclass
class StoreConfig:
    """Place Store and staging locations"""
    places_table: str = 'places'
    staging_dir: str = 'data/staging'
    reference_dir: str = 'data/reference'
    review_log: str = 'data/staging/review_log.jsonl'
    timeout_s: int = 30


@dataclass
class Config:
    """Main configuration object"""
    fetch: FetchSettings
    dedup: DedupThresholds
    normalization: NormalizationRules
    store: StoreConfig
    cities: Dict[str, CityConfig]
    categories: List[Dict[str, Any]]
    category_map: Dict[str, str]
    default_category: str = 'Regular Cafe'
    sources: Dict[str, str] = field(default_factory=lambda: {'google_places': 'google_places'})

    # Environment variables
    google_places_api_key: Optional[str] = field(init=False)
    supabase_dev_url: Optional[str] = field(init=False)
    supabase_dev_key: Optional[str] = field(init=False)
    supabase_prod_url: Optional[str] = field(init=False)
    supabase_prod_key: Optional[str] = field(init=False)

    def __post_init__(self):
        """Load environment variables after initialization"""
        self.google_places_api_key = os.getenv('GOOGLE_PLACES_API_KEY')
        self.supabase_dev_url = os.getenv('SUPABASE_DEV_URL')
        self.supabase_dev_key = os.getenv('SUPABASE_DEV_KEY')
        self.supabase_prod_url = os.getenv('SUPABASE_PROD_URL')
        self.supabase_prod_key = os.getenv('SUPABASE_PROD_KEY')

        for city in self.cities.values():
            city.bounds.validate()
        self.dedup.validate()

    def supabase_credentials(self, environment: str) -> Tuple[Optional[str], Optional[str]]:
        if environment not in ENVIRONMENTS:
            raise ConfigurationError(f"Unknown environment '{environment}', expected one of {ENVIRONMENTS}")
        return getattr(self, f'supabase_{environment}_url'), getattr(self, f'supabase_{environment}_key')

    def has_environment(self, environment: str) -> bool:
        return all(self.supabase_credentials(environment))

    def get_city(self, city_id: str) -> CityConfig:
        city = self.cities.get(city_id.lower())
        if city is None:
            raise ConfigurationError(f"Unknown city '{city_id}', available: {', '.join(self.cities)}")
        return city

    def category_for(self, primary_type: Optional[str]) -> str:
        """Internal category for a provider primary type"""
        return self.category_map.get(primary_type or '', self.default_category)

    def reference_path(self, city_id: str) -> Optional[str]:
        city = self.get_city(city_id)
        if not city.reference_file:
            return None
        return os.path.join(self.store.reference_dir, city.reference_file)


# Global config instance
_config_instance: Optional[Config] = None


def load_config(config_path: Optional[str] = None, reload: bool = False) -> Config:
    """
    Load configuration from JSON file with typed objects

    Args:
        config_path: Path to config.json file (defaults to CONFIG_PATH env or the repo copy)
        reload: Discard the cached instance

    Returns:
        Typed Config object
    """
    global _config_instance

    if _config_instance is not None and not reload:
        return _config_instance

    config_path = config_path or os.getenv('CONFIG_PATH') or DEFAULT_CONFIG_PATH

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = json.load(f)

        fetch_data = config_data.get('fetch', {})
        dedup_data = config_data.get('dedup', {})
        normalization_data = config_data.get('normalization', {})

        cities = {
            city_id: CityConfig(
                city_id=city_id,
                name=city_data['name'],
                bounds=BoundingBox.from_dict(city_data['bounds']),
                country=city_data.get('country'),
                reference_file=city_data.get('reference_file'),
            )
            for city_id, city_data in config_data['cities'].items()
        }

        _config_instance = Config(
            fetch=FetchSettings(**fetch_data),
            dedup=DedupThresholds(**dedup_data),
            normalization=NormalizationRules(**normalization_data),
            store=StoreConfig(**config_data.get('store', {})),
            cities=cities,
            categories=config_data.get('categories', []),
            category_map=config_data.get('category_map', {}),
            default_category=config_data.get('default_category', 'Regular Cafe'),
            sources=config_data.get('sources', {'google_places': 'google_places'}),
        )

        logger.info(f"Configuration loaded successfully from {config_path}")
        return _config_instance

    except ConfigurationError:
        raise
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in configuration file: {e}")
    except KeyError as e:
        raise ConfigurationError(f"Missing required configuration key: {e}")
    except Exception as e:
        raise ConfigurationError(f"Error loading configuration: {e}")


def get_config() -> Config:
    """Get the global configuration instance"""
    if _config_instance is None:
        return load_config()
    return _config_instance
