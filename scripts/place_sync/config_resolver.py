#!/usr/bin/env python3
"""
Config Resolver for the place sync pipeline
Handles CLI > ENV > config > defaults resolution and logs final values
"""
import os
import logging
from dataclasses import fields, replace
from typing import Any, Dict, Optional

from .dedup import DedupThresholds
from .errors import ConfigurationError
from .grid_fetcher import FetchSettings

logger = logging.getLogger(__name__)

ENV_PREFIX_DEDUP = 'DEDUP_'
ENV_PREFIX_FETCH = 'FETCH_'

# CLI attribute → FetchSettings field
FETCH_CLI_ARGS = {
    'limit': 'max_results',
    'min_rating': 'min_rating',
    'workers': 'max_workers',
    'deadline': 'deadline_s',
    'query': 'search_query',
}


def _coerce(value: str, template: Any, name: str):
    """Convert an environment string to the type of the existing value"""
    try:
        if isinstance(template, bool):
            return value.lower() in ('1', 'true', 'yes')
        if isinstance(template, int):
            number = float(value)
            return int(number) if number.is_integer() else number
        if isinstance(template, float) or template is None:
            return float(value)
        return value
    except ValueError:
        raise ConfigurationError(f"Invalid value for {name}: {value!r}")


def _resolve(base, env_prefix: str, cli_values: Dict[str, Any], label: str):
    """Apply ENV then CLI overrides on top of a config dataclass"""
    overrides = {}
    sources = {}

    for f in fields(base):
        env_name = f"{env_prefix}{f.name.upper()}"
        env_value = os.getenv(env_name)
        if env_value not in (None, ''):
            overrides[f.name] = _coerce(env_value, getattr(base, f.name), env_name)
            sources[f.name] = 'ENV'

    for name, value in cli_values.items():
        if value is not None:
            overrides[name] = value
            sources[name] = 'CLI'

    resolved = replace(base, **overrides) if overrides else base
    for f in fields(resolved):
        logger.debug(f"[{label}] {f.name}={getattr(resolved, f.name)} "
                     f"(source: {sources.get(f.name, 'config')})")
    return resolved


def resolve_thresholds(args, base: Optional[DedupThresholds] = None) -> DedupThresholds:
    """Dedup thresholds: CLI (--<field>) > DEDUP_<FIELD> > config > defaults"""
    base = base or DedupThresholds()
    cli_values = {f.name: getattr(args, f.name, None) for f in fields(DedupThresholds)}
    return _resolve(base, ENV_PREFIX_DEDUP, cli_values, 'THRESHOLDS').validate()


def resolve_fetch_settings(args, base: Optional[FetchSettings] = None) -> FetchSettings:
    """Fetch settings: CLI > FETCH_<FIELD> > config > defaults"""
    base = base or FetchSettings()
    cli_values = {field_name: getattr(args, arg, None) for arg, field_name in FETCH_CLI_ARGS.items()}
    settings = _resolve(base, ENV_PREFIX_FETCH, cli_values, 'FETCH')
    if settings.max_workers < 1:
        raise ConfigurationError(f"max_workers must be at least 1, got {settings.max_workers}")
    if settings.max_results < 1:
        raise ConfigurationError(f"Result limit must be at least 1, got {settings.max_results}")
    return settings
