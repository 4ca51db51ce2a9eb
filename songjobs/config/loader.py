"""
Configuration management and loading.

Handles application settings. Secrets are never read from the YAML file;
the file names the environment variables that hold them.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

from songjobs.storage.db import DEFAULT_DB_PATH


class StorageBackend(Enum):
    """Where persisted songs are kept."""
    LOCAL = "local"
    SUPABASE = "supabase"


@dataclass(frozen=True)
class DatabaseConfig:
    """SQLite settings."""
    path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class ProviderConfig:
    """Generation provider endpoints and credentials."""
    base_url: str = "https://api.mureka.ai"
    api_key_env: str = "MUREKA_API_KEY"
    status_paths: Tuple[str, ...] = ("/v1/song/query/{ref}",)
    submit_path: str = "/v1/song/generate"
    timeout_seconds: Optional[float] = None
    succeeded_aliases: Tuple[str, ...] = ()
    failed_aliases: Tuple[str, ...] = ()

    def __post_init__(self):
        """Validate endpoint settings."""
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError("provider.base_url must be an http(s) URL")
        if not self.status_paths:
            raise ValueError("provider.status_paths must not be empty")
        for path in self.status_paths:
            if "{ref}" not in path:
                raise ValueError(f"provider.status_paths entry {path!r} must contain '{{ref}}'")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("provider.timeout_seconds must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    """Durable storage settings."""
    backend: StorageBackend = StorageBackend.LOCAL
    bucket: str = "song-files"
    root: str = "var/storage"
    public_base_url: str = "http://localhost:8000/files"
    signing_secret_env: str = "SONGJOBS_SIGNING_SECRET"
    url_env: str = "SUPABASE_URL"
    service_key_env: str = "SUPABASE_SERVICE_ROLE_KEY"
    signed_url_ttl: int = 900

    def __post_init__(self):
        """Validate storage values."""
        if self.signed_url_ttl <= 0:
            raise ValueError("storage.signed_url_ttl must be > 0")
        if not self.bucket:
            raise ValueError("storage.bucket must not be empty")


@dataclass(frozen=True)
class PlanConfig:
    """Allowance granted by one subscription plan."""
    name: str
    songs_per_period: int
    revisions_per_song: int = 0
    commercial: bool = False

    def __post_init__(self):
        """Validate plan limits; -1 means unlimited."""
        if self.songs_per_period < -1:
            raise ValueError("songs_per_period must be >= 0 or -1 (unlimited)")
        if self.revisions_per_song < -1:
            raise ValueError("revisions_per_song must be >= 0 or -1 (unlimited)")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    plans: Dict[str, PlanConfig] = field(default_factory=dict)
    log_level: str = "INFO"

    def get_plan(self, plan_id: str) -> PlanConfig:
        """Get a plan by id.

        Raises:
            ValueError: If the plan is not configured
        """
        try:
            return self.plans[plan_id]
        except KeyError:
            raise ValueError(f"Unknown plan: {plan_id}")


_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def default_config() -> AppConfig:
    """Built-in configuration used when no file is given."""
    return AppConfig()


def load_config(path: str) -> AppConfig:
    """Load and validate application configuration from a YAML file.

    Strict validation: unknown keys are errors, so a typo never silently
    falls back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'database', 'provider', 'storage', 'plans', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database = _parse_database(_section(raw_config, 'database'))
    provider = _parse_provider(_section(raw_config, 'provider'))
    storage = _parse_storage(_section(raw_config, 'storage'))

    plans_data = _section(raw_config, 'plans')
    plans = {}
    for plan_id, plan_data in plans_data.items():
        if not isinstance(plan_data, dict):
            raise ValueError(f"Plan '{plan_id}' must be a dictionary")
        plans[str(plan_id)] = _parse_plan(plan_data, f"plans.{plan_id}")

    logging_data = _section(raw_config, 'logging')
    _reject_unknown(logging_data, {'level'}, 'logging')
    log_level = str(logging_data.get('level', 'INFO')).upper()
    if log_level not in _LOG_LEVELS:
        raise ValueError(f"'logging.level' must be one of: {sorted(_LOG_LEVELS)}")

    return AppConfig(
        database=database,
        provider=provider,
        storage=storage,
        plans=plans,
        log_level=log_level,
    )


def _section(raw: Dict, name: str) -> Dict:
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_database(data: Dict) -> DatabaseConfig:
    _reject_unknown(data, {'path'}, 'database')
    if 'path' in data and not isinstance(data['path'], str):
        raise ValueError("'database.path' must be a string")
    return DatabaseConfig(path=data.get('path', DEFAULT_DB_PATH))


def _parse_provider(data: Dict) -> ProviderConfig:
    """Parse and validate the provider section.

    Args:
        data: Provider configuration data

    Returns:
        Validated ProviderConfig

    Raises:
        ValueError: If configuration is invalid
    """
    allowed = {
        'base_url', 'api_key_env', 'status_paths', 'submit_path',
        'timeout_seconds', 'status_aliases',
    }
    _reject_unknown(data, allowed, 'provider')
    defaults = ProviderConfig()

    status_paths = data.get('status_paths', list(defaults.status_paths))
    if not isinstance(status_paths, list) or not all(isinstance(p, str) for p in status_paths):
        raise ValueError("'provider.status_paths' must be a list of strings")

    timeout = data.get('timeout_seconds')
    if timeout is not None and not isinstance(timeout, (int, float)):
        raise ValueError("'provider.timeout_seconds' must be a number")

    aliases = data.get('status_aliases') or {}
    if not isinstance(aliases, dict):
        raise ValueError("'provider.status_aliases' must be a dictionary")
    _reject_unknown(aliases, {'succeeded', 'failed'}, 'provider.status_aliases')
    for bucket, values in aliases.items():
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise ValueError(f"'provider.status_aliases.{bucket}' must be a list of strings")

    return ProviderConfig(
        base_url=str(data.get('base_url', defaults.base_url)).rstrip('/'),
        api_key_env=str(data.get('api_key_env', defaults.api_key_env)),
        status_paths=tuple(status_paths),
        submit_path=str(data.get('submit_path', defaults.submit_path)),
        timeout_seconds=float(timeout) if timeout is not None else None,
        succeeded_aliases=tuple(v.lower() for v in aliases.get('succeeded', [])),
        failed_aliases=tuple(v.lower() for v in aliases.get('failed', [])),
    )


def _parse_storage(data: Dict) -> StorageConfig:
    allowed = {
        'backend', 'bucket', 'root', 'public_base_url', 'signing_secret_env',
        'url_env', 'service_key_env', 'signed_url_ttl',
    }
    _reject_unknown(data, allowed, 'storage')
    defaults = StorageConfig()

    backend_str = data.get('backend', defaults.backend.value)
    if not isinstance(backend_str, str):
        raise ValueError("'storage.backend' must be a string")
    try:
        backend = StorageBackend(backend_str.lower())
    except ValueError:
        valid = [b.value for b in StorageBackend]
        raise ValueError(f"'storage.backend' must be one of: {valid}")

    ttl = data.get('signed_url_ttl', defaults.signed_url_ttl)
    if not isinstance(ttl, int) or isinstance(ttl, bool):
        raise ValueError("'storage.signed_url_ttl' must be an integer")

    return StorageConfig(
        backend=backend,
        bucket=str(data.get('bucket', defaults.bucket)),
        root=str(data.get('root', defaults.root)),
        public_base_url=str(data.get('public_base_url', defaults.public_base_url)).rstrip('/'),
        signing_secret_env=str(data.get('signing_secret_env', defaults.signing_secret_env)),
        url_env=str(data.get('url_env', defaults.url_env)),
        service_key_env=str(data.get('service_key_env', defaults.service_key_env)),
        signed_url_ttl=ttl,
    )


def _parse_plan(data: Dict, path: str) -> PlanConfig:
    """Parse and validate one plan entry.

    Args:
        data: Plan configuration data
        path: Path for error messages

    Returns:
        Validated PlanConfig

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'name', 'songs_per_period', 'revisions_per_song', 'commercial'}
    _reject_unknown(data, allowed_keys, path)

    if 'name' not in data:
        raise ValueError(f"Missing required 'name' in {path}")
    if 'songs_per_period' not in data:
        raise ValueError(f"Missing required 'songs_per_period' in {path}")

    songs = data['songs_per_period']
    if not isinstance(songs, int) or isinstance(songs, bool):
        raise ValueError(f"'songs_per_period' in {path} must be an integer")

    revisions = data.get('revisions_per_song', 0)
    if not isinstance(revisions, int) or isinstance(revisions, bool):
        raise ValueError(f"'revisions_per_song' in {path} must be an integer")

    commercial = data.get('commercial', False)
    if not isinstance(commercial, bool):
        raise ValueError(f"'commercial' in {path} must be a boolean")

    return PlanConfig(
        name=str(data['name']),
        songs_per_period=songs,
        revisions_per_song=revisions,
        commercial=commercial,
    )
