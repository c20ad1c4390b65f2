#!/usr/bin/env python3

import os
import json
import yaml
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, asdict, field

from .probes import real_home_directory
from ..errors import ConfigError
from ..registry.models import StrategyKind

CONFIG_DOCUMENT = "config.json"
URLMAP_DOCUMENT = "urlmap.json"
IDENTIFIER_TABLE = "identifier_cache.json"
MANIFEST_DOCUMENT = "manifest.json"
STAGING_DIR = ".staging"
# Package metadata written for installers that cannot reach the registry
SNAPSHOT_DIR = "api"

METADATA_FILES = (CONFIG_DOCUMENT, URLMAP_DOCUMENT, IDENTIFIER_TABLE, MANIFEST_DOCUMENT)

DEFAULT_STRATEGIES = [kind.value for kind in StrategyKind]


@dataclass
class MirrorConfig:
    base_path: str = None
    base_address: str = "http://localhost:8000"
    registry_index: str = None
    # Seconds between external fetches; keeps upstream rate limits happy
    delay: float = 1.0
    max_retries: int = 3
    backoff_base: float = 2.0
    max_backoff: float = 60.0
    fetch_timeout: float = 300.0
    allowed_strategies: List[str] = None
    max_workers: int = 1
    platforms: List[str] = None
    size_timeout: float = 30.0
    min_free_gb: float = 1.0
    log_level: str = "INFO"

    def __post_init__(self):
        if self.base_path is None:
            if os.geteuid() == 0:
                self.base_path = "/srv/offline-mirror"
            else:
                self.base_path = os.path.join(real_home_directory(), "offline-mirror")

        if self.allowed_strategies is None:
            self.allowed_strategies = list(DEFAULT_STRATEGIES)

        if self.platforms is None:
            self.platforms = []

    def allowed_kinds(self) -> List[StrategyKind]:
        kinds = []
        for name in self.allowed_strategies:
            kind = StrategyKind.parse(name)
            if kind is None:
                raise ConfigError(f"Unknown download strategy in allow-list: {name}")
            kinds.append(kind)
        return kinds

    def validate(self) -> None:
        if not self.base_path:
            raise ConfigError("Mirror directory is not set")
        if not self.base_address:
            raise ConfigError("Base address is not set")
        if self.delay < 0:
            raise ConfigError(f"Delay must not be negative: {self.delay}")
        if self.max_retries < 1:
            raise ConfigError(f"max_retries must be at least 1: {self.max_retries}")
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be at least 1: {self.max_workers}")
        self.allowed_kinds()


@dataclass
class MirrorDocument:
    """The config.json stored at the root of a mirror directory"""

    collections: Dict[str, Dict[str, str]] = field(default_factory=dict)
    timestamp: int = 0
    cache_root: str = ""
    base_address: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'collections': self.collections,
            'timestamp': self.timestamp,
            'cacheRoot': self.cache_root,
            'baseAddress': self.base_address,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "MirrorDocument":
        if not isinstance(data, dict):
            raise ConfigError("Configuration document must be a JSON object")

        for key in ('timestamp', 'cacheRoot', 'baseAddress'):
            if key not in data:
                raise ConfigError(f"Configuration document is missing '{key}'")

        if 'collections' in data:
            collections = data['collections']
            if not isinstance(collections, dict):
                raise ConfigError("'collections' must be an object")
            for name, pin in collections.items():
                if not isinstance(pin, dict) or 'revision' not in pin:
                    raise ConfigError(f"Collection '{name}' has no revision")
        elif 'revision' in data:
            # Legacy single-collection shape
            collections = {'default': {'revision': data['revision'], 'kind': 'legacy'}}
        else:
            raise ConfigError("Configuration document has neither 'collections' nor 'revision'")

        try:
            timestamp = int(data['timestamp'])
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid timestamp: {data['timestamp']!r}")

        return cls(
            collections={name: dict(pin) for name, pin in collections.items()},
            timestamp=timestamp,
            cache_root=str(data['cacheRoot']),
            base_address=str(data['baseAddress']),
        )


def load_mirror_document(directory: str) -> MirrorDocument:
    path = os.path.join(directory, CONFIG_DOCUMENT)
    if not os.path.exists(path):
        raise ConfigError(f"{CONFIG_DOCUMENT} not found in {directory}")

    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Error reading {path}: {e}")

    return MirrorDocument.from_dict(data)


def write_mirror_document(directory: str, config: MirrorConfig,
                          collections: Dict[str, Dict[str, str]]) -> MirrorDocument:
    document = MirrorDocument(
        collections=collections,
        timestamp=int(datetime.now(timezone.utc).timestamp()),
        cache_root=os.path.abspath(directory),
        base_address=config.base_address,
    )
    write_json(os.path.join(directory, CONFIG_DOCUMENT), document.to_dict())
    return document


def write_json(path: str, data: Any) -> None:
    """Write a JSON document atomically"""
    tmp_path = f"{path}.tmp"
    with open(tmp_path, 'w') as f:
        json.dump(data, f, indent=2, sort_keys=True)
        f.write("\n")
    os.replace(tmp_path, path)


class ConfigManager:
    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._get_default_config_path()
        self._config: Optional[MirrorConfig] = None

    def _get_default_config_path(self) -> str:
        xdg_config = os.environ.get('XDG_CONFIG_HOME') or os.path.join(real_home_directory(), '.config')
        return os.path.join(xdg_config, "offline-mirror", "config.yaml")

    def load_config(self) -> MirrorConfig:
        if self._config is not None:
            return self._config

        if not os.path.exists(self.config_path):
            self._config = MirrorConfig()
            self.save_config()
            return self._config

        try:
            with open(self.config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Error loading config from {self.config_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {self.config_path} must be a mapping")

        try:
            self._config = MirrorConfig(**data)
        except TypeError as e:
            raise ConfigError(f"Invalid setting in {self.config_path}: {e}")
        return self._config

    def save_config(self) -> None:
        if self._config is None:
            raise ConfigError("No config loaded to save")

        os.makedirs(os.path.dirname(self.config_path), exist_ok=True)

        if not os.path.exists(self.config_path):
            self._create_config_template()
        else:
            with open(self.config_path, 'w') as f:
                yaml.dump(asdict(self._config), f, default_flow_style=False, indent=2)

    def _create_config_template(self) -> None:
        """Create a new config file with commented examples"""
        config_dict = asdict(self._config)

        template = f"""# Offline Mirror Configuration
# Generated by offline-mirror

# Mirror directory and the address the redirection shim substitutes
base_path: {config_dict['base_path']}
base_address: {config_dict['base_address']}

# Exported registry index (YAML or JSON)
# registry_index: /path/to/index.yaml

# Fetch behaviour
delay: {config_dict['delay']}
max_retries: {config_dict['max_retries']}
backoff_base: {config_dict['backoff_base']}
max_backoff: {config_dict['max_backoff']}
fetch_timeout: {config_dict['fetch_timeout']}
max_workers: {config_dict['max_workers']}

# Download strategies the mirror may use
allowed_strategies:
"""
        for name in config_dict['allowed_strategies']:
            template += f"- {name}\n"

        template += f"""
# Prebuilt variants to mirror, by platform tag
# platforms:
# - arm64_sonoma

# Verification and housekeeping
size_timeout: {config_dict['size_timeout']}
min_free_gb: {config_dict['min_free_gb']}
log_level: {config_dict['log_level']}
"""

        with open(self.config_path, 'w') as f:
            f.write(template)

    def get_config(self) -> MirrorConfig:
        if self._config is None:
            return self.load_config()
        return self._config

    def apply_overrides(self, **overrides: Any) -> MirrorConfig:
        """Apply command-line values on top of the file settings; None means unset"""
        config = self.get_config()
        for key, value in overrides.items():
            if value is None:
                continue
            if not hasattr(config, key):
                raise ConfigError(f"Unknown setting: {key}")
            setattr(config, key, value)
        return config
