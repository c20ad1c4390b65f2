#!/usr/bin/env python3

import os
import json
import logging
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple

from ..config.manager import MANIFEST_DOCUMENT, write_json
from ..errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class RunManifest:
    """Report of one mirror run; the next --update run diffs against it.

    Each package record looks like:
        {'name': 'wget', 'version': '1.24.5', 'bundle': False, 'complete': True,
         'descriptors': [{...descriptor fields..., 'identifier': ..., 'filename': ...}]}
    """

    created_at: str = ""
    collections: Dict[str, Dict[str, str]] = field(default_factory=dict)
    stats: Dict[str, Any] = field(default_factory=dict)
    packages: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        if not self.created_at:
            self.created_at = datetime.now(timezone.utc).isoformat()

    def package_keys(self) -> List[Tuple[str, str]]:
        return [(record['name'], record['version']) for record in self.packages]

    def find(self, name: str, version: str) -> Optional[Dict[str, Any]]:
        for record in self.packages:
            if record['name'] == name and record['version'] == version:
                return record
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'created_at': self.created_at,
            'collections': self.collections,
            'stats': self.stats,
            'packages': sorted(self.packages, key=lambda r: (r['name'], r['version'])),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "RunManifest":
        if not isinstance(data, dict):
            raise ConfigError("Manifest must be a JSON object")

        packages = data.get('packages') or []
        if not isinstance(packages, list):
            raise ConfigError("Manifest 'packages' must be a list")
        for record in packages:
            if not isinstance(record, dict) or 'name' not in record or 'version' not in record:
                raise ConfigError(f"Malformed manifest package record: {record!r}")
            record.setdefault('descriptors', [])
            record.setdefault('bundle', False)
            record.setdefault('complete', True)

        return cls(
            created_at=str(data.get('created_at', '')),
            collections=dict(data.get('collections') or {}),
            stats=dict(data.get('stats') or {}),
            packages=packages,
        )

    @classmethod
    def load(cls, directory: str) -> Optional["RunManifest"]:
        """Previous run's manifest, or None if the mirror has none yet"""
        path = os.path.join(directory, MANIFEST_DOCUMENT)
        if not os.path.exists(path):
            return None

        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Error reading {path}: {e}")

        manifest = cls.from_dict(data)
        logger.debug(f"Loaded manifest from {manifest.created_at} with {len(manifest.packages)} packages")
        return manifest

    def save(self, directory: str) -> None:
        write_json(os.path.join(directory, MANIFEST_DOCUMENT), self.to_dict())
