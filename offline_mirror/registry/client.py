#!/usr/bin/env python3

"""
Adapters for the package metadata registry.

The registry itself is an external service. The mirror only needs to ask it
for a package (or bundle) by name and for the revisions of the collections it
serves, so the seam is a small abstract class. IndexFileRegistry reads an
exported index so operators can feed the mirror without a live service.
"""

import os
import logging
import yaml
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any

from .models import Package, Dependency, DependencyKind
from ..errors import ConfigError, ResolutionError

logger = logging.getLogger(__name__)


class PackageRegistry(ABC):
    @abstractmethod
    def get_package(self, name: str) -> Package:
        """Return a package, raising ResolutionError if it does not exist"""

    @abstractmethod
    def get_bundle(self, token: str) -> Package:
        """Return a prebuilt bundle, raising ResolutionError if it does not exist"""

    @abstractmethod
    def package_names(self, collections: Optional[List[str]] = None) -> List[str]:
        pass

    @abstractmethod
    def collections(self) -> Dict[str, Dict[str, str]]:
        """Revision pins of the collections served: {name: {revision, kind}}"""


class StaticRegistry(PackageRegistry):
    def __init__(self, packages: Optional[Dict[str, Package]] = None,
                 bundles: Optional[Dict[str, Package]] = None,
                 collections: Optional[Dict[str, Dict[str, str]]] = None):
        self._packages = dict(packages or {})
        self._bundles = dict(bundles or {})
        self._collections = dict(collections or {})

    def get_package(self, name: str) -> Package:
        try:
            return self._packages[name]
        except KeyError:
            raise ResolutionError(f"Package not found: {name}")

    def get_bundle(self, token: str) -> Package:
        try:
            return self._bundles[token]
        except KeyError:
            raise ResolutionError(f"Bundle not found: {token}")

    def package_names(self, collections: Optional[List[str]] = None) -> List[str]:
        return sorted(
            name for name, pkg in self._packages.items()
            if not collections or pkg.collection in collections
        )

    def collections(self) -> Dict[str, Dict[str, str]]:
        return {name: dict(pin) for name, pin in self._collections.items()}


class IndexFileRegistry(StaticRegistry):
    """Registry backed by a YAML or JSON index file.

    Layout:
        collections: {core: {revision: abc123, kind: packages}}
        packages:
          wget:
            version: "1.24.5"
            collection: core
            dependencies: [{name: openssl, kind: runtime}, pkgconf]
            downloads: [{role: stable, url: ..., sha256: ...}]
        bundles: {...same shape...}
    """

    def __init__(self, index_path: str):
        self.index_path = index_path
        data = self._load(index_path)
        super().__init__(
            packages=self._parse_packages(data.get('packages') or {}, bundle=False),
            bundles=self._parse_packages(data.get('bundles') or {}, bundle=True),
            collections=self._parse_collections(data.get('collections') or {}),
        )
        logger.info(f"Loaded registry index {index_path}: {len(self._packages)} packages, "
                    f"{len(self._bundles)} bundles")

    def _load(self, index_path: str) -> Dict[str, Any]:
        if not os.path.exists(index_path):
            raise ConfigError(f"Registry index not found: {index_path}")

        try:
            with open(index_path, 'r') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Error loading registry index {index_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Registry index {index_path} must be a mapping")
        return data

    def _parse_collections(self, raw: Dict[str, Any]) -> Dict[str, Dict[str, str]]:
        collections = {}
        for name, pin in raw.items():
            if not isinstance(pin, dict):
                pin = {'revision': str(pin)}
            collections[name] = {
                'revision': str(pin.get('revision', '')),
                'kind': str(pin.get('kind', 'packages')),
            }
        return collections

    def _parse_packages(self, raw: Dict[str, Any], bundle: bool) -> Dict[str, Package]:
        packages = {}
        for name, entry in raw.items():
            if not isinstance(entry, dict):
                raise ConfigError(f"Registry entry for {name} must be a mapping")

            packages[name] = Package(
                name=name,
                version=str(entry.get('version', '')),
                collection=entry.get('collection', ''),
                dependencies=[self._parse_dependency(d) for d in entry.get('dependencies') or []],
                downloads=list(entry.get('downloads') or []),
                bundle=bundle,
            )
        return packages

    def _parse_dependency(self, raw: Any) -> Dependency:
        # Bare strings are runtime dependencies
        if isinstance(raw, str):
            return Dependency(name=raw)
        if not isinstance(raw, dict) or 'name' not in raw:
            raise ConfigError(f"Malformed dependency entry: {raw!r}")

        try:
            kind = DependencyKind(raw.get('kind', 'runtime'))
        except ValueError:
            raise ConfigError(f"Unknown dependency kind: {raw.get('kind')}")
        return Dependency(name=raw['name'], kind=kind)
