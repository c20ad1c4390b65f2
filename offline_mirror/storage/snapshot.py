#!/usr/bin/env python3

import os
import json
import logging
from typing import Dict, List, Any, Optional

from ..config.manager import SNAPSHOT_DIR, write_json
from ..errors import ConfigError, PathSecurityError
from ..registry.models import DependencyKind, Package
from .manager import safe_join

logger = logging.getLogger(__name__)

SNAPSHOT_INDEX = "packages.json"
PACKAGE_SECTION = "packages"
BUNDLE_SECTION = "bundles"


def document_path(package: Package) -> str:
    """Path of a package's document relative to the snapshot directory"""
    section = BUNDLE_SECTION if package.bundle else PACKAGE_SECTION
    return f"{section}/{package.name.replace('/', '--')}.json"


def package_document(package: Package, descriptors: List[Dict[str, Any]], complete: bool) -> Dict[str, Any]:
    return {
        'name': package.name,
        'version': package.version,
        'collection': package.collection,
        'bundle': package.bundle,
        'complete': complete,
        'dependencies': {
            kind.value: sorted(package.dependency_names(kind)) for kind in DependencyKind
        },
        'resources': [
            {
                'role': entry.get('role', 'stable'),
                'locator': entry['locator'],
                'strategy': entry['strategy'],
                'checksum': entry.get('checksum'),
                'filename': entry['filename'],
            }
            for entry in descriptors
        ],
    }


class MetadataSnapshot:
    """Registry metadata of the mirrored packages, laid out as

        api/packages.json           {"packages": {name: path}, "bundles": {name: path}}
        api/packages/<name>.json    one document per package
        api/bundles/<name>.json     one document per bundle
    """

    def __init__(self, directory: str):
        self.directory = directory
        self.root = os.path.join(directory, SNAPSHOT_DIR)

    def write(self, packages: List[Package], records: List[Dict[str, Any]]) -> Dict[str, Any]:
        result = {'written': 0, 'removed': 0, 'errors': []}
        by_name = {(r['name'], r.get('bundle', False)): r for r in records}
        index: Dict[str, Dict[str, str]] = {PACKAGE_SECTION: {}, BUNDLE_SECTION: {}}

        for section in index:
            os.makedirs(os.path.join(self.root, section), mode=0o755, exist_ok=True)

        for package in packages:
            record = by_name.get((package.name, package.bundle))
            if record is None:
                continue
            relative = document_path(package)
            try:
                path = safe_join(self.root, relative)
            except PathSecurityError as e:
                logger.warning(f"Not writing metadata for {package.name}: {e}")
                result['errors'].append(str(e))
                continue

            write_json(path, package_document(package, record['descriptors'], record.get('complete', True)))
            index[BUNDLE_SECTION if package.bundle else PACKAGE_SECTION][package.name] = relative
            result['written'] += 1

        result['removed'] = self._remove_stale(index)
        write_json(os.path.join(self.root, SNAPSHOT_INDEX), index)
        logger.info(f"Wrote metadata snapshot for {result['written']} packages to {self.root}")
        return result

    def _remove_stale(self, index: Dict[str, Dict[str, str]]) -> int:
        current = {path for section in index.values() for path in section.values()}
        removed = 0
        for section in index:
            section_dir = os.path.join(self.root, section)
            for filename in os.listdir(section_dir):
                if f"{section}/{filename}" in current:
                    continue
                try:
                    os.remove(os.path.join(section_dir, filename))
                    removed += 1
                except OSError as e:
                    logger.warning(f"Failed to remove stale metadata {filename}: {e}")
        if removed:
            logger.debug(f"Removed {removed} stale metadata documents")
        return removed

    def load_index(self) -> Optional[Dict[str, Dict[str, str]]]:
        """The snapshot index, or None if the mirror has no snapshot"""
        path = os.path.join(self.root, SNAPSHOT_INDEX)
        if not os.path.exists(path):
            return None

        data = self._read(path)
        if not isinstance(data, dict):
            raise ConfigError(f"{SNAPSHOT_DIR}/{SNAPSHOT_INDEX} must be a JSON object")
        for section in (PACKAGE_SECTION, BUNDLE_SECTION):
            entries = data.get(section, {})
            if not isinstance(entries, dict):
                raise ConfigError(f"{SNAPSHOT_DIR}/{SNAPSHOT_INDEX}: '{section}' must be an object")
            data[section] = entries
        return data

    def load_document(self, relative: str) -> Dict[str, Any]:
        path = safe_join(self.root, relative)
        if not os.path.exists(path):
            raise ConfigError(f"Missing metadata document: {SNAPSHOT_DIR}/{relative}")
        data = self._read(path)
        if not isinstance(data, dict) or not isinstance(data.get('resources'), list):
            raise ConfigError(f"Malformed metadata document: {SNAPSHOT_DIR}/{relative}")
        return data

    def _read(self, path: str) -> Any:
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Error reading {path}: {e}")
