#!/usr/bin/env python3

import os
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Any, Optional

from ..config.manager import IDENTIFIER_TABLE, SNAPSHOT_DIR, load_mirror_document
from ..errors import ConfigError, PathSecurityError
from ..redirect.urlmap import load_urlmap
from ..registry.models import CHECKSUM_UNCHECKED
from ..resolver.identifiers import IdentifierTable
from ..storage.manager import CacheStore, safe_join, sha256_file
from ..storage.manifest import RunManifest
from ..storage.snapshot import BUNDLE_SECTION, PACKAGE_SECTION, SNAPSHOT_INDEX, MetadataSnapshot

logger = logging.getLogger(__name__)


class MirrorVerifier:
    def __init__(self, directory: str, check_checksums: bool = False,
                 size_timeout: float = 30.0, max_workers: int = 4):
        self.directory = directory
        self.check_checksums = check_checksums
        self.size_timeout = size_timeout
        self.max_workers = max_workers
        self.store = CacheStore(directory)

    def verify(self) -> Dict[str, Any]:
        """Check a mirror directory; never raises on malformed content"""
        results = {
            'directory': self.directory,
            'errors': [],
            'warnings': [],
            'stats': {
                'locators': 0,
                'referenced_files': 0,
                'missing_files': 0,
                'orphaned_files': 0,
                'checksums_verified': 0,
                'identifiers': 0,
                'metadata_documents': 0,
                'total_size': None,
            }
        }

        if not os.path.isdir(self.directory):
            results['errors'].append(f"Mirror directory not found: {self.directory}")
            return results

        try:
            load_mirror_document(self.directory)
        except ConfigError as e:
            results['errors'].append(str(e))

        try:
            urlmap = load_urlmap(self.directory)
        except ConfigError as e:
            results['errors'].append(str(e))
            return results

        if not urlmap:
            results['warnings'].append("Redirection map is empty")

        referenced = sorted(set(urlmap.values()))
        results['stats']['locators'] = len(urlmap)
        results['stats']['referenced_files'] = len(referenced)

        for filename in referenced:
            try:
                path = safe_join(self.directory, filename)
            except PathSecurityError as e:
                results['errors'].append(str(e))
                continue
            if not os.path.isfile(path):
                users = sum(1 for value in urlmap.values() if value == filename)
                results['errors'].append(f"Missing file: {filename} (referenced by {users} locators)")
                results['stats']['missing_files'] += 1

        payload = self.store.filenames()
        referenced_set = set(referenced)
        for filename in payload:
            if filename not in referenced_set:
                results['warnings'].append(f"Orphaned file: {filename}")
                results['stats']['orphaned_files'] += 1

        if os.path.exists(os.path.join(self.directory, IDENTIFIER_TABLE)):
            results['stats']['identifiers'] = len(IdentifierTable.load(self.directory))
        else:
            results['warnings'].append(f"{IDENTIFIER_TABLE} not found (debug table only)")

        self._verify_snapshot(referenced_set, results)

        if self.check_checksums:
            self._verify_checksums(referenced_set, results)

        total_size = self._aggregate_size(payload, results)
        results['stats']['total_size'] = total_size

        logger.info(self.get_verification_summary(results))
        return results

    def _verify_snapshot(self, referenced: set, results: Dict[str, Any]) -> None:
        snapshot = MetadataSnapshot(self.directory)
        try:
            index = snapshot.load_index()
        except ConfigError as e:
            results['errors'].append(str(e))
            return

        if index is None:
            results['warnings'].append(f"{SNAPSHOT_DIR}/{SNAPSHOT_INDEX} not found (no offline metadata)")
            return

        for section in (PACKAGE_SECTION, BUNDLE_SECTION):
            for name, relative in sorted(index[section].items()):
                try:
                    document = snapshot.load_document(relative)
                except (ConfigError, PathSecurityError) as e:
                    results['errors'].append(str(e))
                    continue

                results['stats']['metadata_documents'] += 1
                for resource in document['resources']:
                    if resource.get('filename') not in referenced:
                        results['errors'].append(
                            f"Metadata for {name} references unmapped file: {resource.get('filename')}"
                        )

    def _checksum_entries(self, referenced: set, results: Dict[str, Any]) -> Dict[str, str]:
        """filename -> expected checksum for entries named after their checksum"""
        try:
            manifest = RunManifest.load(self.directory)
        except ConfigError as e:
            results['warnings'].append(f"Cannot check checksums: {e}")
            return {}

        if manifest is None:
            results['warnings'].append("Cannot check checksums: manifest.json not found")
            return {}

        expected = {}
        for record in manifest.packages:
            for entry in record.get('descriptors') or []:
                checksum = entry.get('checksum')
                filename = entry.get('filename')
                if not checksum or checksum == CHECKSUM_UNCHECKED or filename not in referenced:
                    continue
                if entry.get('identifier') == checksum.lower():
                    expected[filename] = checksum.lower()
        return expected

    def _verify_checksums(self, referenced: set, results: Dict[str, Any]) -> None:
        expected = self._checksum_entries(referenced, results)
        present = {
            filename: checksum for filename, checksum in expected.items()
            if os.path.isfile(os.path.join(self.directory, filename))
        }
        if not present:
            return

        logger.info(f"Verifying checksums of {len(present)} files")
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_file = {
                executor.submit(sha256_file, os.path.join(self.directory, filename)): filename
                for filename in present
            }
            for future in as_completed(future_to_file):
                filename = future_to_file[future]
                try:
                    actual = future.result()
                except OSError as e:
                    results['errors'].append(f"Cannot read {filename}: {e}")
                    continue

                if actual == present[filename]:
                    results['stats']['checksums_verified'] += 1
                else:
                    results['errors'].append(
                        f"Checksum mismatch: {filename} (expected {present[filename]}, got {actual})"
                    )

    def _aggregate_size(self, filenames: List[str], results: Dict[str, Any]) -> Optional[int]:
        outcome: Dict[str, int] = {}

        def total() -> None:
            size = 0
            for filename in filenames:
                try:
                    size += os.path.getsize(os.path.join(self.directory, filename))
                except OSError:
                    continue
            outcome['size'] = size

        # Daemon thread: a stuck filesystem must not keep the process alive at exit
        worker = threading.Thread(target=total, name="mirror-size", daemon=True)
        worker.start()
        worker.join(self.size_timeout)
        if worker.is_alive():
            logger.warning(f"Size calculation for {self.directory} timed out after {self.size_timeout}s")
            results['warnings'].append(f"Size calculation timed out after {self.size_timeout}s")
            return None
        return outcome.get('size')

    def get_verification_summary(self, results: Dict[str, Any]) -> str:
        """Get a human-readable summary of verification results"""
        stats = results['stats']
        errors = len(results['errors'])
        warnings = len(results['warnings'])

        summary_parts = [f"{stats['referenced_files']} files referenced by {stats['locators']} locators"]
        if stats['missing_files'] > 0:
            summary_parts.append(f"{stats['missing_files']} missing")
        if stats['orphaned_files'] > 0:
            summary_parts.append(f"{stats['orphaned_files']} orphaned")
        if stats['checksums_verified'] > 0:
            summary_parts.append(f"{stats['checksums_verified']} checksums verified")

        status = "OK" if errors == 0 else "FAILED"
        return (f"Mirror verification {status}: " + ", ".join(summary_parts) +
                f" ({errors} errors, {warnings} warnings)")
