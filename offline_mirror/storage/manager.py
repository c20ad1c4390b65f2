#!/usr/bin/env python3

import os
import errno
import shutil
import hashlib
import logging
import threading
import psutil
from typing import Callable, Dict, List, Optional, Any, Iterable, Tuple

from ..config.manager import METADATA_FILES, STAGING_DIR
from ..errors import ChecksumMismatch, PathSecurityError
from ..registry.models import CacheEntry

logger = logging.getLogger(__name__)

# Checked before single extensions so .tar.gz is not reported as .gz
MULTI_PART_EXTENSIONS = ('.tar.gz', '.tar.bz2', '.tar.xz', '.tgz', '.tbz', '.txz')
SINGLE_EXTENSIONS = ('.dmg', '.pkg', '.mpkg', '.zip', '.7z', '.rar', '.app', '.jar',
                     '.gz', '.bz2', '.xz', '.tar', '.whl', '.gem', '.deb', '.rpm',
                     '.patch', '.diff')


def detect_extension(locator: str) -> str:
    """Container extension of a locator, or '' when none is recognised"""
    lowered = locator.lower()
    for extensions in (MULTI_PART_EXTENSIONS, SINGLE_EXTENSIONS):
        for ext in extensions:
            if lowered.endswith(ext) or f"{ext}?" in lowered or f"{ext}#" in lowered:
                return ext
    return ""


def safe_join(directory: str, filename: str) -> str:
    base = os.path.realpath(directory)
    path = os.path.realpath(os.path.join(base, filename))
    if not path.startswith(base + os.sep):
        raise PathSecurityError(f"Refusing to write outside {base}: {filename}")
    return path


def sha256_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b''):
            digest.update(chunk)
    return digest.hexdigest()


def _identifier_of(filename: str) -> str:
    return filename.split('.', 1)[0]


class CacheStore:
    """Flat, append-only store of fetched resources, one file per identifier"""

    def __init__(self, directory: str):
        self.directory = directory
        self.staging_dir = os.path.join(directory, STAGING_DIR)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def ensure_directory_structure(self) -> None:
        os.makedirs(self.directory, mode=0o755, exist_ok=True)
        os.makedirs(self.staging_dir, mode=0o755, exist_ok=True)

    def _lock_for(self, identifier: str) -> threading.Lock:
        with self._locks_guard:
            if identifier not in self._locks:
                self._locks[identifier] = threading.Lock()
            return self._locks[identifier]

    def _is_payload(self, filename: str) -> bool:
        if filename in METADATA_FILES or filename.startswith('.'):
            return False
        return not filename.endswith(('.tmp', '.partial'))

    def filenames(self) -> List[str]:
        """Payload file names, read from the directory listing without sizes"""
        if not os.path.isdir(self.directory):
            return []
        with os.scandir(self.directory) as it:
            return sorted(entry.name for entry in it if self._is_payload(entry.name) and entry.is_file())

    def list(self) -> List[CacheEntry]:
        return [
            CacheEntry(
                identifier=_identifier_of(filename),
                filename=filename,
                size=os.path.getsize(os.path.join(self.directory, filename)),
            )
            for filename in self.filenames()
        ]

    def get(self, identifier: str) -> Optional[CacheEntry]:
        for entry in self.list():
            if entry.identifier == identifier:
                return entry
        return None

    def _existing(self, identifier: str, extension: str) -> Optional[str]:
        """File name of a sane (non-empty) entry for identifier, whatever its extension"""
        preferred = f"{identifier}{extension}"
        candidates = [preferred] + [
            name for name in self.filenames()
            if name != preferred and _identifier_of(name) == identifier
        ]
        for filename in candidates:
            path = safe_join(self.directory, filename)
            if os.path.isfile(path) and os.path.getsize(path) > 0:
                return filename
        return None

    def put(self, identifier: str, temp_path: str, extension: str,
            checksum: Optional[str] = None) -> CacheEntry:
        existing = self._existing(identifier, extension)
        if existing:
            logger.debug(f"{existing} already cached, discarding new copy")
            os.remove(temp_path)
            return self._entry(existing, 'cached')

        filename = f"{identifier}{extension}"
        final_path = safe_join(self.directory, filename)

        status = 'unchecked'
        if checksum:
            actual = sha256_file(temp_path)
            if actual != checksum.lower():
                os.remove(temp_path)
                raise ChecksumMismatch(
                    f"Checksum mismatch for {filename}: expected {checksum}, got {actual}",
                    expected=checksum,
                    actual=actual
                )
            status = 'verified'

        self._move_into_place(temp_path, final_path)
        logger.debug(f"Stored {filename}")
        return self._entry(filename, status)

    def _move_into_place(self, temp_path: str, final_path: str) -> None:
        try:
            os.replace(temp_path, final_path)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            # Staging on another filesystem: copy next to the target, then rename
            partial_path = f"{final_path}.partial"
            shutil.copyfile(temp_path, partial_path)
            os.replace(partial_path, final_path)
            os.remove(temp_path)

    def _entry(self, filename: str, status: str) -> CacheEntry:
        return CacheEntry(
            identifier=_identifier_of(filename),
            filename=filename,
            size=os.path.getsize(os.path.join(self.directory, filename)),
            status=status,
        )

    def obtain(self, identifier: str, extension: str, fetch: Callable[[], str],
               checksum: Optional[str] = None) -> Tuple[CacheEntry, bool]:
        """Return (entry, fetched); fetch() runs only when no sane entry exists"""
        with self._lock_for(identifier):
            existing = self._existing(identifier, extension)
            if existing:
                return self._entry(existing, 'cached'), False

            temp_path = fetch()
            return self.put(identifier, str(temp_path), extension, checksum), True

    def prune(self, keep_filenames: Iterable[str]) -> List[str]:
        keep = set(keep_filenames)
        removed = []
        for entry in self.list():
            if entry.filename in keep:
                continue
            try:
                os.remove(os.path.join(self.directory, entry.filename))
                removed.append(entry.filename)
                logger.info(f"Pruned {entry.filename}")
            except OSError as e:
                logger.warning(f"Failed to prune {entry.filename}: {e}")
        return removed

    def cleanup_partial(self) -> Dict[str, Any]:
        """Remove leftovers of interrupted fetches"""
        result = {'deleted_files': 0, 'freed_space': 0, 'errors': []}

        candidates = []
        if os.path.isdir(self.staging_dir):
            for name in os.listdir(self.staging_dir):
                candidates.append(os.path.join(self.staging_dir, name))
        if os.path.isdir(self.directory):
            for name in os.listdir(self.directory):
                if name.endswith(('.partial', '.tmp')):
                    candidates.append(os.path.join(self.directory, name))

        for path in candidates:
            try:
                if os.path.isdir(path):
                    shutil.rmtree(path)
                else:
                    result['freed_space'] += os.path.getsize(path)
                    os.remove(path)
                result['deleted_files'] += 1
                logger.debug(f"Removed partial download: {path}")
            except OSError as e:
                logger.warning(f"Failed to remove {path}: {e}")
                result['errors'].append(str(e))

        return result

    def check_disk_space(self, required_gb: float = 1.0) -> Dict[str, Any]:
        path = self.directory if os.path.exists(self.directory) else os.path.dirname(os.path.abspath(self.directory))
        space_check = {
            'sufficient_space': True,
            'available_gb': 0,
            'required_gb': required_gb,
            'path': path,
        }

        try:
            disk_usage = psutil.disk_usage(path)
            available_gb = disk_usage.free / (1024**3)
            space_check['available_gb'] = available_gb
            space_check['sufficient_space'] = available_gb >= required_gb
        except Exception as e:
            logger.error(f"Failed to check disk space for {path}: {e}")
            space_check['error'] = str(e)

        return space_check

    def total_size(self) -> int:
        return sum(entry.size for entry in self.list())
