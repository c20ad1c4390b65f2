#!/usr/bin/env python3

import os
import json
import hashlib
import logging
import threading
from typing import Dict, Optional

from ..config.manager import IDENTIFIER_TABLE, write_json
from ..registry.models import DownloadDescriptor

logger = logging.getLogger(__name__)

# Revision hashed when the concrete commit of a checkout cannot be determined
UNRESOLVED_REVISION = "HEAD"


def stable_hash(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


class IdentifierAssigner:
    """Derives the cache key of a download.

    Rules, in order:
      1. a strong checksum is the identifier (shared checksums share an entry)
      2. a VCS checkout hashes locator@resolved-revision, or locator@HEAD
      3. anything else hashes the locator
    """

    def __init__(self, table: Optional["IdentifierTable"] = None):
        self.table = table

    def assign(self, descriptor: DownloadDescriptor) -> str:
        if descriptor.has_strong_checksum:
            identifier = descriptor.checksum.lower()
        elif descriptor.is_vcs:
            revision = descriptor.resolved_revision or UNRESOLVED_REVISION
            identifier = stable_hash(f"{descriptor.locator}@{revision}")
        else:
            identifier = stable_hash(descriptor.locator)

        if self.table is not None:
            self.table.record(descriptor.locator_key(), identifier)
        return identifier


class IdentifierTable:
    """Locator key -> identifier table kept for operators; never authoritative"""

    def __init__(self, entries: Optional[Dict[str, str]] = None):
        self._entries: Dict[str, str] = dict(entries or {})
        self._lock = threading.Lock()

    def record(self, key: str, identifier: str) -> None:
        with self._lock:
            self._entries[key] = identifier

    def get(self, key: str) -> Optional[str]:
        return self._entries.get(key)

    def as_dict(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    @classmethod
    def load(cls, directory: str) -> "IdentifierTable":
        path = os.path.join(directory, IDENTIFIER_TABLE)
        if not os.path.exists(path):
            return cls()
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable identifier table {path}: {e}")
            return cls()
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed identifier table {path}")
            return cls()
        return cls(data)

    def save(self, directory: str) -> None:
        write_json(os.path.join(directory, IDENTIFIER_TABLE), self.as_dict())
