#!/usr/bin/env python3

"""
Locator normalization and the redirection map.

The shim that intercepts installer requests runs the same normalization
against the persisted urlmap.json, so the variant order below is part of the
mirror's external contract:

  1. the locator as given
  2. without query string
  3. without fragment
  4. without query string and fragment
  5. trailing slash toggled (only when there is no query or fragment)
  6. trailing slash toggled on the stripped form
  7. percent-decoded
"""

import os
import json
import logging
import threading
from typing import Dict, List, Optional, Set
from urllib.parse import unquote

from ..config.manager import URLMAP_DOCUMENT, write_json
from ..errors import ConfigError

logger = logging.getLogger(__name__)


def clean_locator(locator: str) -> str:
    """Drop query string and fragment"""
    return locator.split('?')[0].split('#')[0]


def _toggle_slash(locator: str) -> str:
    if locator.endswith('/'):
        return locator.rstrip('/')
    return f"{locator}/"


def normalize_for_matching(locator: str) -> List[str]:
    variants = [locator]

    if '?' in locator:
        variants.append(locator.split('?')[0])

    if '#' in locator:
        variants.append(locator.split('#')[0])

    base = clean_locator(locator)
    if '?' in locator or '#' in locator:
        variants.append(base)
    else:
        variants.append(_toggle_slash(locator))

    if base != locator:
        variants.append(_toggle_slash(base))

    decoded = unquote(locator)
    if decoded != locator:
        variants.append(decoded)

    unique = []
    for variant in variants:
        if variant and variant not in unique:
            unique.append(variant)
    return unique


def find_in_urlmap(locator: str, urlmap: Dict[str, str]) -> Optional[str]:
    for variant in normalize_for_matching(locator):
        filename = urlmap.get(variant)
        if filename:
            return filename
    return None


def equivalent(first: str, second: str) -> bool:
    return clean_locator(first) == clean_locator(second)


class RedirectionMap:
    def __init__(self, entries: Optional[Dict[str, str]] = None):
        self._entries: Dict[str, str] = {}
        self._exact: Set[str] = set()
        self._lock = threading.Lock()
        for locator, filename in (entries or {}).items():
            self._entries[locator] = filename
            self._exact.add(locator)

    def register(self, locator: str, filename: str) -> None:
        """Map a locator and its synthesized variants to a cache filename.

        Exact locators always win; a synthesized variant keeps whichever
        filename claimed it first.
        """
        with self._lock:
            self._entries[locator] = filename
            self._exact.add(locator)
            for variant in normalize_for_matching(locator)[1:]:
                if variant not in self._entries:
                    self._entries[variant] = filename

    def lookup(self, locator: str) -> Optional[str]:
        return find_in_urlmap(locator, self._entries)

    def filenames(self) -> Set[str]:
        return set(self._entries.values())

    def as_dict(self) -> Dict[str, str]:
        with self._lock:
            return dict(sorted(self._entries.items()))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, locator: str) -> bool:
        return locator in self._entries

    @classmethod
    def load(cls, directory: str) -> "RedirectionMap":
        return cls(load_urlmap(directory))

    def save(self, directory: str) -> None:
        write_json(os.path.join(directory, URLMAP_DOCUMENT), self.as_dict())


def load_urlmap(directory: str) -> Dict[str, str]:
    path = os.path.join(directory, URLMAP_DOCUMENT)
    if not os.path.exists(path):
        raise ConfigError(f"{URLMAP_DOCUMENT} not found in {directory}")

    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Error reading {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{URLMAP_DOCUMENT} must be a JSON object")
    for key, value in data.items():
        if not isinstance(value, str):
            raise ConfigError(f"{URLMAP_DOCUMENT} entry for {key} is not a filename")
    return data
