#!/usr/bin/env python3

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Iterable
from urllib.parse import urlparse

from ..errors import UnsupportedStrategyError, ResolutionError
from ..registry.models import (
    Package, DownloadDescriptor, StrategyKind, CHECKSUM_UNCHECKED,
)

logger = logging.getLogger(__name__)

ROLES = ("stable", "head", "resource", "patch", "variant")


@dataclass
class ResourceResolution:
    package: str
    descriptors: List[DownloadDescriptor] = field(default_factory=list)
    # Left out on purpose: strategy outside the allow-list
    skipped: List[Dict[str, str]] = field(default_factory=list)
    # Malformed download specs
    errors: List[Dict[str, str]] = field(default_factory=list)


def looks_like_vcs(locator: str) -> bool:
    parsed = urlparse(locator)
    if parsed.scheme in ('git', 'git+https', 'git+ssh', 'git+http'):
        return True
    if locator.startswith('git@'):
        return True
    return parsed.path.endswith('.git')


class ResourceResolver:
    """Turns a package's raw download specs into typed descriptors.

    This is the only place that inspects what a registry entry can do; every
    later step works from the StrategyKind recorded on the descriptor.
    """

    def __init__(self, allowed_strategies: Iterable[StrategyKind], platforms: Optional[List[str]] = None):
        self.allowed_strategies = set(allowed_strategies)
        self.platforms = list(platforms or [])

    def resolve(self, package: Package) -> ResourceResolution:
        resolution = ResourceResolution(package=package.name)

        for raw in package.downloads:
            locator = self._locator(raw)
            try:
                descriptor = self._build_descriptor(package, raw)
            except UnsupportedStrategyError as e:
                logger.warning(f"Skipping {package.name} download {locator}: {e}")
                resolution.skipped.append({
                    'package': package.name,
                    'locator': locator,
                    'strategy': e.strategy,
                    'reason': str(e),
                })
                continue
            except ResolutionError as e:
                logger.error(f"Invalid download spec for {package.name}: {e}")
                resolution.errors.append({
                    'package': package.name,
                    'locator': locator,
                    'error': str(e),
                })
                continue

            if descriptor is not None:
                resolution.descriptors.append(descriptor)

        logger.debug(f"{package.name}: {len(resolution.descriptors)} descriptors, "
                     f"{len(resolution.skipped)} skipped")
        return resolution

    def _locator(self, raw: Any) -> str:
        if isinstance(raw, dict):
            return str(raw.get('url') or raw.get('locator') or '')
        return ''

    def _build_descriptor(self, package: Package, raw: Any) -> Optional[DownloadDescriptor]:
        if not isinstance(raw, dict):
            raise ResolutionError(f"download spec must be a mapping, got {type(raw).__name__}")

        locator = self._locator(raw)
        if not locator:
            raise ResolutionError("download spec has no url")

        role = raw.get('role', 'stable')
        if role not in ROLES:
            raise ResolutionError(f"unknown download role '{role}'")

        if role == 'variant':
            platform = raw.get('platform', '')
            if platform not in self.platforms:
                logger.debug(f"Ignoring {package.name} variant for platform {platform or '?'}")
                return None

        strategy = self._strategy_for(raw, locator)

        checksum = raw.get('sha256') or raw.get('checksum')
        if checksum is not None:
            checksum = str(checksum)
            if checksum != CHECKSUM_UNCHECKED:
                checksum = checksum.lower()
        elif strategy != StrategyKind.VCS_CHECKOUT:
            checksum = CHECKSUM_UNCHECKED

        mirrors = tuple(str(m) for m in raw.get('mirrors') or ())

        return DownloadDescriptor(
            locator=locator,
            strategy=strategy,
            checksum=checksum,
            revision=raw.get('revision') or raw.get('branch') or raw.get('tag'),
            mirrors=mirrors,
            role=role,
            resource=str(raw.get('name') or raw.get('platform') or ''),
            package=package.name,
        )

    def _strategy_for(self, raw: Dict[str, Any], locator: str) -> StrategyKind:
        using = raw.get('using')
        if using:
            kind = StrategyKind.parse(str(using))
            if kind is None:
                raise UnsupportedStrategyError(f"unsupported download strategy '{using}'", strategy=str(using))
        elif looks_like_vcs(locator):
            kind = StrategyKind.VCS_CHECKOUT
        elif raw.get('mirrors'):
            kind = StrategyKind.MIRROR_LIST_ARCHIVE
        else:
            kind = StrategyKind.PLAIN_ARCHIVE

        if kind not in self.allowed_strategies:
            raise UnsupportedStrategyError(f"strategy '{kind.value}' is not in the allow-list", strategy=kind.value)
        return kind
