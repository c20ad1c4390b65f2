#!/usr/bin/env python3

from enum import Enum
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any, Tuple

# Explicit marker for downloads published without a checksum
CHECKSUM_UNCHECKED = "no_check"


class StrategyKind(str, Enum):
    PLAIN_ARCHIVE = "plain-archive"
    NO_EXTRACT_ARCHIVE = "archive-no-auto-extract"
    MIRROR_LIST_ARCHIVE = "mirror-list-archive"
    VCS_CHECKOUT = "vcs-checkout"

    @classmethod
    def parse(cls, value: str) -> Optional["StrategyKind"]:
        """Return the kind for a raw strategy name, or None if unknown"""
        for kind in cls:
            if kind.value == value:
                return kind
        return None


class DependencyKind(str, Enum):
    RUNTIME = "runtime"
    BUILD = "build"
    OPTIONAL = "optional"
    RECOMMENDED = "recommended"


@dataclass(frozen=True)
class Dependency:
    name: str
    kind: DependencyKind = DependencyKind.RUNTIME


@dataclass
class Package:
    name: str
    version: str
    collection: str = ""
    dependencies: List[Dependency] = field(default_factory=list)
    # Raw registry download specs, turned into descriptors by ResourceResolver
    downloads: List[Dict[str, Any]] = field(default_factory=list)
    bundle: bool = False

    def dependency_names(self, *kinds: DependencyKind) -> List[str]:
        names = []
        for dep in self.dependencies:
            if dep.kind in kinds and dep.name not in names:
                names.append(dep.name)
        return names


@dataclass(frozen=True)
class DownloadDescriptor:
    locator: str
    strategy: StrategyKind
    checksum: Optional[str] = None
    revision: Optional[str] = None
    resolved_revision: Optional[str] = None
    mirrors: Tuple[str, ...] = ()
    role: str = "stable"
    resource: str = ""
    package: str = ""

    @property
    def is_vcs(self) -> bool:
        return self.strategy == StrategyKind.VCS_CHECKOUT

    @property
    def has_strong_checksum(self) -> bool:
        return bool(self.checksum) and self.checksum != CHECKSUM_UNCHECKED

    def locator_key(self) -> str:
        """Key used by the transparency table"""
        if self.is_vcs:
            return f"{self.locator}@{self.resolved_revision or self.revision or 'HEAD'}"
        return self.locator

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['strategy'] = self.strategy.value
        data['mirrors'] = list(self.mirrors)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DownloadDescriptor":
        return cls(
            locator=data['locator'],
            strategy=StrategyKind(data['strategy']),
            checksum=data.get('checksum'),
            revision=data.get('revision'),
            resolved_revision=data.get('resolved_revision'),
            mirrors=tuple(data.get('mirrors') or ()),
            role=data.get('role', 'stable'),
            resource=data.get('resource', ''),
            package=data.get('package', ''),
        )


@dataclass
class CacheEntry:
    identifier: str
    filename: str
    size: int = 0
    status: str = "unchecked"  # 'verified', 'unchecked' or 'cached'
