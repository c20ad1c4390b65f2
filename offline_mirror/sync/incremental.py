#!/usr/bin/env python3

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Iterable

from ..registry.models import Package
from ..storage.manifest import RunManifest

logger = logging.getLogger(__name__)


@dataclass
class UpdatePlan:
    unchanged: List[str] = field(default_factory=list)
    new: List[str] = field(default_factory=list)
    # Prior (name, version) pairs that are no longer resolved
    stale: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'unchanged': self.unchanged, 'new': self.new, 'stale': self.stale}


def plan_update(prior: Optional[RunManifest], packages: Iterable[Package]) -> UpdatePlan:
    """Partition packages against the previous run.

    A package is unchanged only when the exact (name, version) pair was
    mirrored completely last time; any other version, rollbacks included,
    is new.
    """
    packages = list(packages)
    plan = UpdatePlan()

    complete = set()
    if prior is not None:
        complete = {
            (record['name'], record['version'])
            for record in prior.packages if record.get('complete', True)
        }

    current = set()
    for package in packages:
        key = (package.name, package.version)
        current.add(key)
        if key in complete:
            plan.unchanged.append(package.name)
        else:
            plan.new.append(package.name)

    if prior is not None:
        for name, version in prior.package_keys():
            if (name, version) not in current:
                plan.stale.append({'name': name, 'version': version})

    plan.unchanged.sort()
    plan.new.sort()
    plan.stale.sort(key=lambda r: (r['name'], r['version']))

    logger.info(f"Update plan: {len(plan.unchanged)} unchanged, {len(plan.new)} new, {len(plan.stale)} stale")
    return plan


def carry_forward(prior: RunManifest, package: Package, directory: str) -> Optional[List[Dict[str, Any]]]:
    """Prior descriptor records for an unchanged package, or None if any file is gone"""
    record = prior.find(package.name, package.version)
    if record is None:
        return None

    descriptors = record.get('descriptors') or []
    for entry in descriptors:
        filename = entry.get('filename')
        if not filename or not os.path.isfile(os.path.join(directory, filename)):
            logger.info(f"{package.name} {package.version}: {filename or 'entry'} missing, mirroring again")
            return None
    return descriptors
