#!/usr/bin/env python3

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Any, Tuple

from .engines import StrategyManager
from .incremental import UpdatePlan, carry_forward, plan_update
from ..config.manager import MirrorConfig, write_mirror_document
from ..errors import EmptyResolutionError, MirrorError, ResolutionError, UnsupportedStrategyError
from ..redirect.urlmap import RedirectionMap
from ..registry.client import PackageRegistry
from ..registry.models import DownloadDescriptor, Package, StrategyKind
from ..resolver.graph import DependencyGraphResolver
from ..resolver.identifiers import IdentifierAssigner, IdentifierTable, UNRESOLVED_REVISION
from ..resolver.resources import ResourceResolver
from ..storage.manager import CacheStore
from ..storage.manifest import RunManifest
from ..storage.snapshot import MetadataSnapshot

logger = logging.getLogger(__name__)


@dataclass
class MirrorOptions:
    with_deps: bool = False
    include_build: bool = False
    include_optional: bool = False
    bundles: List[str] = field(default_factory=list)
    collections: List[str] = field(default_factory=list)
    update: bool = False
    prune: bool = False
    config_only: bool = False
    debug_tree: bool = False


@dataclass
class RunSummary:
    directory: str = ""
    packages: List[str] = field(default_factory=list)
    bundles: List[str] = field(default_factory=list)
    fetched: int = 0
    cached: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)
    plan: Optional[UpdatePlan] = None
    tree: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return 'partial' if self.failures else 'completed'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'directory': self.directory,
            'status': self.status,
            'packages': self.packages,
            'bundles': self.bundles,
            'fetched': self.fetched,
            'cached': self.cached,
            'failures': self.failures,
            'skipped': self.skipped,
            'unresolved': self.unresolved,
            'warnings': self.warnings,
            'pruned': self.pruned,
            'plan': self.plan.to_dict() if self.plan else None,
        }


class MirrorRunner:
    def __init__(self, config: MirrorConfig, registry: PackageRegistry,
                 strategies: Optional[StrategyManager] = None,
                 store: Optional[CacheStore] = None):
        self.config = config
        self.registry = registry
        self.strategies = strategies or StrategyManager(config)
        self.store = store or CacheStore(config.base_path)
        self.graph = DependencyGraphResolver(registry)
        self.resources = ResourceResolver(config.allowed_kinds(), config.platforms)

    @property
    def directory(self) -> str:
        return self.store.directory

    def run(self, names: List[str], options: Optional[MirrorOptions] = None) -> RunSummary:
        options = options or MirrorOptions()
        self.config.validate()

        summary = RunSummary(directory=self.directory)
        self._prepare_directory(summary)
        collections = self._collection_pins(options, summary)

        if options.config_only:
            write_mirror_document(self.directory, self.config, collections)
            logger.info(f"Wrote configuration document to {self.directory}")
            return summary

        prior = RunManifest.load(self.directory) if options.update else None
        if options.update and prior is None:
            summary.warnings.append("No previous manifest found; mirroring everything")

        packages = self._resolve_packages(names, options, prior, summary)
        if not packages:
            raise EmptyResolutionError("No packages resolved; nothing to mirror")

        if prior is not None:
            summary.plan = plan_update(prior, packages)

        # Rebuilt every run so it only lists what this run mirrored
        table = IdentifierTable()
        assigner = IdentifierAssigner(table)
        urlmap = RedirectionMap()
        records: List[Dict[str, Any]] = []
        jobs: List[Tuple[Package, DownloadDescriptor]] = []
        carried: Dict[str, List[Dict[str, Any]]] = {}

        unchanged = set(summary.plan.unchanged) if summary.plan else set()
        for package in packages:
            if package.name in unchanged:
                previous = carry_forward(prior, package, self.directory)
                if previous is not None:
                    carried[package.name] = previous
                    continue

            resolution = self.resources.resolve(package)
            summary.skipped.extend(resolution.skipped)
            for error in resolution.errors:
                summary.failures.append(dict(error, status='failed'))
            for descriptor in resolution.descriptors:
                jobs.append((package, descriptor))

        if not jobs and not carried:
            raise EmptyResolutionError("No downloadable resources resolved; nothing to mirror")

        results = self._run_jobs(jobs, assigner)

        by_package: Dict[str, List[Dict[str, Any]]] = {}
        failed_packages = set()
        for (package, _), result in zip(jobs, results):
            status = result['status']
            if result.get('warning'):
                summary.warnings.append(result['warning'])
            if status == 'fetched':
                summary.fetched += 1
            elif status == 'cached':
                summary.cached += 1
            elif status == 'skipped':
                summary.skipped.append(result['skip'])
                continue
            else:
                summary.failures.append(result['failure'])
                failed_packages.add(package.name)
                continue
            by_package.setdefault(package.name, []).append(result['record'])

        for package in packages:
            if package.name in carried:
                descriptors = carried[package.name]
                summary.cached += len(descriptors)
                for entry in descriptors:
                    descriptor = DownloadDescriptor.from_dict(entry)
                    table.record(descriptor.locator_key(), entry['identifier'])
            else:
                descriptors = by_package.get(package.name, [])

            for entry in descriptors:
                self._register(urlmap, entry)

            records.append({
                'name': package.name,
                'version': package.version,
                'bundle': package.bundle,
                'complete': package.name not in failed_packages,
                'descriptors': descriptors,
            })

        if options.prune:
            summary.pruned = self.store.prune(urlmap.filenames())

        self._write_documents(urlmap, table, collections, packages, records, summary)

        logger.info(f"Mirror run finished: {summary.fetched} fetched, {summary.cached} cached, "
                    f"{len(summary.failures)} failed, {len(summary.skipped)} skipped")
        return summary

    def _prepare_directory(self, summary: RunSummary) -> None:
        self.store.ensure_directory_structure()

        space = self.store.check_disk_space(self.config.min_free_gb)
        if not space['sufficient_space']:
            message = (f"Low disk space in {self.directory}: {space['available_gb']:.1f} GB free, "
                       f"{space['required_gb']} GB recommended")
            logger.warning(message)
            summary.warnings.append(message)

        cleanup = self.store.cleanup_partial()
        if cleanup['deleted_files']:
            logger.info(f"Removed {cleanup['deleted_files']} partial downloads")

    def _collection_pins(self, options: MirrorOptions, summary: RunSummary) -> Dict[str, Dict[str, str]]:
        pins = self.registry.collections()
        if not options.collections:
            return pins

        selected = {}
        for name in options.collections:
            if name in pins:
                selected[name] = pins[name]
            else:
                message = f"Collection not served by registry: {name}"
                logger.warning(message)
                summary.warnings.append(message)
        return selected

    def _resolve_packages(self, names: List[str], options: MirrorOptions,
                          prior: Optional[RunManifest], summary: RunSummary) -> List[Package]:
        targets = list(dict.fromkeys(names or []))
        if prior is not None:
            # An update refreshes everything mirrored before plus what was asked for now
            for name, _ in prior.package_keys():
                if name not in targets and not self._was_bundle(prior, name):
                    targets.append(name)
        if not targets and not options.bundles:
            targets = self.registry.package_names(options.collections or None)
            logger.info(f"No packages named; mirroring all {len(targets)} registry packages")

        if options.with_deps or options.debug_tree:
            expanded = self.graph.resolve(targets, options.include_build, options.include_optional)
            if options.debug_tree:
                summary.tree = self.graph.format_tree(targets)
            if options.with_deps:
                summary.unresolved.extend(name for name in targets if name not in expanded)
                targets = expanded

        bundle_names = list(options.bundles)
        if prior is not None:
            bundle_names += [r['name'] for r in prior.packages if r.get('bundle') and r['name'] not in bundle_names]
        if bundle_names:
            resolved = self.graph.resolve_bundles(bundle_names, options.include_build)
            bundle_names = resolved['bundles']
            targets += [name for name in resolved['packages'] if name not in targets]

        packages = []
        for name in sorted(set(targets)):
            try:
                packages.append(self.registry.get_package(name))
            except ResolutionError as e:
                logger.warning(str(e))
                summary.unresolved.append(name)

        for token in bundle_names:
            try:
                packages.append(self.registry.get_bundle(token))
            except ResolutionError as e:
                logger.warning(str(e))
                summary.unresolved.append(token)

        for token in options.bundles:
            if token not in bundle_names and token not in summary.unresolved:
                summary.unresolved.append(token)

        summary.packages = [p.name for p in packages if not p.bundle]
        summary.bundles = [p.name for p in packages if p.bundle]
        return packages

    def _was_bundle(self, prior: RunManifest, name: str) -> bool:
        return any(r['name'] == name and r.get('bundle') for r in prior.packages)

    def _run_jobs(self, jobs: List[Tuple[Package, DownloadDescriptor]],
                  assigner: IdentifierAssigner) -> List[Dict[str, Any]]:
        if self.config.max_workers <= 1 or len(jobs) <= 1:
            return [self._mirror_descriptor(package, descriptor, assigner) for package, descriptor in jobs]

        results: List[Optional[Dict[str, Any]]] = [None] * len(jobs)
        logger.info(f"Fetching {len(jobs)} resources with {self.config.max_workers} workers")
        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = {
                executor.submit(self._mirror_descriptor, package, descriptor, assigner): index
                for index, (package, descriptor) in enumerate(jobs)
            }
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        return results

    def _mirror_descriptor(self, package: Package, descriptor: DownloadDescriptor,
                           assigner: IdentifierAssigner) -> Dict[str, Any]:
        """Fetch one resource; never raises, failures come back as result dicts"""
        result: Dict[str, Any] = {'status': 'failed'}
        try:
            if descriptor.is_vcs and not descriptor.resolved_revision:
                revision = self.strategies.resolve_revision(descriptor)
                if revision is None:
                    result['warning'] = (f"{package.name}: could not resolve revision of {descriptor.locator}, "
                                         f"identifying it by {UNRESOLVED_REVISION}")
                    logger.warning(result['warning'])
                descriptor = replace(descriptor, resolved_revision=revision)

            identifier = assigner.assign(descriptor)
            extension = self.strategies.extension_for(descriptor)
            checksum = descriptor.checksum if descriptor.has_strong_checksum else None

            entry, fetched = self.store.obtain(
                identifier,
                extension,
                lambda: self.strategies.fetch(descriptor, self.store.staging_dir),
                checksum
            )
        except UnsupportedStrategyError as e:
            logger.warning(f"Skipping {descriptor.locator}: {e}")
            result['status'] = 'skipped'
            result['skip'] = {
                'package': package.name,
                'locator': descriptor.locator,
                'strategy': e.strategy,
                'reason': str(e),
            }
            return result
        except MirrorError as e:
            logger.error(f"Failed to mirror {descriptor.locator} for {package.name}: {e}")
            result['failure'] = self._failure(package, descriptor, e)
            return result
        except Exception as e:
            logger.error(f"Unexpected error mirroring {descriptor.locator} for {package.name}: {e}")
            result['failure'] = self._failure(package, descriptor, e)
            return result

        if fetched:
            logger.info(f"Fetched {descriptor.locator} -> {entry.filename}")
        else:
            logger.debug(f"Already cached: {entry.filename}")

        result['status'] = 'fetched' if fetched else 'cached'
        result['record'] = dict(descriptor.to_dict(), identifier=entry.identifier, filename=entry.filename)
        return result

    def _failure(self, package: Package, descriptor: DownloadDescriptor, error: Exception) -> Dict[str, str]:
        return {
            'package': package.name,
            'locator': descriptor.locator,
            'status': 'failed',
            'error': str(error),
            'code': getattr(error, 'code', type(error).__name__),
        }

    def _register(self, urlmap: RedirectionMap, entry: Dict[str, Any]) -> None:
        urlmap.register(entry['locator'], entry['filename'])
        if entry.get('strategy') == StrategyKind.MIRROR_LIST_ARCHIVE.value:
            for mirror in entry.get('mirrors') or []:
                urlmap.register(mirror, entry['filename'])

    def _write_documents(self, urlmap: RedirectionMap, table: IdentifierTable,
                         collections: Dict[str, Dict[str, str]], packages: List[Package],
                         records: List[Dict[str, Any]], summary: RunSummary) -> None:
        if not len(urlmap):
            summary.warnings.append("Redirection map is empty; every resource failed or was skipped")

        urlmap.save(self.directory)
        table.save(self.directory)
        snapshot = MetadataSnapshot(self.directory).write(packages, records)
        summary.warnings.extend(snapshot['errors'])
        write_mirror_document(self.directory, self.config, collections)

        manifest = RunManifest(
            collections=collections,
            stats={
                'packages': len(records),
                'resources': sum(len(r['descriptors']) for r in records),
                'fetched': summary.fetched,
                'cached': summary.cached,
                'failed': len(summary.failures),
                'skipped': len(summary.skipped),
                'total_size': self.store.total_size(),
            },
            packages=records,
        )
        manifest.save(self.directory)
