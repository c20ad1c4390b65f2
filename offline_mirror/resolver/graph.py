#!/usr/bin/env python3

import logging
from collections import deque
from typing import Dict, List, Iterable, Iterator, Tuple

from ..errors import ResolutionError
from ..registry.client import PackageRegistry
from ..registry.models import DependencyKind

logger = logging.getLogger(__name__)

MAX_TREE_DEPTH = 10


class DependencyGraphResolver:
    def __init__(self, registry: PackageRegistry):
        self.registry = registry
        # Edges recorded by the last resolve(); reused for tree printing
        self._edges: Dict[str, List[str]] = {}

    def _followed_kinds(self, include_build: bool, include_optional: bool) -> Tuple[DependencyKind, ...]:
        kinds = [DependencyKind.RUNTIME, DependencyKind.RECOMMENDED]
        if include_build:
            kinds.append(DependencyKind.BUILD)
        if include_optional:
            kinds.append(DependencyKind.OPTIONAL)
        return tuple(kinds)

    def resolve(self, names: Iterable[str], include_build: bool = False,
                include_optional: bool = False) -> List[str]:
        """Expand names to the sorted set of packages they transitively need"""
        names = list(names or [])
        if not names:
            return []

        kinds = self._followed_kinds(include_build, include_optional)
        resolved = set()
        visited = set()
        queue = deque(names)
        self._edges = {}

        logger.info(f"Resolving dependencies for {len(names)} package{'s' if len(names) != 1 else ''}...")

        while queue:
            name = queue.popleft()
            if name in visited:
                continue
            visited.add(name)

            try:
                package = self.registry.get_package(name)
            except ResolutionError:
                logger.warning(f"Package not found: {name}")
                continue
            except Exception as e:
                logger.warning(f"Error resolving package {name}: {e}")
                continue

            resolved.add(name)
            deps = package.dependency_names(*kinds)
            self._edges[name] = deps
            for dep in deps:
                if dep not in visited:
                    queue.append(dep)

        result = sorted(resolved)
        logger.info(f"Resolved {len(result)} package{'s' if len(result) != 1 else ''} (including dependencies)")
        return result

    def resolve_bundles(self, tokens: Iterable[str], include_build: bool = False) -> Dict[str, List[str]]:
        """Resolve prebuilt bundles plus the packages they depend on"""
        tokens = list(tokens or [])
        if not tokens:
            return {'bundles': [], 'packages': []}

        bundles = set()
        packages = set()
        visited = set()
        queue = deque(tokens)

        while queue:
            token = queue.popleft()
            if token in visited:
                continue
            visited.add(token)

            try:
                bundle = self.registry.get_bundle(token)
            except ResolutionError:
                logger.warning(f"Bundle not found: {token}")
                continue
            except Exception as e:
                logger.warning(f"Error resolving bundle {token}: {e}")
                continue

            bundles.add(token)
            package_deps = []
            for dep in bundle.dependencies:
                if dep.kind == DependencyKind.BUILD and not include_build:
                    continue
                if dep.kind == DependencyKind.OPTIONAL:
                    continue
                # Bundle-on-bundle dependencies are declared with a "bundle:" prefix
                if dep.name.startswith('bundle:'):
                    queue.append(dep.name[len('bundle:'):])
                else:
                    package_deps.append(dep.name)

            if package_deps:
                edges = self._edges
                packages.update(self.resolve(package_deps, include_build=include_build))
                edges.update(self._edges)
                self._edges = edges

        result = {'bundles': sorted(bundles), 'packages': sorted(packages)}
        logger.info(f"Resolved {len(result['bundles'])} bundles, {len(result['packages'])} package dependencies")
        return result

    def dependency_tree(self, roots: Iterable[str], max_depth: int = 2) -> Iterator[Tuple[int, str, bool]]:
        """Yield (depth, name, resolved) over the edges recorded by resolve().

        Names deeper than max_depth are not expanded; cycles are cut on the
        current path.
        """
        max_depth = min(max_depth, MAX_TREE_DEPTH)

        def walk(name: str, depth: int, path: Tuple[str, ...]) -> Iterator[Tuple[int, str, bool]]:
            resolved = name in self._edges
            yield depth, name, resolved
            if not resolved or depth >= max_depth:
                return
            for dep in self._edges[name]:
                if dep in path:
                    continue
                yield from walk(dep, depth + 1, path + (dep,))

        for root in roots:
            yield from walk(root, 0, (root,))

    def format_tree(self, roots: Iterable[str], max_depth: int = 2) -> List[str]:
        lines = []
        for depth, name, resolved in self.dependency_tree(roots, max_depth):
            marker = "└──" if depth == 0 else "├──"
            suffix = "" if resolved else " (not resolved)"
            lines.append(f"{'  ' * depth}{marker} {name}{suffix}")
        return lines
