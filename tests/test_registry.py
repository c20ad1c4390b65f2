#!/usr/bin/env python3

import os
import json
import pytest
import yaml

from offline_mirror.errors import ConfigError, ResolutionError
from offline_mirror.registry.client import IndexFileRegistry, StaticRegistry
from offline_mirror.registry.models import (
    Dependency, DependencyKind, DownloadDescriptor, Package, StrategyKind,
)


SAMPLE_INDEX = {
    'collections': {
        'core': {'revision': 'abc123', 'kind': 'packages'},
        'casks': 'def456',
    },
    'packages': {
        'wget': {
            'version': '1.24.5',
            'collection': 'core',
            'dependencies': ['openssl', {'name': 'pkgconf', 'kind': 'build'}],
            'downloads': [{'role': 'stable', 'url': 'https://example.com/wget.tar.gz', 'sha256': 'ab' * 32}],
        },
        'openssl': {'version': '3.3.0', 'collection': 'core'},
    },
    'bundles': {
        'firefox': {'version': '128.0', 'dependencies': ['wget']},
    },
}


class TestModels:
    """Test domain types"""

    def test_strategy_kind_parse(self):
        assert StrategyKind.parse("vcs-checkout") == StrategyKind.VCS_CHECKOUT
        assert StrategyKind.parse("cvs") is None

    def test_dependency_names_filters_kinds(self):
        package = Package(
            name="a",
            version="1",
            dependencies=[
                Dependency("b"),
                Dependency("c", DependencyKind.BUILD),
                Dependency("b", DependencyKind.RECOMMENDED),
            ],
        )

        assert package.dependency_names(DependencyKind.RUNTIME) == ["b"]
        assert package.dependency_names(DependencyKind.RUNTIME, DependencyKind.BUILD) == ["b", "c"]
        assert package.dependency_names(DependencyKind.RUNTIME, DependencyKind.RECOMMENDED) == ["b"]

    def test_descriptor_checksum_properties(self):
        checked = DownloadDescriptor("https://x/a.zip", StrategyKind.PLAIN_ARCHIVE, checksum="ab" * 32)
        unchecked = DownloadDescriptor("https://x/a.zip", StrategyKind.PLAIN_ARCHIVE, checksum="no_check")

        assert checked.has_strong_checksum
        assert not unchecked.has_strong_checksum

    def test_descriptor_locator_key(self):
        descriptor = DownloadDescriptor("https://x/repo.git", StrategyKind.VCS_CHECKOUT, revision="main")

        assert descriptor.locator_key() == "https://x/repo.git@main"
        assert descriptor.__class__(
            "https://x/repo.git", StrategyKind.VCS_CHECKOUT, resolved_revision="f" * 40
        ).locator_key() == "https://x/repo.git@" + "f" * 40

    def test_descriptor_dict_round_trip(self):
        descriptor = DownloadDescriptor(
            "https://x/a.tar.gz", StrategyKind.MIRROR_LIST_ARCHIVE,
            checksum="ab" * 32, mirrors=("https://y/a.tar.gz",), role="resource",
            resource="docs", package="a",
        )

        data = descriptor.to_dict()
        assert data['strategy'] == "mirror-list-archive"
        assert json.loads(json.dumps(data)) == data
        assert DownloadDescriptor.from_dict(data) == descriptor


class TestStaticRegistry:
    """Test the in-memory registry"""

    def setup_method(self):
        self.registry = StaticRegistry(
            packages={
                "a": Package("a", "1", collection="core"),
                "b": Package("b", "2", collection="extra"),
            },
            bundles={"app": Package("app", "3", bundle=True)},
            collections={"core": {"revision": "r1", "kind": "packages"}},
        )

    def test_get_package(self):
        assert self.registry.get_package("a").version == "1"

    def test_missing_package(self):
        with pytest.raises(ResolutionError, match="Package not found: zzz"):
            self.registry.get_package("zzz")

    def test_missing_bundle(self):
        with pytest.raises(ResolutionError, match="Bundle not found"):
            self.registry.get_bundle("zzz")

    def test_package_names_by_collection(self):
        assert self.registry.package_names() == ["a", "b"]
        assert self.registry.package_names(["extra"]) == ["b"]

    def test_collections_are_copies(self):
        pins = self.registry.collections()
        pins["core"]["revision"] = "changed"

        assert self.registry.collections()["core"]["revision"] == "r1"


class TestIndexFileRegistry:
    """Test the index-file backed registry"""

    def test_load_yaml_index(self, temp_dir):
        path = os.path.join(temp_dir, "index.yaml")
        with open(path, 'w') as f:
            yaml.dump(SAMPLE_INDEX, f)

        registry = IndexFileRegistry(path)

        wget = registry.get_package("wget")
        assert wget.dependency_names(DependencyKind.RUNTIME) == ["openssl"]
        assert wget.dependency_names(DependencyKind.BUILD) == ["pkgconf"]
        assert wget.downloads[0]['url'] == 'https://example.com/wget.tar.gz'
        assert registry.get_bundle("firefox").bundle is True
        assert registry.collections() == {
            'core': {'revision': 'abc123', 'kind': 'packages'},
            'casks': {'revision': 'def456', 'kind': 'packages'},
        }

    def test_load_json_index(self, temp_dir):
        path = os.path.join(temp_dir, "index.json")
        with open(path, 'w') as f:
            json.dump(SAMPLE_INDEX, f)

        assert IndexFileRegistry(path).package_names() == ["openssl", "wget"]

    def test_missing_index(self, temp_dir):
        with pytest.raises(ConfigError, match="not found"):
            IndexFileRegistry(os.path.join(temp_dir, "nope.yaml"))

    def test_index_not_a_mapping(self, temp_dir):
        path = os.path.join(temp_dir, "index.yaml")
        with open(path, 'w') as f:
            f.write("- a\n- b\n")

        with pytest.raises(ConfigError, match="must be a mapping"):
            IndexFileRegistry(path)

    @pytest.mark.parametrize("dependency", [
        {'kind': 'runtime'},
        {'name': 'x', 'kind': 'sometimes'},
        42,
    ])
    def test_malformed_dependency(self, temp_dir, dependency):
        path = os.path.join(temp_dir, "index.yaml")
        with open(path, 'w') as f:
            yaml.dump({'packages': {'a': {'version': '1', 'dependencies': [dependency]}}}, f)

        with pytest.raises(ConfigError):
            IndexFileRegistry(path)
