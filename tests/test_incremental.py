#!/usr/bin/env python3

import os

from offline_mirror.registry.models import Package
from offline_mirror.storage.manifest import RunManifest
from offline_mirror.sync.incremental import carry_forward, plan_update


def record(name, version, complete=True, descriptors=None):
    return {
        'name': name,
        'version': version,
        'bundle': False,
        'complete': complete,
        'descriptors': descriptors or [],
    }


class TestPlanUpdate:
    """Test partitioning of packages against a previous run"""

    def setup_method(self):
        self.prior = RunManifest(packages=[
            record("wget", "1.24.5"),
            record("openssl", "3.3.0"),
            record("curl", "8.8.0", complete=False),
            record("zlib", "1.3"),
        ])

    def test_partition(self):
        packages = [
            Package("wget", "1.24.5"),
            Package("openssl", "3.3.1"),
            Package("jq", "1.7"),
        ]

        plan = plan_update(self.prior, packages)

        assert plan.unchanged == ["wget"]
        assert plan.new == ["jq", "openssl"]
        assert plan.stale == [
            {'name': 'curl', 'version': '8.8.0'},
            {'name': 'openssl', 'version': '3.3.0'},
            {'name': 'zlib', 'version': '1.3'},
        ]

    def test_rollback_is_new(self):
        prior = RunManifest(packages=[record("tool", "1.0")])

        plan = plan_update(prior, [Package("tool", "0.9")])

        assert plan.new == ["tool"]
        assert plan.unchanged == []
        assert plan.stale == [{'name': 'tool', 'version': '1.0'}]

    def test_incomplete_package_is_new(self):
        plan = plan_update(self.prior, [Package("curl", "8.8.0")])

        assert plan.new == ["curl"]
        assert plan.stale == [
            {'name': 'openssl', 'version': '3.3.0'},
            {'name': 'wget', 'version': '1.24.5'},
            {'name': 'zlib', 'version': '1.3'},
        ]

    def test_no_prior_manifest(self):
        plan = plan_update(None, [Package("b", "1"), Package("a", "1")])

        assert plan.new == ["a", "b"]
        assert plan.unchanged == []
        assert plan.stale == []

    def test_to_dict(self):
        plan = plan_update(self.prior, [Package("wget", "1.24.5")])

        assert set(plan.to_dict()) == {'unchanged', 'new', 'stale'}


class TestCarryForward:
    """Test reuse of prior descriptor records"""

    def setup_method(self):
        self.descriptors = [
            {'locator': 'https://x/wget.tar.gz', 'strategy': 'plain-archive', 'filename': 'abc.tar.gz'},
        ]
        self.prior = RunManifest(packages=[record("wget", "1.24.5", descriptors=self.descriptors)])

    def test_files_present(self, temp_dir):
        open(os.path.join(temp_dir, "abc.tar.gz"), 'w').close()

        assert carry_forward(self.prior, Package("wget", "1.24.5"), temp_dir) == self.descriptors

    def test_file_missing(self, temp_dir):
        assert carry_forward(self.prior, Package("wget", "1.24.5"), temp_dir) is None

    def test_version_not_in_prior(self, temp_dir):
        open(os.path.join(temp_dir, "abc.tar.gz"), 'w').close()

        assert carry_forward(self.prior, Package("wget", "1.25.0"), temp_dir) is None
