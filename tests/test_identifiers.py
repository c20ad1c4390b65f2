#!/usr/bin/env python3

import os
import json
import hashlib
import subprocess
import sys

from offline_mirror.registry.models import DownloadDescriptor, StrategyKind
from offline_mirror.resolver.identifiers import IdentifierAssigner, IdentifierTable, stable_hash


SHA = "0123456789abcdef" * 4


class TestIdentifierAssigner:
    """Test stable identifiers"""

    def setup_method(self):
        self.assigner = IdentifierAssigner()

    def test_checksum_is_identifier(self):
        descriptor = DownloadDescriptor("https://x/a.tar.gz", StrategyKind.PLAIN_ARCHIVE, checksum=SHA.upper())

        assert self.assigner.assign(descriptor) == SHA

    def test_shared_checksum_collapses(self):
        first = DownloadDescriptor("https://x/a.tar.gz", StrategyKind.PLAIN_ARCHIVE, checksum=SHA)
        second = DownloadDescriptor("https://mirror/a.tar.gz?x=1", StrategyKind.PLAIN_ARCHIVE, checksum=SHA)

        assert self.assigner.assign(first) == self.assigner.assign(second)

    def test_unchecked_uses_locator_hash(self, assert_helpers):
        descriptor = DownloadDescriptor("https://x/a.dmg", StrategyKind.PLAIN_ARCHIVE, checksum="no_check")

        identifier = self.assigner.assign(descriptor)

        assert identifier == hashlib.sha256(b"https://x/a.dmg").hexdigest()
        assert_helpers.assert_valid_identifier(identifier)

    def test_vcs_uses_resolved_revision(self):
        revision = "f" * 40
        descriptor = DownloadDescriptor(
            "https://x/repo.git", StrategyKind.VCS_CHECKOUT, revision="main", resolved_revision=revision
        )

        assert self.assigner.assign(descriptor) == stable_hash(f"https://x/repo.git@{revision}")

    def test_vcs_head_fallback(self, assert_helpers):
        descriptor = DownloadDescriptor("https://x/repo.git", StrategyKind.VCS_CHECKOUT, revision="main")

        identifier = self.assigner.assign(descriptor)

        assert identifier == stable_hash("https://x/repo.git@HEAD")
        assert_helpers.assert_valid_identifier(identifier)

    def test_vcs_revisions_differ(self):
        a = DownloadDescriptor("https://x/repo.git", StrategyKind.VCS_CHECKOUT, resolved_revision="a" * 40)
        b = DownloadDescriptor("https://x/repo.git", StrategyKind.VCS_CHECKOUT, resolved_revision="b" * 40)

        assert self.assigner.assign(a) != self.assigner.assign(b)

    def test_deterministic_across_processes(self):
        """Test the identifier does not depend on per-process hash seeds"""
        descriptor = DownloadDescriptor("https://x/a.dmg", StrategyKind.PLAIN_ARCHIVE, checksum="no_check")
        code = (
            "from offline_mirror.registry.models import DownloadDescriptor, StrategyKind;"
            "from offline_mirror.resolver.identifiers import IdentifierAssigner;"
            "print(IdentifierAssigner().assign(DownloadDescriptor('https://x/a.dmg', "
            "StrategyKind.PLAIN_ARCHIVE, checksum='no_check')))"
        )
        root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        env = dict(os.environ, PYTHONHASHSEED="123", PYTHONPATH=root)

        result = subprocess.run([sys.executable, "-c", code], capture_output=True, text=True, env=env, check=True)

        assert result.stdout.strip() == self.assigner.assign(descriptor)

    def test_table_records_assignments(self):
        table = IdentifierTable()
        assigner = IdentifierAssigner(table)
        descriptor = DownloadDescriptor("https://x/repo.git", StrategyKind.VCS_CHECKOUT, resolved_revision="c" * 40)

        identifier = assigner.assign(descriptor)

        assert table.get(f"https://x/repo.git@{'c' * 40}") == identifier
        assert len(table) == 1


class TestIdentifierTable:
    """Test the transparency table document"""

    def test_save_and_load(self, temp_dir):
        table = IdentifierTable({"https://x/a.zip": "abc"})
        table.save(temp_dir)

        with open(os.path.join(temp_dir, "identifier_cache.json")) as f:
            assert json.load(f) == {"https://x/a.zip": "abc"}
        assert IdentifierTable.load(temp_dir).as_dict() == {"https://x/a.zip": "abc"}

    def test_load_missing(self, temp_dir):
        assert len(IdentifierTable.load(temp_dir)) == 0

    def test_load_corrupt_is_ignored(self, temp_dir):
        with open(os.path.join(temp_dir, "identifier_cache.json"), 'w') as f:
            f.write("[1, 2")

        assert len(IdentifierTable.load(temp_dir)) == 0
