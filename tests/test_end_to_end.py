#!/usr/bin/env python3

"""
End-to-end tests for offline-mirror.

These tests drive the command line the way an operator would: build a
mirror from a registry index, check it, then ask the redirection shim
where an installer should fetch from.
"""

import os
import json
import pytest
import yaml
from unittest.mock import patch

from offline_mirror import cli
from offline_mirror.main import main
from offline_mirror.redirect import shim


@pytest.fixture
def workspace(upstream, temp_dir):
    """Registry index, config file and mirror directory for one operator session"""
    wget_url, wget_sha = upstream.add("wget-1.24.5.tar.gz", b"wget source")
    openssl_url, openssl_sha = upstream.add("openssl-3.3.0.tar.gz", b"openssl source")
    patch_url, patch_sha = upstream.add("fix-build.patch", b"patch")
    app_url, app_sha = upstream.add("Viewer-2.0.dmg", b"viewer image")

    index_path = os.path.join(temp_dir, "index.yaml")
    with open(index_path, 'w') as f:
        yaml.safe_dump({
            'collections': {
                'core': {'revision': 'a' * 40, 'kind': 'packages'},
                'apps': {'revision': 'b' * 40, 'kind': 'bundles'},
            },
            'packages': {
                'wget': {
                    'version': '1.24.5',
                    'collection': 'core',
                    'dependencies': [{'name': 'openssl', 'kind': 'runtime'}],
                    'downloads': [
                        {'role': 'stable', 'url': wget_url, 'sha256': wget_sha},
                        {'role': 'patch', 'url': patch_url, 'sha256': patch_sha},
                    ],
                },
                'openssl': {
                    'version': '3.3.0',
                    'collection': 'core',
                    'downloads': [{'role': 'stable', 'url': openssl_url, 'sha256': openssl_sha}],
                },
            },
            'bundles': {
                'viewer': {
                    'version': '2.0',
                    'collection': 'apps',
                    'downloads': [{'url': app_url, 'sha256': app_sha}],
                },
            },
        }, f)

    config_path = os.path.join(temp_dir, "config.yaml")
    mirror_dir = os.path.join(temp_dir, "mirror")
    with open(config_path, 'w') as f:
        yaml.safe_dump({
            'base_path': mirror_dir,
            'base_address': "http://mirror.local:8000",
            'registry_index': index_path,
            'delay': 0,
            'max_retries': 1,
            'min_free_gb': 0,
            'log_level': 'WARNING',
        }, f)

    return {
        'config': config_path,
        'mirror': mirror_dir,
        'wget_url': wget_url,
        'wget_file': f"{wget_sha}.tar.gz",
        'app_url': app_url,
    }


@pytest.mark.integration
@patch('offline_mirror.main.setup_logging')
class TestOperatorWorkflow:
    """Complete operator workflows through the CLI"""

    def test_help_command(self, mock_setup_logging):
        with pytest.raises(SystemExit) as exc_info:
            main(["--help"])
        assert exc_info.value.code == 0

    def test_mirror_verify_and_redirect(self, mock_setup_logging, workspace, capsys):
        exit_code = main(["-c", workspace['config'], "mirror", "wget", "--with-deps",
                          "--package-variant", "viewer", "--verify"])

        assert exit_code == 0
        output = capsys.readouterr().out
        assert "2 packages, 1 bundles" in output
        assert "Mirror verification OK" in output

        assert shim.main([workspace['wget_url'] + "?download=1", "-m", workspace['mirror']]) == 0
        assert capsys.readouterr().out.strip() == f"http://mirror.local:8000/{workspace['wget_file']}"

        assert shim.main(["https://example.com/unknown.tar.gz", "-m", workspace['mirror']]) == 0
        assert capsys.readouterr().out.strip() == "https://example.com/unknown.tar.gz"

    def test_damaged_mirror_fails_verification(self, mock_setup_logging, workspace, capsys):
        assert main(["-c", workspace['config'], "mirror", "wget"]) == 0
        os.remove(os.path.join(workspace['mirror'], workspace['wget_file']))
        capsys.readouterr()

        exit_code = main(["-c", workspace['config'], "verify", workspace['mirror'], "--checksums"])

        assert exit_code == 1
        output = capsys.readouterr().out
        assert f"Missing file: {workspace['wget_file']}" in output

    def test_update_run(self, mock_setup_logging, workspace, capsys):
        assert main(["-c", workspace['config'], "mirror", "wget", "--with-deps"]) == 0
        capsys.readouterr()

        exit_code = main(["-c", workspace['config'], "mirror", "--update", "--prune"])

        assert exit_code == 0
        output = capsys.readouterr().out
        assert "Update: 2 unchanged, 0 new, 0 stale" in output
        assert "0 fetched, 3 already cached" in output

    def test_config_only(self, mock_setup_logging, workspace):
        assert main(["-c", workspace['config'], "mirror", "--config-only"]) == 0

        with open(os.path.join(workspace['mirror'], "config.json")) as f:
            document = json.load(f)
        assert document['baseAddress'] == "http://mirror.local:8000"
        assert set(document['collections']) == {"core", "apps"}

    def test_cli_wrapper(self, mock_setup_logging, workspace):
        with patch('sys.argv', ['offline-mirror', '-c', workspace['config'], 'verify', workspace['mirror']]):
            # Nothing mirrored yet
            assert cli.main() == 1
