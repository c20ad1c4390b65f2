#!/usr/bin/env python3

"""
Pytest configuration and shared fixtures for offline-mirror test suite.
"""

import os
import re
import hashlib
import tempfile
import pytest
from pathlib import Path

from offline_mirror.config.manager import MirrorConfig
from offline_mirror.registry.client import StaticRegistry
from offline_mirror.registry.models import Package, Dependency, DependencyKind


class Upstream:
    """Files served to the mirror through file:// locators"""

    def __init__(self, root: str):
        self.root = root
        os.makedirs(root, exist_ok=True)

    def add(self, filename: str, content: bytes):
        path = os.path.join(self.root, filename)
        with open(path, 'wb') as f:
            f.write(content)
        return Path(path).as_uri(), hashlib.sha256(content).hexdigest()


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that gets cleaned up after test"""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir

    # Cleanup
    import shutil
    if os.path.exists(temp_dir):
        shutil.rmtree(temp_dir)


@pytest.fixture
def upstream(temp_dir):
    """Provide a local stand-in for upstream download servers"""
    return Upstream(os.path.join(temp_dir, "upstream"))


@pytest.fixture
def mirror_config(temp_dir):
    """Provide a mirror configuration that never sleeps"""
    return MirrorConfig(
        base_path=os.path.join(temp_dir, "mirror"),
        base_address="http://mirror.local:8000",
        delay=0,
        max_retries=2,
        backoff_base=2.0,
        max_backoff=0.1,
        fetch_timeout=10,
        min_free_gb=0,
        log_level="INFO"
    )


@pytest.fixture
def sample_packages(upstream):
    """Provide a small registry graph with real files behind it.

    wget -> openssl (runtime) -> ca-certificates (runtime)
    wget -> pkgconf (build)
    curl -> openssl (runtime), shares a patch with wget
    """
    wget_url, wget_sha = upstream.add("wget-1.24.5.tar.gz", b"wget source")
    openssl_url, openssl_sha = upstream.add("openssl-3.3.0.tar.gz", b"openssl source")
    certs_url, _ = upstream.add("cacert.pem", b"certificates")
    pkgconf_url, pkgconf_sha = upstream.add("pkgconf-2.2.0.tar.xz", b"pkgconf source")
    curl_url, curl_sha = upstream.add("curl-8.8.0.tar.bz2", b"curl source")
    patch_url, patch_sha = upstream.add("shared.patch", b"shared patch")

    return {
        "wget": Package(
            name="wget",
            version="1.24.5",
            collection="core",
            dependencies=[
                Dependency("openssl"),
                Dependency("pkgconf", DependencyKind.BUILD),
            ],
            downloads=[
                {"role": "stable", "url": wget_url, "sha256": wget_sha},
                {"role": "patch", "url": patch_url, "sha256": patch_sha},
            ],
        ),
        "openssl": Package(
            name="openssl",
            version="3.3.0",
            collection="core",
            dependencies=[Dependency("ca-certificates")],
            downloads=[{"role": "stable", "url": openssl_url, "sha256": openssl_sha.upper()}],
        ),
        "ca-certificates": Package(
            name="ca-certificates",
            version="2024-07-02",
            collection="core",
            downloads=[{"role": "stable", "url": certs_url, "sha256": "no_check"}],
        ),
        "pkgconf": Package(
            name="pkgconf",
            version="2.2.0",
            collection="core",
            downloads=[{"role": "stable", "url": pkgconf_url, "sha256": pkgconf_sha}],
        ),
        "curl": Package(
            name="curl",
            version="8.8.0",
            collection="extra",
            dependencies=[Dependency("openssl")],
            downloads=[
                {"role": "stable", "url": curl_url, "sha256": curl_sha},
                {"role": "patch", "url": patch_url + "?mirror=2", "sha256": patch_sha},
            ],
        ),
    }


@pytest.fixture
def sample_bundles(upstream):
    """Provide prebuilt bundles"""
    app_url, app_sha = upstream.add("Firefox-128.0.dmg", b"firefox image")
    return {
        "firefox": Package(
            name="firefox",
            version="128.0",
            collection="bundles",
            dependencies=[Dependency("curl")],
            downloads=[{"role": "stable", "url": app_url, "sha256": app_sha}],
            bundle=True,
        ),
    }


@pytest.fixture
def sample_registry(sample_packages, sample_bundles):
    """Provide an in-memory registry over the sample packages"""
    return StaticRegistry(
        packages=sample_packages,
        bundles=sample_bundles,
        collections={
            "core": {"revision": "a" * 40, "kind": "packages"},
            "extra": {"revision": "b" * 40, "kind": "packages"},
            "bundles": {"revision": "c" * 40, "kind": "bundles"},
        },
    )


@pytest.fixture(autouse=True)
def setup_logging():
    """Set up logging for tests"""
    import logging

    # Set up basic logging for tests
    logging.basicConfig(
        level=logging.WARNING,  # Only show warnings and errors in tests
        format="%(name)s - %(levelname)s - %(message)s"
    )

    # Silence some noisy loggers during tests
    logging.getLogger("urllib3").setLevel(logging.ERROR)


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on test names"""
    for item in items:
        # Add integration marker to integration test classes
        if "Integration" in item.cls.__name__ if item.cls else False:
            item.add_marker(pytest.mark.integration)

        # Add slow marker to performance/stress tests
        if any(keyword in item.name for keyword in ["performance", "stress", "slow"]):
            item.add_marker(pytest.mark.slow)


# Custom assertions for testing
class CustomAssertions:
    """Custom assertion helpers for tests"""

    @staticmethod
    def assert_valid_identifier(identifier: str):
        """Assert that an identifier is a lower-case SHA-256 hex digest"""
        assert re.match(r'^[0-9a-f]{64}$', identifier), f"Invalid identifier: {identifier}"

    @staticmethod
    def payload_files(directory: str):
        """Payload files in a mirror directory, metadata excluded"""
        from offline_mirror.storage.manager import CacheStore
        return CacheStore(directory).filenames()


@pytest.fixture
def assert_helpers():
    """Provide custom assertion helpers"""
    return CustomAssertions()
