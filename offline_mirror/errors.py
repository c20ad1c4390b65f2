#!/usr/bin/env python3

"""
Exception hierarchy for mirror runs.

Only ConfigError and EmptyResolutionError abort a run. Everything else is
caught per package or per resource and collected into the run summary.
"""


class MirrorError(Exception):
    """Base class for all mirror errors"""

    code: str = "MIRROR_ERROR"
    fatal: bool = False


class ConfigError(MirrorError):
    """Missing or malformed configuration or metadata document"""

    code = "CONFIG_ERROR"
    fatal = True


class ResolutionError(MirrorError):
    """A requested package or resource is absent from the registry"""

    code = "RESOLUTION_ERROR"


class EmptyResolutionError(MirrorError):
    """Nothing was left to mirror after resolution"""

    code = "EMPTY_RESOLUTION"
    fatal = True


class UnsupportedStrategyError(MirrorError):
    """Download strategy outside the allow-list; skipped, not failed"""

    code = "UNSUPPORTED_STRATEGY"

    def __init__(self, message: str, strategy: str = ""):
        super().__init__(message)
        self.strategy = strategy


class DownloadFailed(MirrorError):
    """A resource could not be fetched"""

    code = "DOWNLOAD_FAILED"

    def __init__(self, message: str, locator: str = "", retryable: bool = True):
        super().__init__(message)
        self.locator = locator
        self.retryable = retryable


class DownloadTimeout(DownloadFailed):
    """A fetch exceeded its deadline"""

    code = "DOWNLOAD_TIMEOUT"


class ChecksumMismatch(DownloadFailed):
    """Fetched bytes do not match the declared checksum"""

    code = "CHECKSUM_MISMATCH"

    def __init__(self, message: str, expected: str = "", actual: str = "", locator: str = ""):
        super().__init__(message, locator=locator, retryable=False)
        self.expected = expected
        self.actual = actual


class PathSecurityError(MirrorError):
    """A computed filename would escape the mirror directory"""

    code = "PATH_SECURITY"
