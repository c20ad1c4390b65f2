#!/usr/bin/env python3

import os
import re
import shutil
import logging
import tarfile
import tempfile
import threading
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .. import __version__
from ..config.manager import MirrorConfig
from ..errors import DownloadFailed, DownloadTimeout, UnsupportedStrategyError
from ..registry.models import DownloadDescriptor, StrategyKind
from ..storage.manager import detect_extension

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
COMMIT_ID = re.compile(r'^[0-9a-f]{40}$')
# Client errors that are still worth another attempt
RETRYABLE_CLIENT_STATUS = (408, 429)


class DownloadStrategy(ABC):
    kind: StrategyKind = None

    def __init__(self, session: requests.Session, timeout: float,
                 runner: Callable = subprocess.run, clock: Callable[[], float] = time.monotonic):
        self.session = session
        self.timeout = timeout
        self.runner = runner
        self.clock = clock

    @abstractmethod
    def fetch(self, descriptor: DownloadDescriptor, staging_dir: str) -> Path:
        """Fetch the resource into a temporary file inside staging_dir"""
        pass

    def extension_for(self, descriptor: DownloadDescriptor) -> str:
        return detect_extension(descriptor.locator)

    def resolve_revision(self, descriptor: DownloadDescriptor) -> Optional[str]:
        return None

    def _temp_path(self, staging_dir: str) -> Path:
        os.makedirs(staging_dir, exist_ok=True)
        fd, path = tempfile.mkstemp(dir=staging_dir, suffix='.part')
        os.close(fd)
        return Path(path)


class PlainArchiveStrategy(DownloadStrategy):
    kind = StrategyKind.PLAIN_ARCHIVE

    def fetch(self, descriptor: DownloadDescriptor, staging_dir: str) -> Path:
        return self._transfer(descriptor.locator, staging_dir)

    def _transfer(self, locator: str, staging_dir: str) -> Path:
        temp_path = self._temp_path(staging_dir)
        try:
            if urlparse(locator).scheme == 'file':
                self._copy_local(locator, temp_path)
            else:
                self._download(locator, temp_path)
        except BaseException:
            if temp_path.exists():
                temp_path.unlink()
            raise
        return temp_path

    def _copy_local(self, locator: str, temp_path: Path) -> None:
        source = url2pathname(urlparse(locator).path)
        if not os.path.isfile(source):
            raise DownloadFailed(f"Local file not found: {source}", locator=locator, retryable=False)
        shutil.copyfile(source, temp_path)

    def _download(self, locator: str, temp_path: Path) -> None:
        deadline = self.clock() + self.timeout

        try:
            response = self.session.get(locator, stream=True, timeout=self.timeout)
        except requests.Timeout as e:
            raise DownloadTimeout(f"Timed out connecting to {locator}: {e}", locator=locator)
        except requests.RequestException as e:
            raise DownloadFailed(f"Request failed for {locator}: {e}", locator=locator)

        try:
            if response.status_code >= 400:
                retryable = response.status_code >= 500 or response.status_code in RETRYABLE_CLIENT_STATUS
                raise DownloadFailed(
                    f"HTTP {response.status_code} for {locator}",
                    locator=locator,
                    retryable=retryable
                )

            with open(temp_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if self.clock() > deadline:
                        raise DownloadTimeout(
                            f"Download of {locator} exceeded {self.timeout}s",
                            locator=locator
                        )
                    if chunk:
                        f.write(chunk)
        except requests.Timeout as e:
            raise DownloadTimeout(f"Timed out reading {locator}: {e}", locator=locator)
        except requests.RequestException as e:
            raise DownloadFailed(f"Transfer failed for {locator}: {e}", locator=locator)
        finally:
            response.close()


class NoExtractArchiveStrategy(PlainArchiveStrategy):
    kind = StrategyKind.NO_EXTRACT_ARCHIVE

    def extension_for(self, descriptor: DownloadDescriptor) -> str:
        # The installer must not unpack these, so keep the suffix exactly as published
        return os.path.splitext(urlparse(descriptor.locator).path)[1]


class MirrorListArchiveStrategy(PlainArchiveStrategy):
    kind = StrategyKind.MIRROR_LIST_ARCHIVE

    def fetch(self, descriptor: DownloadDescriptor, staging_dir: str) -> Path:
        candidates = [descriptor.locator] + [m for m in descriptor.mirrors if m != descriptor.locator]
        errors: List[DownloadFailed] = []

        for candidate in candidates:
            try:
                return self._transfer(candidate, staging_dir)
            except DownloadFailed as e:
                logger.warning(f"Mirror {candidate} failed: {e}")
                errors.append(e)

        retryable = any(e.retryable for e in errors)
        raise DownloadFailed(
            f"All {len(candidates)} locations failed for {descriptor.locator}: {errors[-1]}",
            locator=descriptor.locator,
            retryable=retryable
        )


class VcsCheckoutStrategy(DownloadStrategy):
    kind = StrategyKind.VCS_CHECKOUT

    def extension_for(self, descriptor: DownloadDescriptor) -> str:
        return ".tar.gz"

    def resolve_revision(self, descriptor: DownloadDescriptor) -> Optional[str]:
        """Concrete commit for the requested ref, or None when it cannot be determined"""
        if descriptor.resolved_revision:
            return descriptor.resolved_revision

        requested = descriptor.revision or "HEAD"
        if COMMIT_ID.match(requested):
            return requested

        try:
            result = self._git(['ls-remote', descriptor.locator, requested], descriptor.locator)
        except DownloadFailed as e:
            logger.warning(f"Could not resolve {requested} for {descriptor.locator}: {e}")
            return None

        for line in result.stdout.splitlines():
            fields = line.split()
            if fields and COMMIT_ID.match(fields[0]):
                return fields[0]

        logger.warning(f"No commit found for {requested} in {descriptor.locator}")
        return None

    def fetch(self, descriptor: DownloadDescriptor, staging_dir: str) -> Path:
        os.makedirs(staging_dir, exist_ok=True)
        workdir = tempfile.mkdtemp(dir=staging_dir, prefix='checkout-')
        checkout = os.path.join(workdir, descriptor.package or 'checkout')

        try:
            self._git(['clone', '--quiet', descriptor.locator, checkout], descriptor.locator)

            target = descriptor.resolved_revision or descriptor.revision
            if target:
                self._git(['-C', checkout, 'checkout', '--quiet', target], descriptor.locator)

            head = self._git(['-C', checkout, 'rev-parse', 'HEAD'], descriptor.locator).stdout.strip()
            if descriptor.resolved_revision and head != descriptor.resolved_revision:
                logger.warning(f"{descriptor.locator} checked out {head}, expected {descriptor.resolved_revision}")

            temp_path = self._temp_path(staging_dir)
            with tarfile.open(temp_path, 'w:gz') as archive:
                archive.add(checkout, arcname=os.path.basename(checkout))
            return temp_path
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def _git(self, args: List[str], locator: str) -> subprocess.CompletedProcess:
        command = ['git'] + args
        try:
            return self.runner(command, capture_output=True, text=True, timeout=self.timeout, check=True)
        except subprocess.TimeoutExpired:
            raise DownloadTimeout(f"git {args[0]} timed out after {self.timeout}s", locator=locator)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or '').strip()
            raise DownloadFailed(f"git {args[0]} failed: {stderr or e}", locator=locator)
        except FileNotFoundError:
            raise DownloadFailed("git executable not found", locator=locator, retryable=False)


class FetchThrottle:
    """Minimum spacing between external fetches, shared by all workers"""

    def __init__(self, delay: float, sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.delay = delay
        self.sleep = sleep
        self.clock = clock
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    def wait(self) -> None:
        with self._lock:
            if self._last is not None and self.delay > 0:
                remaining = self.delay - (self.clock() - self._last)
                if remaining > 0:
                    logger.debug(f"Throttling for {remaining:.2f}s")
                    self.sleep(remaining)
            self._last = self.clock()


class ThreadLocalSession:
    """One requests.Session per worker thread, created on first use"""

    def __init__(self, factory: Callable[[], requests.Session]):
        self.factory = factory
        self._local = threading.local()

    @property
    def current(self) -> requests.Session:
        session = getattr(self._local, 'session', None)
        if session is None:
            session = self.factory()
            self._local.session = session
            logger.debug(f"Opened HTTP session for {threading.current_thread().name}")
        return session

    @property
    def headers(self):
        return self.current.headers

    def get(self, *args, **kwargs) -> requests.Response:
        return self.current.get(*args, **kwargs)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, DownloadFailed) and exc.retryable


class StrategyManager:
    STRATEGIES = {
        StrategyKind.PLAIN_ARCHIVE: PlainArchiveStrategy,
        StrategyKind.NO_EXTRACT_ARCHIVE: NoExtractArchiveStrategy,
        StrategyKind.MIRROR_LIST_ARCHIVE: MirrorListArchiveStrategy,
        StrategyKind.VCS_CHECKOUT: VcsCheckoutStrategy,
    }

    def __init__(self, config: MirrorConfig, session: Optional[requests.Session] = None,
                 runner: Callable = subprocess.run, sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.allowed = set(config.allowed_kinds())
        self.session = session or ThreadLocalSession(self._create_session)
        self.runner = runner
        self.sleep = sleep
        self.throttle = FetchThrottle(config.delay, sleep=sleep)
        self._strategies: Dict[StrategyKind, DownloadStrategy] = {}
        self._lock = threading.Lock()

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers['User-Agent'] = f"offline-mirror/{__version__}"
        return session

    def get_strategy(self, kind: StrategyKind) -> DownloadStrategy:
        if kind not in self.allowed:
            raise UnsupportedStrategyError(f"strategy '{kind.value}' is not in the allow-list", strategy=kind.value)

        with self._lock:
            if kind not in self._strategies:
                strategy_class = self.STRATEGIES.get(kind)
                if strategy_class is None:
                    raise UnsupportedStrategyError(f"No adapter for strategy '{kind.value}'", strategy=kind.value)
                self._strategies[kind] = strategy_class(self.session, self.config.fetch_timeout, runner=self.runner)
            return self._strategies[kind]

    def extension_for(self, descriptor: DownloadDescriptor) -> str:
        return self.get_strategy(descriptor.strategy).extension_for(descriptor)

    def resolve_revision(self, descriptor: DownloadDescriptor) -> Optional[str]:
        return self.get_strategy(descriptor.strategy).resolve_revision(descriptor)

    def _retry_policy(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(multiplier=1, exp_base=self.config.backoff_base, max=self.config.max_backoff),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self.sleep,
            reraise=True,
        )

    def fetch(self, descriptor: DownloadDescriptor, staging_dir: str) -> Path:
        """Fetch with retries and throttling; raises DownloadFailed once attempts run out"""
        strategy = self.get_strategy(descriptor.strategy)
        logger.debug(f"Fetching {descriptor.locator} with {strategy.kind.value}")

        try:
            for attempt in self._retry_policy():
                with attempt:
                    self.throttle.wait()
                    return strategy.fetch(descriptor, staging_dir)
        except DownloadFailed as e:
            logger.error(f"Giving up on {descriptor.locator}: {e}")
            raise
