#!/usr/bin/env python3

"""
Home directory discovery.

Installers sometimes run helpers with a fake $HOME, so the real one is
located by trying an ordered list of probes. Each probe takes the
environment mapping and returns a directory or None; the first hit wins.
"""

import os
import pwd
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional

Probe = Callable[[Mapping[str, str]], Optional[str]]


def probe_real_home(env: Mapping[str, str]) -> Optional[str]:
    return env.get('REAL_HOME') or None


def probe_sudo_user(env: Mapping[str, str]) -> Optional[str]:
    user = env.get('SUDO_USER')
    if not user:
        return None
    try:
        home = pwd.getpwnam(user).pw_dir
    except KeyError:
        return None
    return home if os.path.isdir(home) else None


def probe_home(env: Mapping[str, str]) -> Optional[str]:
    home = env.get('HOME')
    # /var/root is what sandboxed helpers see on macOS
    if home and home != '/var/root':
        return home
    return None


def probe_user(env: Mapping[str, str]) -> Optional[str]:
    user = env.get('USER')
    if not user:
        return None
    for base in ('/Users', '/home'):
        if os.path.exists(base):
            return os.path.join(base, user)
    return None


def probe_path_home(env: Mapping[str, str]) -> Optional[str]:
    try:
        home = str(Path.home())
    except (KeyError, RuntimeError):
        return None
    return home if os.path.isdir(home) else None


DEFAULT_HOME_PROBES = (
    probe_real_home,
    probe_sudo_user,
    probe_home,
    probe_user,
    probe_path_home,
)


def first_match(probes: Iterable[Probe], env: Mapping[str, str]) -> Optional[str]:
    for probe in probes:
        result = probe(env)
        if result:
            return result
    return None


def real_home_directory(env: Optional[Mapping[str, str]] = None,
                        probes: Iterable[Probe] = DEFAULT_HOME_PROBES) -> str:
    """Find the user's real home directory, falling back to the working directory"""
    if env is None:
        env = os.environ
    return first_match(probes, env) or os.getcwd()


def shim_directory(env: Optional[Mapping[str, str]] = None) -> str:
    """Directory holding the cached config.json and urlmap.json used by the shim"""
    if env is None:
        env = os.environ
    override = env.get('OFFLINE_MIRROR_DIR')
    if override:
        return override
    return os.path.join(real_home_directory(env), '.offline-mirror')
