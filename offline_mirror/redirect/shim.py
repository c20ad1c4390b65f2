#!/usr/bin/env python3

"""
Redirection shim.

Sits in front of the installer's fetch calls. Given an outbound locator and
the mirror's config.json/urlmap.json, it prints the mirror address to use
instead, or the original locator when the mirror has no copy. It never fails
a request: anything it cannot read is treated as "no copy".
"""

import sys
import logging
import argparse
from typing import Dict, Optional, Tuple

from ..config.manager import MirrorDocument, load_mirror_document
from ..config.probes import shim_directory
from ..errors import ConfigError
from .urlmap import find_in_urlmap, load_urlmap

logger = logging.getLogger(__name__)


def rewrite_locator(locator: str, document: Optional[MirrorDocument],
                    urlmap: Optional[Dict[str, str]]) -> str:
    if document is None or not urlmap or not document.base_address:
        return locator

    filename = find_in_urlmap(locator, urlmap)
    if filename is None:
        logger.debug(f"No mirror entry for {locator}")
        return locator

    return f"{document.base_address.rstrip('/')}/{filename}"


def load_shim_documents(directory: str) -> Tuple[Optional[MirrorDocument], Optional[Dict[str, str]]]:
    try:
        return load_mirror_document(directory), load_urlmap(directory)
    except ConfigError as e:
        logger.debug(f"Mirror documents unavailable in {directory}: {e}")
        return None, None


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Print the mirror location for a locator, or the locator itself"
    )
    parser.add_argument("locator", help="Locator the installer is about to fetch")
    parser.add_argument(
        "--mirror-dir", "-m",
        default=None,
        help="Directory holding config.json and urlmap.json"
    )
    parser.add_argument("--debug", action="store_true", help="Log lookup details to stderr")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr
    )

    document, urlmap = load_shim_documents(args.mirror_dir or shim_directory())
    print(rewrite_locator(args.locator, document, urlmap))
    return 0


if __name__ == "__main__":
    sys.exit(main())
