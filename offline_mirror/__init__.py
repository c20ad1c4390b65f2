#!/usr/bin/env python3

"""
Offline Package Mirror

Mirrors the source archives, version-control checkouts and prebuilt bundles
needed to install a set of packages, so installation can later run with no
network access.
"""

__version__ = "0.1.0"
__author__ = "Offline Mirror Project"
