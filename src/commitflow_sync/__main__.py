#!/usr/bin/env python3
"""
CommitFlow Sync package main entry point.

Allows running the package directly with: python -m commitflow_sync
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
