#!/usr/bin/env python3
"""
Main entry point for the package.
Allows running the CLI with: python -m pectra
"""

from pectra.cli.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
