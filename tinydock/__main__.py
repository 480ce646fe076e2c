#!/usr/bin/env python3
"""
tinydock entry point.
Allows running as: python3 -m tinydock <command>
"""

import sys

from tinydock.cli import main

if __name__ == "__main__":
    sys.exit(main())
