#!/usr/bin/env python3
"""
qosctl main module entry point.
Enables running qosctl as a module: python -m qosctl
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
