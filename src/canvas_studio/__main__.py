"""
Entry point for running Canvas Studio as a module.

Usage:
    python -m canvas_studio
"""

import sys

from canvas_studio.main import main

if __name__ == "__main__":
    sys.exit(main())
