"""
Main entry point for tilesmith.

Allows running: python -m tilesmith <command>
"""

import sys

from tilesmith.cli import main

if __name__ == "__main__":
    sys.exit(main())
