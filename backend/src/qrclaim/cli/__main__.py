"""CLI entry point for qrclaim.cli module.

Enables execution via: python -m qrclaim.cli (runs one batch pass)
"""

from qrclaim.cli.process_queue import main

if __name__ == "__main__":
    raise SystemExit(main())
