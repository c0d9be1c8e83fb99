"""Command-line interface for CellStable.

Example Usage
-------------
    # From command line:
    cellstable --help
    cellstable train --counts ref.csv --out model/
    cellstable predict --bundle model/bundle.json -d a=a.csv -d b=b.csv --out joint/
    cellstable show-config
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
