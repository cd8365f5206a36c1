#!/usr/bin/env python3

"""Checkout wrapper.

The controller is packaged under `src/adguard_external_dns`. This wrapper runs
it from a fresh checkout without installing: `./adguard-external-dns.py`.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from adguard_external_dns.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
