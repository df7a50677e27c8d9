#!/usr/bin/env python3

"""Launcher for a fresh checkout.

Runs the controller from `src/cloudflare_dynamic_dns` without installing the
package first.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from cloudflare_dynamic_dns.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
