"""Pytest bootstrap ensuring the in-repo metrics_dashboard package is imported.

Without this, an older installed copy in site-packages could win when a single
test file is run directly. Kept intentionally tiny.
"""

import os, sys

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if REPO_ROOT not in sys.path:
    # Prepend so it wins over any site-packages installation
    sys.path.insert(0, REPO_ROOT)
