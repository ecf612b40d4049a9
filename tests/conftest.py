"""
Test-session environment.

Points DATABASE_URL at a throwaway sqlite file before any attendx module is
imported, so the module-level engine in shared/database.py never needs a
running postgres. Unit tests build their own per-test engines on top of this.
"""

import os
import tempfile

os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "attendx-test-session.db"),
)
os.environ.setdefault("STORAGE_RETRY_BACKOFF_SECONDS", "0")
