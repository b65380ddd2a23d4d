"""
Shared test setup for credcore.

Points DATABASE_URL at in-memory SQLite before any service module is imported,
so importing database.py never needs a running postgres. Tests that touch the
database build their own engine (see tests/integration/conftest.py).
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
