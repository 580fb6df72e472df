"""
Shared pytest setup for the backend test suites.

Modules import each other absolutely (``from core.config import ...``), so
``backend/`` must be importable when pytest is started from the repo root.
"""
import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
