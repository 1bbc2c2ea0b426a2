"""
This file configures pytest.

Install the service with its test extra and run the suite from the repo root:

pip install -e ".[test]"
pytest -q tests

Broker integration tests are skipped unless RUN_INTEGRATION_TESTS=1.
"""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"

if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))
