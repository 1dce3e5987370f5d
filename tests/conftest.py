import os
import sys
from pathlib import Path

# main.py reads these at import time
os.environ.setdefault("DATABASE_URL", "")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

ROOT = Path(__file__).resolve().parents[1]
for path in (ROOT, ROOT / "tests"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

import pytest

from services.obs.metrics import metrics_collector


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics_collector.reset()
    yield
    metrics_collector.reset()
