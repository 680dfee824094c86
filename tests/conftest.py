import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402

from hexgrid.indexer import HexIndexer  # noqa: E402


@pytest.fixture
def indexer() -> HexIndexer:
    return HexIndexer(resolution=7)
