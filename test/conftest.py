from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

# Shared test helpers live in test/fixtures and are imported as `fixtures.*`.
TEST_DIR_STR = str(Path(__file__).resolve().parent)
if TEST_DIR_STR not in sys.path:
    sys.path.insert(0, TEST_DIR_STR)
