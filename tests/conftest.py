# === NAVMAP v1 ===
# {
#   "module": "tests.conftest",
#   "purpose": "Shared pytest configuration for the suite",
#   "sections": [
#     {
#       "id": "source-path",
#       "name": "Source Path",
#       "anchor": "SRC",
#       "kind": "infra"
#     }
#   ]
# }
# === /NAVMAP ===

"""
Pytest Configuration

Makes the ``src`` tree importable so the suite runs from a plain checkout
without an editable install.
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
