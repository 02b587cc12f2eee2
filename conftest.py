"""Make the in-repo libraries importable when running pytest from the root."""

import sys
from pathlib import Path

ROOT = Path(__file__).parent

for path in (ROOT, ROOT / "libs" / "py-connector", ROOT / "libs" / "py-normalize"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))
