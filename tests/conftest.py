from __future__ import annotations

import sys
from pathlib import Path


def pytest_configure() -> None:
    # Keep `import roadside_sync...` and `import fakes` working when running `pytest` from the repo root.
    repo_root = Path(__file__).resolve().parents[1]
    for path in (repo_root, repo_root / "tests"):
        path_str = str(path)
        if path_str not in sys.path:
            sys.path.insert(0, path_str)
