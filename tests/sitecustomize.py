"""Make the project root importable when running tests as plain scripts.

Python imports `sitecustomize` (if present on `sys.path`) during startup.
Running `python test_foo.py` from within `tests/` puts this folder on
`sys.path`, so adding the repo root here makes `import mcmcp` work without
an editable install.
"""

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
