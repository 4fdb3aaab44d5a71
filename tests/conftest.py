import sys
from pathlib import Path

# Ensure repository root (and tests/ for the shared fakes) are importable.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
TESTS_ROOT = Path(__file__).resolve().parent
for entry in (PROJECT_ROOT, TESTS_ROOT):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))
