# tests/conftest.py
# Put the project root (holding the flat modules) and this folder (holding
# helpers.py) on sys.path so tests import them the same way the CLI does.

import pathlib
import sys

import pytest

TESTS = pathlib.Path(__file__).resolve().parent
ROOT = TESTS.parent

for path in (str(ROOT), str(TESTS)):
    if path not in sys.path:
        sys.path.insert(0, path)

from extensions import load_runtime_services  # noqa: E402
from helpers import make_runtime  # noqa: E402

EXT_DIR = ROOT / "ext"


@pytest.fixture
def ext_dir() -> pathlib.Path:
    return EXT_DIR


@pytest.fixture
def bundled_services():
    return load_runtime_services([str(EXT_DIR / "default.bvx")])


@pytest.fixture
def runtime_for():
    """Build a runtime (plus its probe primitives) from a project document."""
    return make_runtime
