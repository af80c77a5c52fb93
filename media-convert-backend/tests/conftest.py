# media-convert-backend/tests/conftest.py

import os
import sys

import pytest

# Add the parent directory to the Python path so we can import from it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from store import JobStore  # noqa: E402


@pytest.fixture
def storage_root(tmp_path):
    root = tmp_path / "storage"
    root.mkdir()
    return str(root)


@pytest.fixture
def store(storage_root):
    return JobStore(os.path.join(storage_root, "jobs"))


@pytest.fixture
def input_file(storage_root):
    path = os.path.join(storage_root, "0123456789abcdef0123456789abcdef.webm")
    with open(path, "wb") as f:
        f.write(b"source media")
    return path
