import shutil
from pathlib import Path

import pytest

from guardian.storage import Storage

TEST_DATA_DIR = Path("data-tests")


@pytest.fixture
def storage() -> Storage:
    """Wipe and re-init data-tests/ before every test that uses storage."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    # leave data-tests around after tests for inspection; CI can ignore it
    return Storage(TEST_DATA_DIR)
