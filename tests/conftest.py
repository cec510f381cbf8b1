# conftest.py
import sys
import os
import pytest
from unittest.mock import MagicMock

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from host_policy import HostPolicy

@pytest.fixture
def policy():
    return HostPolicy.from_entries(["blocked.example", "ads.", "tracker.test:8443"])

@pytest.fixture
def callback():
    return MagicMock()

@pytest.fixture
def blacklist_file(tmp_path):
    path = tmp_path / "blacklist.txt"
    path.write_text("blocked.example\n\n  ads.  \n# comment\nblocked.example\n", encoding="utf-8")
    return path
