import sys
from pathlib import Path

import pytest

# Ensure tests can import the bot package regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from trackchat.storage.database import MusicDatabase  # noqa: E402


@pytest.fixture()
def db(tmp_path: Path):
    database = MusicDatabase(str(tmp_path / "musicstats.db"))
    yield database
    database.close()
