"""Shared fixtures: a file-backed SQLite pipeline database."""

import pytest
import pytest_asyncio

from quiz_mail_pipeline.persistence import PipelineDb
from tests.helpers import NOW


@pytest_asyncio.fixture
async def db(tmp_path):
    database = PipelineDb(str(tmp_path / "pipeline.db"))
    await database.init_db()
    yield database
    await database.close()


@pytest.fixture
def now():
    return NOW
