import os

import pytest


@pytest.fixture(autouse=True, scope="session")
def _coverage_test_db(tmp_path_factory: pytest.TempPathFactory) -> None:
    tmp_dir = tmp_path_factory.mktemp("coverage_db")
    db_path = tmp_dir / "coverage.db"
    os.environ["CS_DB_PATH"] = str(db_path)
    os.environ["CS_TESTING"] = "1"
    os.environ["CS_SCHEDULER_ENABLED"] = "false"
