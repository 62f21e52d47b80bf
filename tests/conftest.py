"""Pytest fixtures shared across the test suite."""

import pytest

from db import utils as db_utils
from db.schema import init_db
from jobs import manager as jobs_manager
from matching.normalizer import TitleNormalizer, configure_default_normalizer
from tests.app_helpers import FakeClock


@pytest.fixture
def database(tmp_path):
    """A freshly migrated SQLite database under ``tmp_path``."""

    engine = db_utils.build_engine_from_dsn(f"sqlite:///{(tmp_path / 'library.db').as_posix()}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(start=1_000.0)


@pytest.fixture(autouse=True)
def reset_process_state():
    """Restore module-level singletons replaced by app loading or tests."""

    yield
    configure_default_normalizer(TitleNormalizer())
    jobs_manager.set_job_manager(None)
