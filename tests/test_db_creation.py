"""Smoke tests covering database initialization on startup."""

from sqlalchemy import inspect

from db import utils as db_utils
from tests.app_helpers import load_app


def test_db_created_on_startup(tmp_path):
    """The application should create the library schema on startup."""

    assert not (tmp_path / "library.db").exists()

    app = load_app(tmp_path)

    tables = set(inspect(app.db.engine).get_table_names())
    assert {"games", "title_mappings", "library_entries", "platform_connections"} <= tables
    assert (tmp_path / "library.db").exists()
    assert (tmp_path / "logs").is_dir()


def test_engine_from_dsn_reports_dialect(tmp_path):
    database = db_utils.build_engine_from_dsn(f"sqlite:///{(tmp_path / 'other.db').as_posix()}")
    try:
        assert database.dialect_name == "sqlite"
        with database.connect() as conn:
            assert conn.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1
    finally:
        database.dispose()
