"""
Tests for bundle_kernel.db.engine -- SQLite connection setup and schema
creation.
"""

from sqlalchemy import inspect, text

from bundle_kernel.db.engine import build_engine, create_tables


class TestBuildEngine:
    def test_sqlite_pragmas(self, tmp_path):
        engine = build_engine(f"sqlite:///{tmp_path / 'p.db'}", busy_timeout_seconds=5)
        try:
            with engine.connect() as conn:
                assert conn.execute(text("PRAGMA journal_mode")).scalar() == "wal"
                assert conn.execute(text("PRAGMA busy_timeout")).scalar() == 5000
                assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
        finally:
            engine.dispose()

    def test_memory_database_shares_one_connection(self):
        engine = build_engine("sqlite://")
        try:
            create_tables(engine)
            assert "bundles" in inspect(engine).get_table_names()
        finally:
            engine.dispose()


class TestCreateTables:
    def test_creates_every_table(self, tmp_path):
        engine = build_engine(f"sqlite:///{tmp_path / 't.db'}")
        try:
            create_tables(engine)
            assert {"bundles", "vehicles", "bundle_transitions"} <= set(inspect(engine).get_table_names())
        finally:
            engine.dispose()

    def test_is_idempotent(self, tmp_path):
        engine = build_engine(f"sqlite:///{tmp_path / 't.db'}")
        try:
            create_tables(engine)
            create_tables(engine)
            assert "vehicles" in inspect(engine).get_table_names()
        finally:
            engine.dispose()
