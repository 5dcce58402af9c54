"""Tests for session handling and table setup."""
import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker

from abplatform import database
from abplatform.models import Experiment

engine = create_engine("sqlite:///./test_session.db", connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def test_database(monkeypatch):
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "SessionLocal", TestingSessionLocal)
    yield
    database.Base.metadata.drop_all(bind=engine)


def test_init_db_creates_tables(test_database):
    database.init_db()
    tables = set(inspect(engine).get_table_names())
    assert {"experiments", "feature_flags", "user_cohorts", "events"} <= tables


def test_session_scope_commits(test_database):
    database.init_db()
    with database.session_scope() as db:
        db.add(Experiment(name="committed", control_variant_name="a", test_variant_name="b"))

    with database.session_scope() as db:
        assert db.query(Experiment).filter(Experiment.name == "committed").count() == 1


def test_session_scope_rolls_back_on_error(test_database):
    database.init_db()
    with pytest.raises(RuntimeError):
        with database.session_scope() as db:
            db.add(Experiment(name="rolled_back", control_variant_name="a", test_variant_name="b"))
            db.flush()
            raise RuntimeError("boom")

    with database.session_scope() as db:
        assert db.query(Experiment).count() == 0
