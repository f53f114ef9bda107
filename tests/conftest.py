from __future__ import annotations

import os

import pytest
from sqlalchemy.orm import sessionmaker

import ehrm.db as app_db
import ehrm.models  # noqa: F401

os.environ.setdefault("BOOTSTRAP_TOKEN", "test-bootstrap-token")


@pytest.fixture(autouse=True)
def reset_database(tmp_path, monkeypatch):
    db_file = tmp_path / "test_ehrm.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_file}")

    # Rebuild DB bindings per test so every test gets its own writable SQLite file.
    app_db.engine.dispose()
    app_db.DATABASE_URL = app_db.get_database_url()
    app_db.engine = app_db.build_engine(app_db.DATABASE_URL)
    app_db.SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=app_db.engine,
        expire_on_commit=False,
    )

    app_db.Base.metadata.drop_all(bind=app_db.engine)
    app_db.Base.metadata.create_all(bind=app_db.engine)
    yield
    app_db.Base.metadata.drop_all(bind=app_db.engine)
    app_db.engine.dispose()


@pytest.fixture
def db():
    session = app_db.SessionLocal()
    try:
        yield session
    finally:
        session.close()
