import os

os.environ["APP_ENV"] = "test"
if os.getenv("DATABASE_URL"):
    os.environ["POSTGRES_DSN"] = os.environ["DATABASE_URL"]

# Settings are cached on first import, so the env above must come first.
import shutil
import tempfile
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Generator

import pytest
from alembic import command
from alembic.config import Config
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

import gridrank.db.session as db_session_module
import gridrank.tasks.tasks as tasks_module
from gridrank.db.session import get_db
from gridrank.models.local_campaign import CampaignStatus, LocalCampaign, ScanCadence

BACKEND_DIR = Path(__file__).resolve().parents[1]
REQUIRED_TABLES = ("local_campaigns", "grid_scans", "grid_point_results", "competitor_stats")


def _sqlite_url(path: Path) -> str:
    return f"sqlite:///{path.as_posix()}"


def _sqlite_engine(path: Path) -> Engine:
    return create_engine(_sqlite_url(path), connect_args={"check_same_thread": False, "timeout": 30}, poolclass=NullPool)


def _bind_factory(factory: sessionmaker) -> None:
    # Celery runs eagerly in tests, so task modules must see the same factory as the test.
    db_session_module.bind_session_factory_for_tests(factory)
    tasks_module.SessionLocal = db_session_module.SessionLocal


def pytest_configure(config: pytest.Config) -> None:
    workers = getattr(config.option, "numprocesses", None)
    if workers and int(workers) > 1:
        pytest.exit("SQLite test path does not support pytest-xdist parallel workers.")


@pytest.fixture(scope="session", autouse=True)
def migrated_template() -> Generator[Path, None, None]:
    temp_dir = Path(tempfile.mkdtemp(prefix="gridrank-db-"))
    template_path = temp_dir / "template.sqlite3"
    database_url = _sqlite_url(template_path)
    os.environ["DATABASE_URL"] = database_url
    os.environ["POSTGRES_DSN"] = database_url

    from gridrank.core.config import get_settings

    get_settings.cache_clear()
    db_session_module.reset_engine_state()

    cfg = Config(str(BACKEND_DIR / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(cfg, "head")

    engine = _sqlite_engine(template_path)
    try:
        missing = [table for table in REQUIRED_TABLES if not inspect(engine).has_table(table)]
    finally:
        engine.dispose()
    if missing:
        raise RuntimeError(f"Migrations did not create tables: {', '.join(missing)}")

    bootstrap_engine = _sqlite_engine(template_path)
    _bind_factory(sessionmaker(bind=bootstrap_engine, autocommit=False, autoflush=False))
    import gridrank.main  # noqa: F401

    yield template_path
    bootstrap_engine.dispose()
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_engine_caches() -> Generator[None, None, None]:
    from gridrank.services import engine

    engine.get_request_scheduler.cache_clear()
    engine.get_response_cache.cache_clear()
    yield


@pytest.fixture()
def db_session(migrated_template: Path) -> Generator[Session, None, None]:
    test_db_path = migrated_template.parent / f"{uuid.uuid4().hex}.sqlite3"
    shutil.copy2(migrated_template, test_db_path)
    engine = _sqlite_engine(test_db_path)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    _bind_factory(factory)
    session = factory()

    yield session
    session.close()
    engine.dispose()
    db_session_module.reset_engine_state()
    for _ in range(5):
        try:
            test_db_path.unlink(missing_ok=True)
            break
        except PermissionError:
            time.sleep(0.05)


@pytest.fixture()
def make_campaign(db_session: Session) -> Callable[..., LocalCampaign]:
    def _make(**overrides) -> LocalCampaign:
        keywords = overrides.pop("keywords", ["dentist"])
        now = datetime.now(UTC)
        values = {
            "id": str(uuid.uuid4()),
            "user_id": str(uuid.uuid4()),
            "business_name": "Bright Smile Dental",
            "gmb_cid": None,
            "domain": "brightsmile.example.com",
            "center_lat": 40.0,
            "center_lng": -75.0,
            "grid_size": 3,
            "grid_radius_miles": 1.0,
            "scan_frequency": ScanCadence.WEEKLY.value,
            "status": CampaignStatus.ACTIVE.value,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        campaign = LocalCampaign(**values)
        campaign.keywords = keywords
        db_session.add(campaign)
        db_session.commit()
        db_session.refresh(campaign)
        return campaign

    return _make


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    from gridrank.main import app

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
