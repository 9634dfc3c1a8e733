"""Pytest configuration and fixtures."""
import os

# Set test env BEFORE any imports that use config
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["AUTHME_DATABASE_URL"] = ""
os.environ["LUCKPERMS_DATABASE_URL"] = ""
os.environ["INITIAL_ADMIN_EMAIL"] = ""
os.environ["INITIAL_ADMIN_PASSWORD"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.models import Base
from app.services.account_directory import AccountDirectory
from app.services.authme_bridge import AuthmeBridge
from app.services.binding_ledger import BindingLedger
from app.services.deps import get_authme_bridge, get_db, get_luckperms_bridge
from app.services.luckperms_bridge import LuckpermsBridge
from app.services.plugin_db import PluginDatabase
from app.services.seed import seed_rbac_defaults
from tests.utils import create_authme_schema, create_luckperms_schema, create_user

GROUP_NAMES = {"vip": "VIP Member", "default": "Player"}


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    with SessionLocal() as session:
        seed_rbac_defaults(session)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# Plugin databases live in files so the snapshot fan-out threads get their own connections
@pytest.fixture()
def authme_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'authme.db'}")
    create_authme_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def luckperms_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'luckperms.db'}")
    create_luckperms_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def broken_engine(tmp_path):
    # reachable database without the plugin tables: every query fails at the QUERY stage
    engine = create_engine(f"sqlite:///{tmp_path / 'broken.db'}")
    yield engine
    engine.dispose()


@pytest.fixture()
def authme(authme_engine):
    return AuthmeBridge(PluginDatabase("AUTHME_DB", "", engine=authme_engine))


@pytest.fixture()
def luckperms(luckperms_engine):
    return LuckpermsBridge(PluginDatabase("LUCKPERMS_DB", "", engine=luckperms_engine), display_names=GROUP_NAMES)


@pytest.fixture()
def ledger(db, authme, luckperms):
    return BindingLedger(AccountDirectory(db), authme, luckperms, max_workers=4)


@pytest.fixture()
def bridges():
    """Mutable holder so a test can swap a bridge before issuing requests."""
    return {}


@pytest.fixture()
def client(session_factory, authme, luckperms, bridges):
    bridges.setdefault("authme", authme)
    bridges.setdefault("luckperms", luckperms)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_authme_bridge] = lambda: bridges["authme"]
    app.dependency_overrides[get_luckperms_bridge] = lambda: bridges["luckperms"]
    # no context manager: the startup hook would seed the app's own engine
    yield TestClient(app, base_url="http://test")
    app.dependency_overrides.clear()


@pytest.fixture()
def admin(db):
    return create_user(db, "admin@example.com", role_keys=("admin",))


@pytest.fixture()
def member(db):
    return create_user(db, "steve@example.com", role_keys=("user",))
