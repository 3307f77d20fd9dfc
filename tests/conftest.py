import importlib
import os
import shutil
import sys
from datetime import date, timedelta
from pathlib import Path

import pytest

repo_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(repo_root))

db_path = repo_root / "test.db"
files_path = repo_root / ".test-files"
if db_path.exists():
    db_path.unlink()

# Configuration is read at import time, so it has to be in place before any
# policywiki module is imported.
os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
os.environ["STORAGE__TYPE"] = "fs"
os.environ["STORAGE__FS_PATH"] = str(files_path)
os.environ["SESSION_COOKIE_SECURE"] = "false"
os.environ["WTF_CSRF_ENABLED"] = "false"

PASSWORD = "Password1!"


@pytest.fixture(scope="session", autouse=True)
def setup_database():
    models = importlib.import_module("policywiki.models")
    models.Base.metadata.create_all(bind=models.engine)

    yield

    models.SessionLocal.remove()
    models.Base.metadata.drop_all(bind=models.engine)
    shutil.rmtree(files_path, ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_database():
    m = importlib.import_module("policywiki.models")
    bootstrap = importlib.import_module("policywiki.bootstrap")
    m.SessionLocal.remove()
    m.Base.metadata.drop_all(bind=m.engine)
    m.Base.metadata.create_all(bind=m.engine)
    bootstrap.seed_database()
    yield
    m.SessionLocal.remove()


@pytest.fixture()
def models():
    return importlib.import_module("policywiki.models")


@pytest.fixture()
def db(models):
    session = models.SessionLocal.session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture()
def app():
    app_module = importlib.import_module("policywiki.app")
    app_module.app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
    return app_module.app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def make_user(db, models):
    auth = importlib.import_module("policywiki.auth")

    def _make(email, roles=(), status="active", name=None, password=PASSWORD):
        user = models.User(
            email=email,
            name=name or email.split("@")[0].title(),
            password_hash=auth.hash_password(password),
            status=status,
        )
        db.add(user)
        db.flush()
        for role_name in roles:
            role = db.query(models.Role).filter_by(name=role_name).one()
            db.add(models.UserRole(user_id=user.id, role_id=role.id))
        db.commit()
        return user

    return _make


@pytest.fixture()
def admin(db, models):
    return db.query(models.User).filter_by(email="admin@agewithcare.com").one()


@pytest.fixture()
def make_document(db, models, admin):
    def _make(title, status="published", category="policies", **fields):
        documents = importlib.import_module("policywiki.documents")
        category_row = db.query(models.Category).filter_by(slug=category).one()
        effective = fields.pop("effective_date", date(2024, 1, 1))
        doc = models.Document(
            title=title,
            slug=fields.pop("slug", None)
            or documents.ensure_unique_slug(db, documents.generate_slug(title)),
            content_type=fields.pop("content_type", "policy"),
            status=status,
            owner_id=fields.pop("owner_id", admin.id),
            effective_date=effective,
            review_due=fields.pop("review_due", effective + timedelta(days=365)),
            category_id=category_row.id,
            **fields,
        )
        db.add(doc)
        db.commit()
        return doc

    return _make


@pytest.fixture()
def login(client):
    def _login(email="admin@agewithcare.com", password=None):
        if password is None:
            password = "Admin123!" if email == "admin@agewithcare.com" else PASSWORD
        return client.post("/api/auth/login", json={"email": email, "password": password})

    return _login
