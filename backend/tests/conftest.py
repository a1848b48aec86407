"""
Configuration partagée pour tous les tests.
- `client` : override la dépendance get_db par un MagicMock (aucune connexion PostgreSQL).
- `db_session` : base SQLite en mémoire pour les tests de services (vraies requêtes ORM).
"""

import os

os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "secret-de-test-cartesync-32-octets-min")
os.environ.setdefault("API_TOKENS", '["token-externe-test"]')

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from unittest.mock import MagicMock

from app.database import Base, get_db
from app.main import app
from app.models.site import Coordination, Site
from app.schemas.journal import JournalActor
from app.security import get_current_admin, get_current_site


@pytest.fixture
def client():
    """Client HTTP de test avec la BDD mockée."""
    mock_db = MagicMock()
    app.dependency_overrides[get_db] = lambda: mock_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def site_client(client):
    """Client authentifié comme le site ADJAME (coordination 1)."""
    site = MagicMock(id="ADJAME", nom="Adjamé", coordination_id=1)
    app.dependency_overrides[get_current_site] = lambda: site
    return client


@pytest.fixture
def admin():
    return JournalActor(name="admin", role="Administrateur", user_id=1, coordination="ABIDJAN-NORD")


@pytest.fixture
def admin_client(client, admin):
    """Client authentifié comme administrateur."""
    app.dependency_overrides[get_current_admin] = lambda: admin
    return client


@pytest.fixture
def db_session():
    """Session sur une base SQLite en mémoire, schéma créé depuis Base.metadata."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def sites(db_session):
    """Deux coordinations : ADJAME et COCODY (coordination 1), BOUAKE (coordination 2)."""
    db_session.add_all([
        Coordination(id=1, code="ABIDJAN-NORD", nom="Abidjan Nord"),
        Coordination(id=2, code="CENTRE", nom="Centre"),
    ])
    db_session.flush()
    adjame = Site(id="ADJAME", nom="Adjamé", coordination_id=1, api_key="cle-adjame", is_active=True)
    cocody = Site(id="COCODY", nom="Cocody", coordination_id=1, api_key="cle-cocody", is_active=True)
    bouake = Site(id="BOUAKE", nom="Bouaké", coordination_id=2, api_key="cle-bouake", is_active=True)
    db_session.add_all([adjame, cocody, bouake])
    db_session.commit()
    return {"ADJAME": adjame, "COCODY": cocody, "BOUAKE": bouake}
