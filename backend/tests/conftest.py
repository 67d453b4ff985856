"""Shared fixtures: a small two-laboratory catalog, its registry, and an in-memory database."""
import os

# Must be set before any app module builds the engine
os.environ["DATABASE_URL"] = "sqlite://"

import pytest

from catalog.registry import RawCatalogRow, RegistryBuilder
from catalog.resolver import Resolver


def _row(code, name, price, turnaround=None, test_type=None, category=None):
    return RawCatalogRow(code=code, raw_name=name, price=price, turnaround=turnaround,
                         test_type=test_type, category=category)


@pytest.fixture
def raw_catalogs():
    """CDL seeds the registry; DYNACARE uses other codes for some of the same tests."""
    return {
        "CDL": [
            _row("GLU", "GLYCEMIE A JEUN", 30.0, "Même jour"),
            _row("TSH", "TSH ULTRASENSIBLE", 120.0, "24h"),
            _row("B12", "VITAMINE B12", 150.0, "24-48h"),
            _row("FER", "FER SERIQUE", 60.0, "24h"),
            _row("FERT", "PROFIL FERTILITE", 400.0, "3 jours", test_type="profile"),
            _row("CREAU", "CREATININE URINE 24H", 80.0, "48h"),
            _row("CREA", "CREATININE", 40.0, "Même jour"),
        ],
        "DYNACARE": [
            _row("GLUC", "GLYCÉMIE À JEUN", 35.0, "Même jour"),
            _row("TSH", "TSH", 110.0, "48h"),
            _row("VB12", "VITAMINE B12 (COBALAMINE)", 140.0, "3 jours"),
            _row("CREAT", "CREATININE", 45.0, "24h"),
            _row("FERR", "FERRITINE", 90.0, "24h"),
            _row("CA125", "CA 125", 250.0, "5 jours"),
        ],
    }


@pytest.fixture
def registry_build(raw_catalogs):
    return RegistryBuilder().build(raw_catalogs)


@pytest.fixture
def registry(registry_build):
    return registry_build.registry


@pytest.fixture
def resolver(registry):
    return Resolver(registry)


@pytest.fixture
def db():
    """Fresh schema per test on the shared in-memory engine."""
    from app.db.database import SessionLocal, engine
    from app.utils.cache import registry_cache
    import app.models.models as model

    model.Base.metadata.drop_all(bind=engine)
    model.Base.metadata.create_all(bind=engine)
    registry_cache.clear()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        model.Base.metadata.drop_all(bind=engine)


@pytest.fixture
def seeded(db, registry, resolver, raw_catalogs):
    """Registry mirrored, both catalogs ingested. Returns {'labs': {code: Laboratory}, 'mappings': {canonical_id: id}}."""
    from app.services.ingestion import ingest_price_list, sync_registry, upsert_laboratory

    mappings = sync_registry(db, registry)
    labs = {}
    for code, rows in raw_catalogs.items():
        lab = upsert_laboratory(db, code, name=code.title())
        ingest_price_list(db, lab, rows, resolver, file_name=f"{code.lower()}.json")
        labs[code] = lab
    return {"labs": labs, "mappings": mappings}


@pytest.fixture
def client(db):
    from fastapi.testclient import TestClient
    from app.main import app

    with TestClient(app) as c:
        yield c
